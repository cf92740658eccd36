import importlib

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from app.config import settings

DATABASE_URL = settings.DATABASE_URL


def _connect_args(url: str) -> dict:
    # FastAPI runs sync handlers in a threadpool
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    DATABASE_URL, future=True, echo=False, connect_args=_connect_args(DATABASE_URL)
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# every module defining a table; add new modules here
MODEL_MODULES = [
    "app.models.shop",
    "app.models.user",
    "app.models.order",
    "app.models.return_request",
    "app.models.return_request_item",
    "app.models.return_request_history",
    "app.models.outbox",
]


def load_models():
    for mod in MODEL_MODULES:
        importlib.import_module(mod)


def init_db(reset: bool = False, bind=None):
    """
    Initialize DB schema.

    Behavior:
      - Imports every model module so metadata is populated.
      - With reset=True, drop & recreate tables (tests/CI, or RESET_DB=1 at startup).
      - Otherwise, leave existing tables in place and create missing ones.
    """
    load_models()
    bind = bind or engine
    if reset:
        Base.metadata.drop_all(bind=bind)
    Base.metadata.create_all(bind=bind)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
