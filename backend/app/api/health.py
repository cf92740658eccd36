from fastapi import APIRouter
from sqlalchemy import text

from app.adapters.notifier import LoggingNotifier
from app.db import SessionLocal, engine
from app.services.outbox_service import OutboxService

router = APIRouter()


@router.get("/health", tags=["health"])
def health():
    db_ok = False
    notifier_ok = False
    outbox_backlog = None
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            db_ok = True
    except Exception:
        db_ok = False
    if db_ok:
        db = SessionLocal()
        try:
            outbox_backlog = OutboxService(db).pending_count()
        except Exception:
            outbox_backlog = None
        finally:
            db.close()
    try:
        notifier_ok = LoggingNotifier().health_check()
    except Exception:
        notifier_ok = False

    return {
        "status": "ok" if db_ok and notifier_ok else "degraded",
        "db": db_ok,
        "notifier": notifier_ok,
        "outbox_backlog": outbox_backlog,
    }
