import os
from contextlib import asynccontextmanager

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.adapters.notifier import LoggingNotifier
from app.api.health import router as health_router
from app.api.routes_returns import admin_router, customer_router, partner_router
from app.config import settings
from app.db import SessionLocal, init_db
from app.services.outbox_service import OutboxService
from app.services.return_service import ReturnService
from app.utils.logging import get_logger

log = get_logger("scheduler", "SCHEDULER")


def drain_outbox_job(notifier=None):
    db = SessionLocal()
    try:
        OutboxService(db).drain(notifier or LoggingNotifier())
    finally:
        db.close()


def sla_report_job():
    # expires_at is reporting metadata only; nothing is auto-approved
    db = SessionLocal()
    try:
        overdue = ReturnService(db).list_overdue_requests()
        if overdue:
            numbers = ", ".join(rr["requestNumber"] for rr in overdue[:20])
            log.warning(f"{len(overdue)} return request(s) past shop deadline: {numbers}")
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Use env var RESET_DB=1 in tests/CI to force DB reset
    init_db(reset=os.environ.get("RESET_DB", "0") in ("1", "true", "True"))

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        drain_outbox_job,
        "interval",
        seconds=settings.OUTBOX_DRAIN_INTERVAL_SECONDS,
        id="drain_outbox",
        max_instances=1,
    )
    scheduler.add_job(
        sla_report_job,
        "interval",
        seconds=settings.SLA_REPORT_INTERVAL_SECONDS,
        id="sla_report",
        max_instances=1,
    )
    scheduler.start()

    try:
        yield
    finally:
        scheduler.shutdown(wait=False)


app = FastAPI(title="Marketplace Returns - Backend", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.FRONTEND_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router, prefix="/api", tags=["health"])

app.include_router(customer_router)

app.include_router(partner_router)

app.include_router(admin_router)
