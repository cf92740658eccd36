from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.return_request import ReturnRequest
from app.models.return_request_history import ReturnRequestHistory
from app.services.outbox_service import HISTORY_TOPIC, OutboxService
from app.utils.logging import get_logger
from app.utils.transactions import savepoint

log = get_logger("returns.history", "HISTORY")


class HistoryLogger:
    """
    Appends one ``ReturnRequestHistory`` row per transition, in the caller's
    transaction. The caller must have flushed the state change already.

    If the row cannot be written, the same entry goes to the outbox (still in
    the caller's transaction) and is replayed by the drain, so the transition
    commits without losing its audit record.
    """

    def __init__(self, db: Session, outbox: OutboxService, clock: Callable[[], datetime]):
        self.db = db
        self.outbox = outbox
        self._clock = clock

    def record(
        self,
        rr: ReturnRequest,
        from_status: Optional[str],
        to_status: str,
        actor_type: str,
        actor_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> None:
        entry = {
            "return_request_id": rr.id,
            "from_status": from_status,
            "to_status": to_status,
            "actor_type": actor_type,
            "actor_id": actor_id,
            "note": note,
            "created_at": self._clock(),
        }
        try:
            with savepoint(self.db):
                self._insert(entry)
        except SQLAlchemyError as e:
            log.warning(
                f"history insert failed for {rr.request_number} "
                f"{from_status}->{to_status}, queued to outbox: {e}"
            )
            payload = dict(entry, created_at=entry["created_at"].isoformat())
            self.outbox.enqueue(HISTORY_TOPIC, payload)

    def _insert(self, entry: dict) -> None:
        self.db.add(ReturnRequestHistory(**entry))
