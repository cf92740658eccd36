import os
import tempfile
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from filelock import FileLock, Timeout
from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.models.outbox import OutboxMessage, OutboxStatus
from app.models.return_request_history import ReturnRequestHistory
from app.utils.logging import get_logger
from app.utils.transactions import savepoint

log = get_logger("outbox", "OUTBOX")

HISTORY_TOPIC = "history.append"


def _lock_path() -> str:
    locks_dir = os.path.join(tempfile.gettempdir(), "returns_engine_locks")
    os.makedirs(locks_dir, exist_ok=True)
    return os.path.join(locks_dir, "outbox_drain.lock")


class OutboxService:
    """
    Durable queue for side effects that must survive a restart: audit rows
    that could not be written inline, and notifications.

    Messages are written in the caller's transaction and delivered later by
    ``drain``; a delivery failure never touches return request state.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.settings = settings or default_settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def enqueue(self, topic: str, payload: Dict) -> OutboxMessage:
        msg = OutboxMessage(
            topic=topic,
            payload=payload,
            status=OutboxStatus.PENDING,
            attempts=0,
            created_at=self._clock(),
        )
        self.db.add(msg)
        self.db.flush()
        return msg

    def pending_count(self) -> int:
        return (
            self.db.query(OutboxMessage)
            .filter(OutboxMessage.status == OutboxStatus.PENDING)
            .count()
        )

    def drain(self, notifier, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Deliver pending messages in insertion order, committing after each one.
        Only one process drains at a time; a concurrent call returns immediately.
        """
        result = {"delivered": 0, "retrying": 0, "failed": 0}
        try:
            with FileLock(_lock_path()).acquire(timeout=0):
                batch = (
                    self.db.query(OutboxMessage)
                    .filter(OutboxMessage.status == OutboxStatus.PENDING)
                    .order_by(OutboxMessage.id)
                    .limit(limit or self.settings.OUTBOX_BATCH_SIZE)
                    .all()
                )
                for msg in batch:
                    outcome = self._deliver(msg, notifier)
                    result[outcome] += 1
                    self.db.commit()
        except Timeout:
            log.debug("drain(): another worker holds the outbox lock")
        if result["delivered"] or result["failed"]:
            log.info(f"drain(): {result}")
        return result

    def _deliver(self, msg: OutboxMessage, notifier) -> str:
        try:
            if msg.topic == HISTORY_TOPIC:
                with savepoint(self.db):
                    self.db.add(_history_from_payload(msg.payload))
            else:
                notifier.send(msg.topic, msg.payload)
        except Exception as e:
            msg.attempts = (msg.attempts or 0) + 1
            msg.last_error = str(e)[:1024]
            if msg.attempts >= self.settings.OUTBOX_MAX_ATTEMPTS:
                msg.status = OutboxStatus.FAILED
                log.error(
                    f"message {msg.id} ({msg.topic}) parked after {msg.attempts} attempts: {e}"
                )
                return "failed"
            log.warning(f"message {msg.id} ({msg.topic}) attempt {msg.attempts} failed: {e}")
            return "retrying"
        msg.status = OutboxStatus.DELIVERED
        msg.delivered_at = self._clock()
        msg.attempts = (msg.attempts or 0) + 1
        return "delivered"


def _history_from_payload(payload: Dict) -> ReturnRequestHistory:
    row = ReturnRequestHistory(
        return_request_id=payload["return_request_id"],
        from_status=payload.get("from_status"),
        to_status=payload["to_status"],
        actor_type=payload["actor_type"],
        actor_id=payload.get("actor_id"),
        note=payload.get("note"),
    )
    if payload.get("created_at"):
        row.created_at = datetime.fromisoformat(payload["created_at"])
    return row
