from typing import Dict, List, Tuple

from app.utils.logging import get_logger

log = get_logger("notifier", "NOTIFY")


class NotificationError(Exception):
    """Raised by a notifier when a message could not be delivered; the outbox retries it."""


class LoggingNotifier:
    """
    Default notification sink: writes each message to the log.
    send(topic, payload) must raise on failure so the outbox can retry.
    """

    def send(self, topic: str, payload: Dict) -> None:
        recipients = ", ".join(
            f"{r['type']}:{r['id']}" for r in payload.get("recipients", [])
        )
        log.info(
            f"{topic} request={payload.get('request_number')} "
            f"status={payload.get('status')} -> {recipients or 'nobody'}"
        )

    def health_check(self) -> bool:
        return True


class RecordingNotifier(LoggingNotifier):
    """Keeps every delivered message in memory; used by tests and local tooling."""

    def __init__(self, fail_topics=()):
        self.sent: List[Tuple[str, Dict]] = []
        self.fail_topics = set(fail_topics)

    def send(self, topic: str, payload: Dict) -> None:
        if topic in self.fail_topics:
            raise NotificationError(f"simulated delivery failure for {topic}")
        self.sent.append((topic, payload))
        super().send(topic, payload)
