import logging
import sys

from app.config import settings


def get_logger(name: str, prefix: str = None) -> logging.Logger:
    """Return a named logger with a single stdout handler and a ``[PREFIX]`` format."""
    log = logging.getLogger(name)
    log.setLevel(settings.LOG_LEVEL.upper())
    if not log.handlers:
        h = logging.StreamHandler(sys.stdout)
        tag = prefix or name.upper()
        h.setFormatter(logging.Formatter(f"[{tag}] %(levelname)s %(message)s"))
        log.addHandler(h)
        log.propagate = False
    return log
