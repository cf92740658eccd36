from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session


@contextmanager
def savepoint(session: Session) -> Iterator:
    """
    Run a block inside a SAVEPOINT (begin_nested) of the caller's transaction.

    A failure inside the block, including a failed flush, rolls back only the
    savepoint; the outer transaction and whatever it already flushed stay
    usable. The original exception is re-raised for the caller to handle.
    Usage:
        with savepoint(db):
            ... DB work that may fail on its own ...
    """
    with session.begin_nested():
        yield
        session.flush()
