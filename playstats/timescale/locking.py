from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.engine import Connection


logger = logging.getLogger(__name__)


@contextmanager
def convergence_lock(connection: Connection, name: str, enabled: bool = True) -> Iterator[bool]:
    """Hold a session-level advisory lock for the duration of the block.

    Yields False without waiting when another session holds the lock. The lock
    belongs to the connection, so the block must use the same connection.
    """
    if not enabled:
        yield True
        return
    acquired = bool(
        connection.execute(
            text("SELECT pg_try_advisory_lock(hashtext(:name))"), {"name": name}
        ).scalar()
    )
    if not acquired:
        logger.info("timescale_lock_busy", extra={"lock": name})
        yield False
        return
    try:
        yield True
    finally:
        connection.execute(text("SELECT pg_advisory_unlock(hashtext(:name))"), {"name": name})
