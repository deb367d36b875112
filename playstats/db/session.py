from __future__ import annotations

import random
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from threading import Lock
from typing import Callable, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from playstats.core.metrics import DB_CIRCUIT_OPEN, DB_RETRY_COUNT
from playstats.core.settings import get_settings
from playstats.utils.errors import CircuitBreakerOpenError


@lru_cache
def _get_engine_cached(database_url: str, pool_size: int, max_overflow: int) -> Engine:
    return create_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )


@lru_cache
def _get_sessionmaker(database_url: str, pool_size: int, max_overflow: int) -> sessionmaker:
    engine = _get_engine_cached(database_url, pool_size, max_overflow)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def get_engine() -> Engine:
    settings = get_settings()
    return _get_engine_cached(
        settings.database_url, settings.db_pool_size, settings.db_max_overflow
    )


def SessionLocal() -> Session:
    settings = get_settings()
    maker = _get_sessionmaker(
        settings.database_url, settings.db_pool_size, settings.db_max_overflow
    )
    return maker()


@contextmanager
def autocommit_connection() -> Iterator[Connection]:
    """Yield a connection where every statement commits on its own.

    TimescaleDB refuses ``CREATE MATERIALIZED VIEW ... WITH
    (timescaledb.continuous)`` and ``CALL refresh_continuous_aggregate`` inside
    a transaction block, and a failed catalog probe must not abort the
    statements that follow it.
    """
    with get_engine().connect() as connection:
        yield connection.execution_options(isolation_level="AUTOCOMMIT")


T = TypeVar("T")


@dataclass
class DbRetryPolicy:
    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float

    @classmethod
    def from_settings(cls) -> "DbRetryPolicy":
        settings = get_settings()
        return cls(
            max_attempts=max(1, settings.db_retry_max_attempts),
            base_delay_seconds=settings.db_retry_base_delay_seconds,
            max_delay_seconds=settings.db_retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        # Exponential backoff with +/-10% jitter.
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))
        return delay * (1 + random.uniform(-0.1, 0.1))


class DbCircuitBreaker:
    def __init__(self, failure_threshold: int, recovery_seconds: int) -> None:
        self._failure_threshold = failure_threshold
        self._recovery_seconds = recovery_seconds
        self._failure_count = 0
        self._opened_until: datetime | None = None
        self._lock = Lock()

    def allow_request(self) -> bool:
        with self._lock:
            if self._opened_until is None:
                return True
            if datetime.now(timezone.utc) >= self._opened_until:
                self._opened_until = None
                self._failure_count = 0
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._opened_until = None

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if self._failure_count >= self._failure_threshold:
                self._opened_until = datetime.now(timezone.utc) + timedelta(
                    seconds=self._recovery_seconds
                )
                DB_CIRCUIT_OPEN.inc()

    @property
    def state(self) -> str:
        with self._lock:
            return "open" if self._opened_until else "closed"


_circuit_breaker: DbCircuitBreaker | None = None


def get_circuit_breaker() -> DbCircuitBreaker:
    global _circuit_breaker
    if _circuit_breaker is None:
        settings = get_settings()
        _circuit_breaker = DbCircuitBreaker(
            failure_threshold=settings.db_circuit_failure_threshold,
            recovery_seconds=settings.db_circuit_recovery_seconds,
        )
    return _circuit_breaker


def _is_transient_db_error(exc: BaseException) -> bool:
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError) and getattr(exc, "connection_invalidated", False):
        return True
    return False


def run_with_db_retry(
    operation: Callable[[Session], T],
    *,
    operation_name: str = "db_operation",
) -> T:
    """Run a short read against a fresh session, retrying transient failures."""
    breaker = get_circuit_breaker()
    if not breaker.allow_request():
        raise CircuitBreakerOpenError()
    policy = DbRetryPolicy.from_settings()
    attempt = 0
    while True:
        attempt += 1
        with SessionLocal() as session:
            try:
                result = operation(session)
            except SQLAlchemyError as exc:
                session.rollback()
                breaker.record_failure()
                if not _is_transient_db_error(exc) or attempt >= policy.max_attempts:
                    raise
                DB_RETRY_COUNT.labels(operation=operation_name).inc()
            else:
                breaker.record_success()
                return result
        time.sleep(policy.delay_for(attempt))
