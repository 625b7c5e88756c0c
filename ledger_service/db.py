"""
Database handle with an explicit unit-of-work boundary.

Every ledger mutation runs through ``Database.run_in_transaction``: the work
function receives a session, the session commits once when the function
returns and rolls back on any exception. Storage contention (a stale
VendorBalance version, a lock timeout, a unique-key race) is retried with
backoff before surfacing as ConflictError.
"""
import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from common.errors import ConflictError
from common.retry import RetryConfig, retry_call
from common.settings import Settings, settings as default_settings
from ledger_service.models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (StaleDataError, OperationalError, IntegrityError)


class Database:
    def __init__(self, url: str, retry_config: Optional[RetryConfig] = None, **engine_kwargs):
        self.url = url
        self.engine = create_engine(url, **engine_kwargs)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.retry_config = retry_config or RetryConfig(
            max_attempts=5,
            base_delay=0.05,
            max_delay=1.0,
            retryable_exceptions=list(TRANSIENT_ERRORS),
        )

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        return self._sessions()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Single commit-or-rollback boundary."""
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run_in_transaction(self, work: Callable[[Session], T], operation: str = "unit_of_work", **context) -> T:
        def attempt() -> T:
            with self.transaction() as session:
                return work(session)

        attempt.__name__ = operation

        try:
            return retry_call(attempt, self.retry_config)
        except TRANSIENT_ERRORS as e:
            logger.error(f"{operation} failed after {self.retry_config.max_attempts} attempts: {e}", extra={
                "operation": operation,
                **context,
            })
            raise ConflictError(
                f"{operation} could not commit because of concurrent updates; retry later",
                original_error=e,
                context=context,
            ) from e

    def dispose(self) -> None:
        self.engine.dispose()


def connect(url: Optional[str] = None, settings: Optional[Settings] = None, create_schema: bool = True) -> Database:
    """Open the ledger database; the caller owns the returned handle."""
    cfg = settings or default_settings
    url = url or cfg.database_url
    retry_config = RetryConfig(
        max_attempts=cfg.balance_retry_attempts,
        base_delay=cfg.balance_retry_base_delay,
        max_delay=1.0,
        retryable_exceptions=list(TRANSIENT_ERRORS),
    )

    if url.startswith("sqlite"):
        engine_kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every session sees the same in-memory database
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs = {"pool_pre_ping": True, "isolation_level": "READ COMMITTED"}

    db = Database(url, retry_config=retry_config, **engine_kwargs)
    if create_schema:
        db.create_all()
    logger.info(f"Connected to ledger database {db.engine.url.render_as_string(hide_password=True)}")
    return db
