"""Database coordination layer: engine, transactional scopes and retry at the transaction boundary."""

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from contextlib import contextmanager
from typing import Callable, Dict, TypeVar
import logging
import time

from errors import PersistenceFailure, ReservationError
from models import Base, Show, Episode, Reservation, ReservationStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _configure_sqlite(engine):
    """Let SQLAlchemy own transaction boundaries and take the write lock at BEGIN.

    pysqlite defers BEGIN until the first DML, which lets two connections both read and then
    deadlock on the upgrade to a write lock. BEGIN IMMEDIATE serializes writers instead, with the
    connect timeout acting as the busy wait.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions and transactional flows."""

    def __init__(self, database_url: str, *, retries: int = 3, retry_backoff: float = 0.05):
        self.database_url = database_url
        self.retries = max(1, retries)
        self.retry_backoff = retry_backoff

        if database_url.startswith("sqlite"):
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
                echo=False,
            )
            _configure_sqlite(self.engine)
        else:
            self.engine = create_engine(
                database_url,
                pool_size=20,
                max_overflow=40,
                pool_pre_ping=True,  # Reconnect if connection lost
                pool_recycle=3600,   # Recycle connections after 1 hour
                echo=False,
            )
        # Loaded rows stay readable after commit so callers can serialize them
        self.session_factory = scoped_session(sessionmaker(bind=self.engine, expire_on_commit=False))

        # Create tables
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except ReservationError:
            session.rollback()
            raise
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()
            self.session_factory.remove()

    def run_in_transaction(self, work: Callable[..., T], *, label: str = "transaction") -> T:
        """Run ``work(session)`` in one transaction, retrying transient storage failures.

        Domain errors propagate untouched after rollback. Operational errors (lock timeouts,
        dropped connections, serialization failures) are retried; once retries are exhausted the
        caller gets PersistenceFailure and nothing was committed.
        """
        last_error = None
        for attempt in range(1, self.retries + 1):
            try:
                with self.get_session() as session:
                    return work(session)
            except OperationalError as e:
                last_error = e
                logger.warning(f"{label}: transient database error on attempt {attempt}/{self.retries}: {e}")
                if attempt < self.retries:
                    time.sleep(self.retry_backoff * attempt)
            except SQLAlchemyError as e:
                raise PersistenceFailure(f"{label} failed", details={"reason": str(e)}) from e

        raise PersistenceFailure(
            f"{label} failed after {self.retries} attempts",
            details={"reason": str(last_error)},
        ) from last_error

    def health_check(self) -> Dict:
        """Report database connectivity and row counts; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                # Test database connection
                session.execute(text("SELECT 1"))

                return {
                    "status": "healthy",
                    "database": "connected",
                    "shows": session.query(Show).count(),
                    "episodes": session.query(Episode).count(),
                    "active_holds": session.query(Reservation).filter(
                        Reservation.status == ReservationStatus.RESERVED
                    ).count(),
                }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }

    def drop_all(self):
        """Remove every table; used by tests and local resets."""
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()
