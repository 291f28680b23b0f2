# Database Configuration and Session Management

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, Session
from contextlib import contextmanager
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential
import logging

from config.app_config import (
    DATABASE_URL,
    DB_POOL_SIZE,
    DB_MAX_OVERFLOW,
    DB_RETRY_ATTEMPTS,
    DB_RETRY_WAIT_SECONDS,
)

logger = logging.getLogger(__name__)

# SQLite doesn't support pool settings
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        echo=False
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        echo=False  # Set to True for SQL query logging
    )

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Dependency for FastAPI
def get_db() -> Session:
    """
    FastAPI dependency to get database session.
    Usage: db: Session = Depends(get_db)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context():
    """
    Context manager for database session.
    Usage:
    with get_db_context() as db:
        # do something with db
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _is_retryable(exc: BaseException) -> bool:
    # Serialization failures, deadlocks and lost compare-and-set updates
    return isinstance(exc, OperationalError) or getattr(exc, "retryable", False)


def run_in_transaction(db: Session, operation, *args, **kwargs):
    """
    Run `operation(db, *args, **kwargs)` and commit it as one transaction.

    Contention errors abort the whole transaction; it is rolled back and the
    operation is re-run from scratch a bounded number of times. Besides driver
    level OperationalError, any exception with a truthy `retryable` attribute
    counts as contention.
    Any other exception rolls back and propagates unchanged.
    """
    for attempt in Retrying(
        stop=stop_after_attempt(DB_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=DB_RETRY_WAIT_SECONDS, max=2),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    ):
        with attempt:
            try:
                result = operation(db, *args, **kwargs)
                db.commit()
                return result
            except Exception as e:
                db.rollback()
                if _is_retryable(e):
                    logger.warning(
                        f"Transaction aborted ({attempt.retry_state.attempt_number}/{DB_RETRY_ATTEMPTS}): {e}"
                    )
                raise


def init_db():
    """
    Initialize database tables.
    Run this once to create all tables.
    """
    from database.models import Base
    from database import affiliate_models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully!")


if __name__ == "__main__":
    # Create tables when run directly
    logging.basicConfig(level=logging.INFO)
    init_db()
