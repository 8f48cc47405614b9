"""
Database connection and session management.

One engine per process. The rotation runs a single control thread, so the
pool is kept small.
"""
import logging
import time
from typing import Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, DBAPIError
from sqlalchemy.orm import sessionmaker, Session

from pii_rotation.core.config import Settings, get_settings
from pii_rotation.core.errors import ConfigurationError, ConnectivityError

logger = logging.getLogger(__name__)

engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def _describe(url: str) -> str:
    """Host part of a URL, without credentials."""
    return url.split('@')[1] if '@' in url else 'local'


def init_db(settings: Optional[Settings] = None, max_retries: Optional[int] = None,
            retry_delay: float = 1.0) -> Engine:
    """
    Initialize the database engine and session factory with retry logic.

    Args:
        settings: Settings to use (defaults to get_settings())
        max_retries: Number of connection attempts
        retry_delay: Seconds to wait between retries

    Returns:
        The initialized engine

    Raises:
        ConfigurationError: If DATABASE_URL is not set
        ConnectivityError: If connection fails after all retries
    """
    global engine, SessionLocal

    settings = settings or get_settings()
    url = settings.effective_database_url
    if not url:
        raise ConfigurationError("DATABASE_URL is not set")

    if not settings.verifies_certificates:
        logger.warning(
            "Database connection does not verify the server certificate "
            "(set DATABASE_SSLMODE=verify-full to enable verification)"
        )

    attempts = max_retries or settings.database_connect_retries
    for attempt in range(attempts):
        try:
            candidate = create_engine(
                url,
                pool_pre_ping=True,
                pool_size=2,
                max_overflow=2,
                pool_recycle=3600,
                hide_parameters=True,  # keys and ciphertext stay out of error messages
                echo=False,
            ) if url.startswith("postgresql") else create_engine(url, hide_parameters=True)

            # Test connection
            with candidate.connect() as conn:
                conn.execute(text("SELECT 1"))

            engine = candidate
            SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
            logger.info(f"Database initialized: {_describe(url)}")
            return engine

        except (OperationalError, DBAPIError) as e:
            logger.warning(f"Database connection attempt {attempt + 1}/{attempts} failed: {type(e).__name__}")
            if attempt < attempts - 1:
                time.sleep(retry_delay * (attempt + 1))
            else:
                logger.error(f"Database initialization failed after {attempts} attempts")
                raise ConnectivityError(f"Failed to connect to database at {_describe(url)}") from e


def get_engine() -> Engine:
    """Return the initialized engine."""
    if engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return engine


def get_db() -> Generator[Session, None, None]:
    """
    Get a database session.

    Usage:
        db = next(get_db())
    """
    if not SessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    db = SessionLocal()
    try:
        yield db
    except (OperationalError, DBAPIError) as e:
        logger.error(f"Database session error: {type(e).__name__}")
        db.rollback()
        raise
    finally:
        db.close()


def create_tables():
    """
    Create the rotation_progress table.
    Only use for local setup and tests - prefer Alembic migrations for production.
    """
    from .models import Base
    Base.metadata.create_all(bind=get_engine())
    logger.info("Database tables created")


def dispose_db():
    """Release pooled connections and forget the engine."""
    global engine, SessionLocal
    if engine is not None:
        engine.dispose()
    engine = None
    SessionLocal = None
