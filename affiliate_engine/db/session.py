from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from affiliate_engine.core.config import settings
import logging

logger = logging.getLogger(__name__)

# Configure database engine with proper error handling
try:
    active_db_url = settings.active_database_url
    logger.info(f"Connecting to database: {active_db_url[:50]}...")
    engine = create_engine(active_db_url, **settings.get_db_params())
    logger.info("Database engine created successfully")
except Exception as e:
    logger.error(f"Failed to create database engine: {str(e)}")
    raise

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

# Dependency for request handlers and event consumers
def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

@contextmanager
def get_db_context() -> Iterator[Session]:
    """Session scope for background jobs and scripts"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def test_db_connection() -> bool:
    """Test database connection and log the results"""
    try:
        with get_db_context() as db:
            db.execute(text("SELECT 1"))
        logger.info("Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {str(e)}")
        return False

def init_db() -> None:
    """Create all tables that do not exist yet"""
    try:
        # Import all models to ensure they're registered
        from affiliate_engine.db.base_class import Base
        import affiliate_engine.models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")

        test_db_connection()
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise

# Export everything needed by other modules
__all__ = [
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
    "test_db_connection"
]
