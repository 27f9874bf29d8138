"""Database connection and session management."""
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from .config import get_settings


def build_engine(database_url: str) -> Engine:
    """Create an engine with pool settings suited to the backend."""
    if database_url.startswith("sqlite"):
        # Sessions are used from worker threads
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    # Conservative pool settings for a shared PostgreSQL instance
    return create_engine(
        database_url,
        pool_pre_ping=True,          # Verify connections before using
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,           # Recycle connections every hour
        pool_timeout=30,
    )


settings = get_settings()

engine = build_engine(settings.database_url)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency function to get database session.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
