"""
Database connection and session management.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker

from federation.core.config import settings

# Create declarative base for models
Base = declarative_base()

DATABASE_URL = settings.database_url


def build_engine(database_url: str, **overrides):
    """Create a SQLAlchemy engine, applying pool settings where the dialect supports them."""
    engine_kwargs = {"echo": settings.debug}
    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    else:
        engine_kwargs.update({
            "pool_size": settings.database_pool_size,
            "max_overflow": settings.database_max_overflow,
            "pool_timeout": settings.database_pool_timeout,
            "pool_recycle": settings.database_pool_recycle,
            "pool_pre_ping": True,
        })
    engine_kwargs.update(overrides)
    return create_engine(database_url, **engine_kwargs)


engine = build_engine(DATABASE_URL)

# Session maker
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends that drop tzinfo (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Dependency functions
def get_db():
    """Get database session for dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Database initialization
def init_db(bind=None):
    """Initialize database tables."""
    import federation.models  # noqa: F401  registers every table on Base.metadata

    Base.metadata.create_all(bind=bind or engine)


def close_db():
    """Close database connections."""
    engine.dispose()
