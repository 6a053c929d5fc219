"""
Database Configuration

SQLAlchemy setup for HabitFlow persistence.
Uses SQLite for development, can switch to PostgreSQL for production.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from habitflow.config import settings

DATABASE_URL = settings.DATABASE_URL

# Handle SQLite-specific settings
if settings.is_sqlite:
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},  # SQLite needs this
        echo=settings.DEBUG,
    )
else:
    engine = create_engine(DATABASE_URL, echo=settings.DEBUG)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """
    Dependency that provides a database session.
    Ensures proper cleanup after request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """
    Initialize database tables.
    Call this on application startup.
    """
    from habitflow.models import db_models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
