# carecenter/database.py
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from .config import get_settings

logger = logging.getLogger(__name__)

_database_url = get_settings().database_url

# Create engine
engine = create_engine(
    _database_url,
    pool_pre_ping=True,
    echo=False,
    connect_args={"check_same_thread": False} if _database_url.startswith("sqlite") else {},
)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()

# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_session_factory():
    """Session factory for work that outlives the request (background tasks)."""
    return SessionLocal

def create_tables():
    """Create all database tables - MUST import models first!"""
    from . import models  # registers tables on Base.metadata

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")
