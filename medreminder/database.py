# medreminder/database.py
from sqlalchemy import create_engine
from sqlalchemy import text
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from .config import get_settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Dispatcher sessions are handed across threads by the app server
        return {"connect_args": {"check_same_thread": False}}
    return {}


# Create engine
engine = create_engine(
    get_settings().database_url,
    pool_pre_ping=True,
    echo=False,
    **_engine_kwargs(get_settings().database_url)
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
    """Dependency returning the session factory used by batch jobs that open their own sessions."""
    return SessionLocal


def create_tables(bind=None):
    """Create all database tables - MUST import models first!"""
    # Import models to register them with Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def drop_tables(bind=None):
    """Drop all database tables"""
    Base.metadata.drop_all(bind=bind or engine)


def check_connection(bind=None) -> bool:
    with (bind or engine).connect() as conn:
        conn.execute(text("SELECT 1"))
    return True
