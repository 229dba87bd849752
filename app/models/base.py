"""
Base database model and session management
"""
import os
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.orm import declarative_base, sessionmaker
from app.config import get_settings

settings = get_settings()


def _resolve_url(url: str) -> str:
    """Resolve relative SQLite paths to absolute so cwd changes can't break it"""
    if url.startswith("sqlite:///") and not url.startswith("sqlite:////") and ":memory:" not in url:
        rel_path = url[len("sqlite:///"):]
        return "sqlite:///" + os.path.abspath(rel_path)
    return url


def make_engine(url: str):
    """Engine for a database URL (SQLite in dev/tests, Postgres in production)"""
    url = _resolve_url(url)
    if url.startswith("sqlite"):
        # In-memory databases must share one connection or each session sees an empty db
        poolclass = StaticPool if (":memory:" in url or url == "sqlite://") else NullPool
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 60},
            poolclass=poolclass,
        )
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=3,
        max_overflow=5,
        pool_recycle=300,
    )


# Create database engine
engine = make_engine(settings.database_url)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for all models
Base = declarative_base()


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create any missing tables (Alembic owns changes to existing ones)"""
    # Import models so they register on Base.metadata
    import app.models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
