from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine_options(database_url: str) -> dict:
    """Engine keyword arguments for the configured backend."""
    if database_url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        # In-memory databases only exist per connection, so share one
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return options

    return {
        "pool_pre_ping": True,
        "connect_args": {"connect_timeout": settings.database_connect_timeout},
    }


engine = create_engine(settings.database_url, **build_engine_options(settings.database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency yielding a request-scoped database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
