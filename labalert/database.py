import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .config import get_settings
from .models.base import Base
# table modules register themselves on Base.metadata
from .models import audit_models, critical_models, qc_models  # noqa: F401

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """Create an engine; SQLite connections are shared across the sweeper and request threads."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


engine: Optional[Engine] = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def configure(database_url: Optional[str] = None) -> Engine:
    """Bind SessionLocal to the configured database."""
    global engine
    url = database_url or get_settings().database_url
    engine = build_engine(url)
    SessionLocal.configure(bind=engine)
    return engine


def init_db(database_url: Optional[str] = None) -> Engine:
    """Create all tables if they do not exist yet."""
    bound = configure(database_url)
    Base.metadata.create_all(bind=bound)
    logger.info(f"Database initialised at {bound.url.render_as_string(hide_password=True)}")
    return bound

