"""Engine and session factory setup for the local registry store."""

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ..common.logger import get_logger
from .models import Base

logger = get_logger("registry_db")


def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker:
    """Create the engine, ensure tables exist and return a session factory.

    SQLite databases are opened with ``check_same_thread`` disabled because
    the sync worker uses the store from its pool threads. In-memory SQLite
    shares a single connection through StaticPool.

    Args:
        database_url: SQLAlchemy database URL
        echo: Log emitted SQL

    Returns:
        Session factory bound to the engine
    """
    url = make_url(database_url)
    engine_kwargs = {"echo": echo}

    if url.get_backend_name() == "sqlite":
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if url.database in (None, "", ":memory:"):
            engine_kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, **engine_kwargs)
    Base.metadata.create_all(engine)
    logger.debug(f"Database ready: {url.render_as_string(hide_password=True)}")

    return sessionmaker(bind=engine, expire_on_commit=False)
