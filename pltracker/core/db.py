"""
Database setup. One SQLite file (database.path in the config, ~/.pltracker/tracker.db
by default) holds the key-value store and the task schedule.
"""
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_DATA_DIR = Path.home() / ".pltracker"

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def database_url(config_data: Optional[Dict[str, Any]] = None) -> str:
    """sqlite URL for database.path, creating the parent directory."""
    path = ((config_data or {}).get("database") or {}).get("path")
    db_file = Path(path).expanduser().resolve() if path else DEFAULT_DATA_DIR / "tracker.db"
    db_file.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_file}"


def init_db(config_data: Optional[Dict[str, Any]] = None, db_url: Optional[str] = None) -> None:
    """Create the engine and tables once per process; db_url overrides the config."""
    global _engine, _session_factory

    if _engine is not None:
        logger.debug("Database already initialized")
        return

    url = db_url or database_url(config_data)
    _engine = create_engine(url, future=True)

    from pltracker.core import models  # noqa: F401  registers the tables

    Base.metadata.create_all(_engine)
    _session_factory = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    logger.info(f"Database ready at {url}")


@contextmanager
def session_scope() -> Iterator[Session]:
    """One unit of work: commit when the block succeeds, roll back when it raises."""
    if _session_factory is None:
        raise RuntimeError("init_db() has not been called")
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dispose_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
