from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from diagnostic.config import get_settings
from diagnostic.errors import StoreUnavailableError, ValidationError
from diagnostic.models import SETTINGS_ID, Base, Settings

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None


def enable_sqlite_foreign_keys(engine: Engine) -> None:
    """SQLite ignores ON DELETE CASCADE unless the pragma is set per connection."""
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def init_db(db_url: str | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        settings = get_settings()
        if db_url is None:
            db_url = settings.database_url
            if not settings.database_url_override:
                settings.database_path.parent.mkdir(parents=True, exist_ok=True)
        connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
        _engine = create_engine(db_url, connect_args=connect_args)
        enable_sqlite_foreign_keys(_engine)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        seed_settings(_SessionLocal)
        log.info("Database ready at %s", _engine.url.render_as_string(hide_password=True))


def seed_settings(factory) -> None:
    """Insert the singleton branding row if it is missing."""
    with factory() as session:
        if session.execute(select(Settings.id).where(Settings.id == SETTINGS_ID)).first():
            return
        session.add(Settings(id=SETTINGS_ID))
        session.commit()


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, scripts, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ping(session: Session) -> bool:
    session.execute(text("SELECT 1"))
    return True


@contextmanager
def store_boundary(session: Session) -> Generator[None, None, None]:
    """Translate database failures into engine errors, rolling back first."""
    try:
        yield
    except IntegrityError as exc:
        session.rollback()
        raise ValidationError(f"Rejected by database constraint: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        log.warning("Store operation failed: %s", exc)
        raise StoreUnavailableError("Database unavailable, retry later") from exc
