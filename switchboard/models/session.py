"""Helpers for configuring SQLAlchemy engine and session factories."""

from __future__ import annotations

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from ..config import as_sqlalchemy_url, get_settings
from . import Base


def get_engine(database_url: str | None = None, **kwargs: object) -> Engine:
    """Create a SQLAlchemy engine.

    Args:
        database_url: Optional database URL. When ``None`` the configured
            ``DATABASE_URL`` setting is used.
        **kwargs: Additional keyword arguments forwarded to
            :func:`sqlalchemy.create_engine`.

    Returns:
        Configured SQLAlchemy :class:`~sqlalchemy.engine.Engine` instance.
    """

    url = as_sqlalchemy_url(database_url or get_settings().database_url)
    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, _connection_record):  # pragma: no cover - dialect hook
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def get_sessionmaker(
    database_url: str | None = None, *, engine: Engine | None = None, **kwargs: object
) -> sessionmaker[Session]:
    """Return a session factory bound to ``engine`` or a freshly configured one."""

    bind = engine or get_engine(database_url=database_url, **kwargs)
    return sessionmaker(bind=bind, expire_on_commit=False, future=True)


def create_schema(engine: Engine) -> None:
    """Create every routing table that does not exist yet."""

    Base.metadata.create_all(engine)


__all__ = ["create_schema", "get_engine", "get_sessionmaker"]
