"""Runtime configuration loaded from the environment."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

from dotenv import load_dotenv

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///./switchboard.db"


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Parse a truthy string value into ``bool``."""

    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def as_sqlalchemy_url(db_url: str) -> str:
    """Ensure PostgreSQL URLs use the ``psycopg`` driver."""

    if db_url.startswith("postgresql+psycopg://"):
        return db_url
    if db_url.startswith("postgresql://"):
        return db_url.replace("postgresql://", "postgresql+psycopg://", 1)
    if db_url.startswith("postgres://"):
        return db_url.replace("postgres://", "postgresql+psycopg://", 1)
    return db_url


@dataclasses.dataclass(frozen=True)
class Settings:
    """Routing engine settings."""

    database_url: str = DEFAULT_DATABASE_URL
    queue_cache_ttl_seconds: int = 300
    archive_on_resolve: bool = True
    agent_workers: int = 4
    agent_max_attempts: int = 3
    agent_retry_backoff_seconds: float = 2.0
    openai_model: str = "gpt-4o-mini"
    agent_system_prompt: str | None = None
    default_channel: str = "system"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from the environment (and ``.env``) once per process."""

    load_dotenv()
    return Settings(
        database_url=as_sqlalchemy_url(os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)),
        queue_cache_ttl_seconds=int(os.getenv("QUEUE_CACHE_TTL_SECONDS", "300")),
        archive_on_resolve=_to_bool(os.getenv("ARCHIVE_ON_RESOLVE"), default=True),
        agent_workers=int(os.getenv("AGENT_WORKERS", "4")),
        agent_max_attempts=int(os.getenv("AGENT_MAX_ATTEMPTS", "3")),
        agent_retry_backoff_seconds=float(os.getenv("AGENT_RETRY_BACKOFF_SECONDS", "2.0")),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        agent_system_prompt=os.getenv("AGENT_SYSTEM_PROMPT") or None,
        default_channel=os.getenv("DEFAULT_CHANNEL", "system"),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = ["Settings", "as_sqlalchemy_url", "get_settings", "reset_settings_cache"]
