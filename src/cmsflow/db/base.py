"""Database configuration and session management."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import MetaData, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from cmsflow.config import DatabaseConfig


class Base(DeclarativeBase):
    """Shared base for all models."""

    metadata = MetaData()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def create_db_engine(config: DatabaseConfig | str, **overrides: Any) -> Engine:
    """Build an engine tuned for the target dialect.

    Each entrypoint builds its own engine and passes sessions down
    explicitly; nothing here is cached at module level.
    """
    if isinstance(config, str):
        config = DatabaseConfig(url=config)

    is_postgres = config.url.startswith("postgresql")

    connect_args: dict[str, Any] = {}
    engine_kwargs: dict[str, Any] = {
        "echo": False,
        "future": True,
    }

    if is_postgres:
        # Production PostgreSQL Settings
        engine_kwargs.update({
            "pool_size": config.pool_size,
            "max_overflow": config.max_overflow,
            "pool_recycle": config.pool_recycle,
            "pool_pre_ping": True,
        })
        if config.ssl_mode:
            connect_args["sslmode"] = config.ssl_mode
    else:
        # SQLite Settings for Dev
        connect_args["check_same_thread"] = False

    engine_kwargs["connect_args"] = connect_args
    if "poolclass" in overrides:
        # Sizing only applies to QueuePool
        engine_kwargs.pop("pool_size", None)
        engine_kwargs.pop("max_overflow", None)
    engine_kwargs.update(overrides)
    return create_engine(config.url, **engine_kwargs)


def create_session_factory(config: DatabaseConfig | str | Engine, **overrides: Any) -> sessionmaker[Session]:
    engine = config if isinstance(config, Engine) else create_db_engine(config, **overrides)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
