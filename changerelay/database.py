from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_ALEMBIC_INI = _PROJECT_ROOT / "alembic.ini"


class MigrationError(RuntimeError):
    """Raised when Alembic migrations cannot be applied to a bookkeeping database."""


def create_database_engine(url: str) -> Engine:
    engine_kwargs: dict[str, object] = {"future": True}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True
    return create_engine(url, **engine_kwargs)


@lru_cache(maxsize=None)
def get_engine(url: str) -> Engine:
    return create_database_engine(url)


def reset_engines() -> None:
    # Helper for tests and long-running schedules to drop pooled connections.
    get_engine.cache_clear()


def ensure_bookkeeping_schema(url: str) -> None:
    """Create or upgrade the relay, master and error-log bookkeeping tables at ``url``."""

    if make_url(url).drivername.startswith("sqlite"):
        from changerelay import models  # noqa: F401

        Base.metadata.create_all(bind=get_engine(url))
        return

    config = Config(str(_ALEMBIC_INI))
    config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "migrations"))
    config.attributes["configure_logger"] = False

    try:
        command.upgrade(config, "head")
    except Exception as exc:  # Alembic does not expose a common base error
        raise MigrationError(f"Failed to apply migrations: {exc}") from exc
