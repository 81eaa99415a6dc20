"""Programmatic access to the Alembic migrations shipped next to the package."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext

from fbksd_server.storage.common import build_sqlite_engine, sqlite_url

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the coordinator database up to the latest schema revision."""

    command.upgrade(alembic_config(db_path), "head")


def current_revision(db_path: Path) -> str | None:
    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=1_000)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()
