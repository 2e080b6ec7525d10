"""Programmatic Alembic access for the run store database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import Engine

logger = logging.getLogger(__name__)

_ROOT_DIR = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(_ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(_ROOT_DIR / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision(db_path: Path) -> str | None:
    return ScriptDirectory.from_config(alembic_config(db_path)).get_current_head()


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in the database, ``None`` for a fresh file."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def upgrade_head(db_path: Path, *, engine: Engine | None = None) -> None:
    """Apply migrations up to head; a database already at head is left untouched."""

    if engine is not None:
        current = current_revision(engine)
        if current is not None and current == head_revision(db_path):
            logger.debug("Schema of %s already at %s", db_path, current)
            return
    command.upgrade(alembic_config(db_path), "head")
    logger.info("Schema of %s upgraded to head", db_path)
