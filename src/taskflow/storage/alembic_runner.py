"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

import threading
from pathlib import Path

from alembic import command
from alembic.config import Config

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"

_UPGRADE_LOCK = threading.Lock()


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database.

    The migration scripts ship inside the package, so this works from an
    installed wheel as well as from a source checkout.
    """

    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    with _UPGRADE_LOCK:
        command.upgrade(config, "head")
