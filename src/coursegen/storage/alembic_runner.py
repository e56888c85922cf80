"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config


def migration_config(db_path: Path) -> Config:
    """Alembic config pointing at the repository migrations and the given database."""

    root_dir = Path(__file__).resolve().parents[3]
    config = Config(str(root_dir / "alembic.ini"))
    config.set_main_option("script_location", str(root_dir / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    config.attributes["configure_logger"] = False
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database."""

    command.upgrade(migration_config(db_path), "head")


def downgrade_base(db_path: Path) -> None:
    """Revert every migration applied to the given SQLite database."""

    command.downgrade(migration_config(db_path), "base")
