"""Apply the schema migrations shipped next to the package."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def upgrade_head(db_path: Path, *, revision: str = "head") -> None:
    """Upgrade the SQLite file at ``db_path``, creating it when missing."""

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    command.upgrade(config, revision)
