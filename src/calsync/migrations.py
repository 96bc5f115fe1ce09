"""Run the calsync Alembic chain from Python.

The CLI's ``migrate`` command and the DB-backed tests call
:func:`run_migrations` instead of shelling out to ``alembic upgrade``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

# alembic/ lives at the repository root, next to src/.
ALEMBIC_DIR = Path(__file__).resolve().parents[2] / "alembic"
VERSIONS_DIR = ALEMBIC_DIR / "versions"

DEFAULT_CHAIN = "calsync"


def get_all_chains() -> list[str]:
    """Names of the version chains (one directory each) under ``alembic/versions``."""
    if not VERSIONS_DIR.is_dir():
        return []
    return sorted(
        entry.name
        for entry in VERSIONS_DIR.iterdir()
        if entry.is_dir() and not entry.name.startswith("__")
    )


def _build_alembic_config(db_url: str) -> Config:
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Config values go through configparser interpolation.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    config.set_main_option(
        "version_locations",
        os.pathsep.join(str(VERSIONS_DIR / chain) for chain in get_all_chains()),
    )
    return config


async def run_migrations(db_url: str, chain: str = DEFAULT_CHAIN) -> None:
    """Upgrade ``chain`` to its head revision on the database at ``db_url``."""
    if chain not in get_all_chains():
        raise ValueError(f"Unknown migration chain: {chain!r}")
    logger.info("Upgrading migration chain %s to head", chain)
    command.upgrade(_build_alembic_config(db_url), f"{chain}@head")
