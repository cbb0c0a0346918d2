from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[2]
ALEMBIC_INI = ROOT / "alembic.ini"


def alembic_config(database_url: str | None = None) -> Config:
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("script_location", str(ROOT / "infra" / "migrations"))
    if database_url:
        config.attributes["database_url"] = database_url
    return config


def run_upgrade_head(database_url: str | None = None) -> None:
    logger.info("upgrading schema to head")
    command.upgrade(alembic_config(database_url), "head")


if __name__ == "__main__":
    run_upgrade_head()
