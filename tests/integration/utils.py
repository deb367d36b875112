from __future__ import annotations

import os

from alembic import command
from alembic.config import Config

from playstats.core.settings import get_settings
from playstats.db.session import get_circuit_breaker


def migrate_database(database_url: str) -> None:
    config = Config("alembic.ini")
    config.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(config, "head")


def use_database(database_url: str) -> None:
    os.environ["DATABASE_URL"] = database_url
    get_settings.cache_clear()
    get_circuit_breaker().record_success()
