"""Bring the lesson delivery schema up to date before the API starts.

Waits until the database answers ``SELECT 1``, then runs ``alembic upgrade``.
With ``--sql`` the upgrade is rendered as SQL on stdout instead and the
database is never contacted. Exits non-zero when the database stays
unreachable or the upgrade fails.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

LOGGER = logging.getLogger("lesson_engine.migrations")
BACKEND_ROOT = Path(__file__).resolve().parent.parent
ALEMBIC_INI = BACKEND_ROOT / "alembic.ini"


def _env_number(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upgrade the lesson delivery schema once the database is up.")
    parser.add_argument("--revision", default=os.getenv("LESSON_DB_MIGRATION_REVISION", "head"))
    parser.add_argument(
        "--timeout",
        type=int,
        default=int(_env_number("LESSON_DB_MIGRATION_TIMEOUT", "60")),
        help="Seconds to keep probing the database.",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=_env_number("LESSON_DB_MIGRATION_POLL_INTERVAL", "3"),
        help="Seconds between connection attempts.",
    )
    parser.add_argument("--config", default=str(ALEMBIC_INI), help="alembic.ini to load.")
    parser.add_argument("--sql", action="store_true", help="Print the upgrade SQL instead of applying it.")
    return parser.parse_args(argv)


def get_alembic_config(config_path: str) -> Config:
    config = Config(config_path)
    config.set_main_option("script_location", str(BACKEND_ROOT / "alembic"))
    return config


def resolve_database_url(config: Config) -> str:
    """URL from the alembic config, else LESSON_DATABASE_URL (copied into the config)."""
    configured = config.get_main_option("sqlalchemy.url")
    if configured:
        return configured
    from_env = os.getenv("LESSON_DATABASE_URL")
    if not from_env:
        raise RuntimeError("LESSON_DATABASE_URL must be set before running migrations.")
    # configparser interpolation treats "%" specially
    config.set_main_option("sqlalchemy.url", from_env.replace("%", "%%"))
    return from_env


def _ping(engine: Engine) -> None:
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def wait_for_database(database_url: str, *, timeout: int, poll_interval: float) -> None:
    deadline = time.monotonic() + timeout
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    failure: Optional[Exception] = None
    attempts = 0
    try:
        while True:
            attempts += 1
            try:
                _ping(engine)
            except OperationalError as exc:
                failure = exc
                LOGGER.warning("Database not reachable yet (attempt %s): %s", attempts, exc)
            except SQLAlchemyError as exc:
                failure = exc
                LOGGER.error("Database check failed permanently: %s", exc)
                break
            else:
                LOGGER.info("Database answered on attempt %s", attempts)
                return
            if time.monotonic() + poll_interval >= deadline:
                break
            time.sleep(poll_interval)
    finally:
        engine.dispose()
    raise RuntimeError(f"Database not ready after {attempts} attempt(s).") from failure


def run_migrations(
    revision: str,
    *,
    timeout: int,
    poll_interval: float,
    config: Optional[Config] = None,
    sql: bool = False,
) -> None:
    config = config or get_alembic_config(str(ALEMBIC_INI))
    database_url = resolve_database_url(config)
    if sql:
        command.upgrade(config, revision, sql=True)
        return
    wait_for_database(database_url, timeout=timeout, poll_interval=poll_interval)
    LOGGER.info("Upgrading lesson delivery schema to %s", revision)
    command.upgrade(config, revision)
    LOGGER.info("Lesson delivery schema is at %s", revision)


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=os.getenv("LESSON_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = parse_args(argv)
    try:
        run_migrations(
            args.revision,
            timeout=args.timeout,
            poll_interval=args.poll_interval,
            config=get_alembic_config(args.config),
            sql=args.sql,
        )
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Migration run failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
