"""
Release-phase step: migrate, verify, seed.

Runs `alembic upgrade head` against DATABASE_URL, confirms the workflow
tables are present, then seeds permissions/roles/admin (idempotent; an
existing admin password is never overwritten).

Usage:
  python scripts/release.py [--skip-seed]
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("moc.release")


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def verify_schema(db_url: str) -> None:
    from app.moc.db import build_engine, missing_schema

    engine = build_engine(db_url)
    try:
        missing = missing_schema(engine)
    finally:
        engine.dispose()
    if missing:
        raise RuntimeError(f"Schema incomplete after migration: {', '.join(missing)}")


def run_release(*, seed: bool = True) -> None:
    db_url = _database_url()
    logger.info("Release start (ENV=%s)", os.environ.get("ENV") or "(unset)")

    migrate(db_url)
    logger.info("Migrations complete")
    verify_schema(db_url)

    if seed:
        from scripts import init_db

        init_db.seed_only(database_url=db_url)
        logger.info("Seed complete")
    logger.info("Release done")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Migrate and seed the MOC database.")
    parser.add_argument("--skip-seed", action="store_true", help="Only run migrations.")
    args = parser.parse_args(argv)
    logging.basicConfig(level=os.environ.get("LOG_LEVEL") or "INFO", format="%(levelname)s %(name)s: %(message)s")
    try:
        run_release(seed=not args.skip_seed)
    except RuntimeError as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
