"""
Schema Migration Script

Applies pending versioned migrations (indexes, data backfills) recorded in
the schema_migrations collection. Run once per deploy, before the API
starts serving traffic. Re-running is a no-op.

Usage (from backend/):
  python -m scripts.migrate
  python -m scripts.migrate --status

Environment:
    MONGO_URL - Required
    DB_NAME - Required
"""

import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import get_db_context
from migrations import LATEST_VERSION, MIGRATIONS, current_version, migrate
import logging

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def show_status() -> int:
    async with get_db_context() as db:
        applied = await current_version(db)
    logger.info("Schema version: %s (latest: %s)", applied, LATEST_VERSION)
    for version, name, _ in MIGRATIONS:
        state = "applied" if version <= applied else "pending"
        logger.info("  %s %-20s %s", version, name, state)
    return 0 if applied >= LATEST_VERSION else 1


async def run_migrations() -> int:
    async with get_db_context() as db:
        applied = await migrate(db)
    if applied:
        logger.info("Applied migrations: %s", applied)
    return 0


def main():
    parser = argparse.ArgumentParser(description="Apply pending schema migrations")
    parser.add_argument("--status", action="store_true", help="Report applied and pending migrations only")
    args = parser.parse_args()
    if args.status:
        return asyncio.run(show_status())
    return asyncio.run(run_migrations())


if __name__ == "__main__":
    sys.exit(main())
