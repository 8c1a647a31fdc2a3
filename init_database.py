#!/usr/bin/env python3
"""
Prepare a RaffleHub deployment before the first start

Creates the raffles, accounts and profiles tables in DATABASE_URL and the
directory raffle cover images are uploaded into. Pass --check to only report
what is missing.

Usage:
    python init_database.py [--check]
"""

import asyncio
import sys
from pathlib import Path

from loguru import logger

from rafflehub.config import settings
from rafflehub.database.init_db import REQUIRED_TABLES, check_db_health, init_database
from rafflehub.database.session import engine


async def prepare_tables(check_only: bool) -> bool:
    print(f"[tables] {', '.join(REQUIRED_TABLES)} in {engine.url.render_as_string(hide_password=True)}")
    if await check_db_health(engine):
        print("[tables] present")
        return True
    if check_only:
        print("[tables] missing")
        return False

    await init_database(engine)
    print("[tables] created")
    return True


def prepare_media(check_only: bool) -> bool:
    covers = Path(settings.MEDIA_ROOT) / "raffles" / settings.APP_ID
    print(f"[media] cover images go to {covers.resolve()}, served under {settings.MEDIA_BASE_URL}")
    if covers.is_dir():
        print("[media] present")
        return True
    if check_only:
        print("[media] missing")
        return False

    covers.mkdir(parents=True, exist_ok=True)
    print("[media] created")
    return True


async def main(check_only: bool):
    logger.remove()
    logger.add(sys.stderr, level="INFO")

    try:
        ready = await prepare_tables(check_only)
        ready = prepare_media(check_only) and ready
    except Exception as e:
        logger.exception(f"RaffleHub setup failed: {e}")
        sys.exit(1)
    finally:
        await engine.dispose()

    if not ready:
        print("\nRun without --check to create what is missing.")
        sys.exit(2)
    print("\nRaffleHub is ready, start the API with: python -m rafflehub.main")


if __name__ == "__main__":
    asyncio.run(main(check_only="--check" in sys.argv[1:]))
