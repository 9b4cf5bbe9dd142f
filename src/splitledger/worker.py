from __future__ import annotations

import asyncio

from splitledger.config import get_settings
from splitledger.db.repo import Database
from splitledger.logging import configure_logging, get_logger
from splitledger.scheduler import setup_scheduler


async def main() -> None:
    configure_logging()
    settings = get_settings()
    db = Database(settings.database_url)
    await db.connect()

    scheduler = await setup_scheduler(db, settings)

    log = get_logger(__name__)
    log.info("worker.start")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await db.close()
        log.info("worker.stop")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
