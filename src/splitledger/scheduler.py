from __future__ import annotations

from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from splitledger.config import Settings, get_settings
from splitledger.db.repo import Database, LedgerRepository
from splitledger.logging import get_logger
from splitledger.services.membership import expire_invitations


async def setup_scheduler(db: Database, settings: Settings | None = None) -> AsyncIOScheduler:
    settings = settings or get_settings()

    scheduler = AsyncIOScheduler(timezone=settings.tz)
    scheduler.add_job(
        expire_invitations_job,
        IntervalTrigger(minutes=settings.invite_sweep_minutes),
        kwargs={"db": db},
        id="expire_invitations",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    return scheduler


async def expire_invitations_job(db: Database) -> int:
    log = get_logger(__name__)
    now = datetime.now(timezone.utc)
    async with db.transaction() as tx:
        expired = await expire_invitations(LedgerRepository(tx), now)
    log.info("invite.sweep", expired=expired)
    return expired
