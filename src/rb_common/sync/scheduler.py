"""
Scheduler for periodic housekeeping and guild sync.

Uses APScheduler to run:
- Expired pending verifications + OAuth states sweep: every 5 minutes
- Command cooldown sweep: every 10 minutes
- Expired blacklist purge: daily at midnight
- Role sync of every guild with auto-sync enabled: every N hours (default 6)

Member joins are handled in real time by the bot and need no scheduling.
"""

import asyncio
import logging
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from rb_common.auth.oauth import cleanup_expired_states
from rb_common.auth.verify_codes import cleanup_expired_verifications
from rb_common.discord.batch_sync import sync_guild
from rb_common.discord.cooldowns import CooldownTracker
from rb_common.discord.role_sync import ChatPlatform
from rb_common.identity import blacklist
from rb_common.identity.guild_config import list_auto_sync_guild_ids
from rb_common.roblox.client import RobloxClient

logger = logging.getLogger(__name__)


class BridgeScheduler:
    """Owns the AsyncIOScheduler and every periodic job."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        roblox: RobloxClient,
        chat: ChatPlatform,
        cooldowns: Optional[CooldownTracker] = None,
        connected_guild_ids: Optional[Callable[[], list[str]]] = None,
        auto_sync_interval_hours: int = 6,
        concurrency: int = 1,
    ):
        self.session_factory = session_factory
        self.roblox = roblox
        self.chat = chat
        self.cooldowns = cooldowns
        self.connected_guild_ids = connected_guild_ids
        self.auto_sync_interval_hours = auto_sync_interval_hours
        self.concurrency = concurrency

        self.cancel_event = asyncio.Event()
        self.scheduler = AsyncIOScheduler()

    async def start(self):
        self.scheduler.add_job(
            self.run_expiry_sweep,
            IntervalTrigger(minutes=5),
            id="expiry_sweep",
            name="Expired Verification & OAuth State Sweep",
            misfire_grace_time=300,
        )

        self.scheduler.add_job(
            self.run_cooldown_sweep,
            IntervalTrigger(minutes=10),
            id="cooldown_sweep",
            name="Command Cooldown Sweep",
            misfire_grace_time=300,
        )

        self.scheduler.add_job(
            self.run_blacklist_purge,
            CronTrigger(hour=0, minute=0),
            id="blacklist_purge",
            name="Expired Blacklist Purge",
            misfire_grace_time=3600,
        )

        if self.auto_sync_interval_hours > 0:
            self.scheduler.add_job(
                self.run_auto_sync,
                IntervalTrigger(hours=self.auto_sync_interval_hours),
                id="auto_sync",
                name="Guild Role Auto-Sync",
                misfire_grace_time=3600,
                max_instances=1,
            )

        self.scheduler.start()
        logger.info("Bridge scheduler started")

    async def stop(self):
        """Stop the scheduler; an auto-sync in progress stops after its current member."""
        self.cancel_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def run_expiry_sweep(self) -> tuple[int, int]:
        logger.debug("Running: cleanup expired verifications & OAuth states")
        pending = await cleanup_expired_verifications(self.session_factory)
        states = await cleanup_expired_states(self.session_factory)
        return pending, states

    async def run_cooldown_sweep(self) -> int:
        if self.cooldowns is None:
            return 0
        removed = self.cooldowns.sweep()
        logger.debug("Cooldown sweep removed %d entries", removed)
        return removed

    async def run_blacklist_purge(self) -> int:
        logger.info("Running: purge expired blacklist entries")
        async with self.session_factory() as db:
            removed = await blacklist.purge_expired(db)
            await db.commit()
        return removed

    async def run_auto_sync(self) -> dict:
        """Sync every connected guild whose config has auto-sync on."""
        async with self.session_factory() as db:
            enabled = await list_auto_sync_guild_ids(db)
        if self.connected_guild_ids is not None:
            connected = set(self.connected_guild_ids())
            enabled = [g for g in enabled if g in connected]

        logger.info("Running: scheduled auto-sync for %d guilds", len(enabled))
        reports = {}
        for guild_id in enabled:
            if self.cancel_event.is_set():
                break
            try:
                report = await sync_guild(
                    self.session_factory,
                    self.roblox,
                    self.chat,
                    guild_id,
                    concurrency=self.concurrency,
                    cancel_event=self.cancel_event,
                )
                reports[guild_id] = report
            except Exception as exc:
                logger.error("Auto-sync failed for guild %s: %s", guild_id, exc, exc_info=True)
        return reports
