"""Guild-wide role sync: run reconcile_member for every member of a guild.

Bots and unverified members are skipped; any other failure is recorded per
member and the sweep carries on. A sweep can be cancelled between members
(never mid-member) and then reports whatever it finished.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from rb_common.audit import log as audit
from rb_common.discord.role_sync import ChatMember, ChatPlatform, reconcile_member
from rb_common.errors import BridgeError, NotVerifiedError
from rb_common.identity.guild_config import mark_synced
from rb_common.roblox.client import RobloxClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Any]


@dataclass
class GuildSyncReport:
    total: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return self.synced + self.skipped + self.failed

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "synced": self.synced,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
            "cancelled": self.cancelled,
        }


async def _report_progress(callback: Optional[ProgressCallback], processed: int, total: int) -> None:
    if callback is None:
        return
    try:
        outcome = callback(processed, total)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as exc:
        # A broken progress message must not stop the sweep
        logger.warning("Progress callback failed: %s", exc)


async def sync_guild(
    session_factory: async_sessionmaker,
    roblox: RobloxClient,
    chat: ChatPlatform,
    guild_id: str,
    progress_callback: Optional[ProgressCallback] = None,
    *,
    concurrency: int = 1,
    progress_every: int = 10,
    cancel_event: Optional[asyncio.Event] = None,
) -> GuildSyncReport:
    guild_id = str(guild_id)
    report = GuildSyncReport()

    try:
        members = await chat.fetch_members(guild_id)
    except Exception as exc:
        logger.error("Guild sync failed to list members of %s: %s", guild_id, exc)
        report.errors.append({"member_id": None, "error": "fetch_failed", "message": str(exc)})
        return report

    report.total = len(members)
    semaphore = asyncio.Semaphore(max(1, concurrency))
    progress_lock = asyncio.Lock()

    async def _finish_one() -> None:
        async with progress_lock:
            if report.processed % progress_every == 0:
                await _report_progress(progress_callback, report.processed, report.total)

    async def _sync_one(member: ChatMember) -> None:
        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                return
            if member.is_bot:
                report.skipped += 1
            else:
                try:
                    await reconcile_member(session_factory, roblox, chat, member, guild_id)
                    report.synced += 1
                except NotVerifiedError:
                    report.skipped += 1
                except BridgeError as exc:
                    report.failed += 1
                    report.errors.append(
                        {"member_id": member.id, "error": exc.code, "message": exc.message}
                    )
                    logger.warning("Sync failed for member %s: %s", member.id, exc.message)
                except Exception as exc:
                    report.failed += 1
                    report.errors.append(
                        {"member_id": member.id, "error": "sync_failed", "message": str(exc)}
                    )
                    logger.error("Unexpected error syncing member %s", member.id, exc_info=True)
            await _finish_one()

    await asyncio.gather(*(_sync_one(m) for m in members))

    if report.processed % progress_every != 0:
        await _report_progress(progress_callback, report.processed, report.total)

    if not report.cancelled:
        async with session_factory() as db:
            await mark_synced(db, guild_id)
            await audit.record_audit(
                db,
                guild_id,
                audit.GUILD_SYNC,
                details={k: v for k, v in report.to_dict().items() if k != "errors"},
            )
            await db.commit()

    logger.info(
        "Guild sync %s %s: %d synced, %d skipped, %d failed",
        guild_id,
        "cancelled" if report.cancelled else "complete",
        report.synced,
        report.skipped,
        report.failed,
    )
    return report
