"""Per-guild verification blacklist. Entries with a past expiry are ignored."""

import logging
from datetime import datetime

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rb_common.db.models import BlacklistEntry
from rb_common.db.timestamps import utcnow

logger = logging.getLogger(__name__)


def _active(now: datetime):
    return or_(BlacklistEntry.expires_at.is_(None), BlacklistEntry.expires_at > now)


async def add_to_blacklist(
    db: AsyncSession,
    guild_id: str,
    discord_id: str | None = None,
    roblox_id: str | None = None,
    reason: str | None = None,
    banned_by: str | None = None,
    expires_at: datetime | None = None,
) -> BlacklistEntry:
    if discord_id is None and roblox_id is None:
        raise ValueError("A blacklist entry needs a Discord id or a Roblox id")

    # Either id already on file means this is the same person
    match = []
    if discord_id is not None:
        match.append(BlacklistEntry.discord_id == str(discord_id))
    if roblox_id is not None:
        match.append(BlacklistEntry.roblox_id == str(roblox_id))
    stmt = (
        select(BlacklistEntry)
        .where(BlacklistEntry.guild_id == str(guild_id), or_(*match))
        .order_by(BlacklistEntry.id)
    )
    entry = (await db.execute(stmt)).scalars().first()

    if entry is None:
        entry = BlacklistEntry(guild_id=str(guild_id))
        db.add(entry)
    if discord_id is not None:
        entry.discord_id = str(discord_id)
    if roblox_id is not None:
        entry.roblox_id = str(roblox_id)
    entry.reason = reason
    entry.banned_by = banned_by
    entry.expires_at = expires_at
    await db.flush()
    logger.info("Blacklisted discord=%s roblox=%s in guild %s", discord_id, roblox_id, guild_id)
    return entry


async def remove_from_blacklist(
    db: AsyncSession,
    guild_id: str,
    discord_id: str | None = None,
    roblox_id: str | None = None,
) -> int:
    if discord_id is not None:
        cond = BlacklistEntry.discord_id == str(discord_id)
    elif roblox_id is not None:
        cond = BlacklistEntry.roblox_id == str(roblox_id)
    else:
        return 0
    result = await db.execute(
        delete(BlacklistEntry).where(BlacklistEntry.guild_id == str(guild_id), cond)
    )
    await db.flush()
    return result.rowcount or 0


async def is_discord_blacklisted(db: AsyncSession, guild_id: str | None, discord_id: str) -> bool:
    if guild_id is None:
        return False
    result = await db.execute(
        select(BlacklistEntry.id).where(
            BlacklistEntry.guild_id == str(guild_id),
            BlacklistEntry.discord_id == str(discord_id),
            _active(utcnow()),
        )
    )
    return result.first() is not None


async def is_roblox_blacklisted(db: AsyncSession, guild_id: str | None, roblox_id: str) -> bool:
    if guild_id is None:
        return False
    result = await db.execute(
        select(BlacklistEntry.id).where(
            BlacklistEntry.guild_id == str(guild_id),
            BlacklistEntry.roblox_id == str(roblox_id),
            _active(utcnow()),
        )
    )
    return result.first() is not None


async def get_active_entry(db: AsyncSession, guild_id: str, discord_id: str) -> BlacklistEntry | None:
    result = await db.execute(
        select(BlacklistEntry).where(
            BlacklistEntry.guild_id == str(guild_id),
            BlacklistEntry.discord_id == str(discord_id),
            _active(utcnow()),
        )
    )
    return result.scalar_one_or_none()


async def get_blacklist(db: AsyncSession, guild_id: str) -> list[BlacklistEntry]:
    result = await db.execute(
        select(BlacklistEntry)
        .where(BlacklistEntry.guild_id == str(guild_id))
        .order_by(BlacklistEntry.id.desc())
    )
    return list(result.scalars().all())


async def purge_expired(db: AsyncSession) -> int:
    result = await db.execute(
        delete(BlacklistEntry).where(
            BlacklistEntry.expires_at.is_not(None),
            BlacklistEntry.expires_at <= utcnow(),
        )
    )
    await db.flush()
    return result.rowcount or 0
