"""Helpers for recording verification, binding, rank and admin actions in audit_logs."""

import logging

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rb_common.db.models import AuditLog

logger = logging.getLogger(__name__)

VERIFICATION = "verification"
UNLINK = "unlink"
PROMOTION = "promotion"
DEMOTION = "demotion"
RANK_CHANGE = "rank_change"
BINDING_CHANGE = "binding_change"
GUILD_SYNC = "guild_sync"
BLACKLIST_ADD = "blacklist_add"
BLACKLIST_REMOVE = "blacklist_remove"
CONFIG_CHANGE = "config_change"


async def record_audit(
    db: AsyncSession,
    guild_id: str | None,
    action_type: str,
    actor_discord_id: str | None = None,
    target_discord_id: str | None = None,
    target_roblox_id: str | None = None,
    old_value: str | None = None,
    new_value: str | None = None,
    details: dict | None = None,
) -> AuditLog:
    entry = AuditLog(
        guild_id=str(guild_id) if guild_id is not None else None,
        action_type=action_type,
        actor_discord_id=actor_discord_id,
        target_discord_id=target_discord_id,
        target_roblox_id=target_roblox_id,
        old_value=old_value,
        new_value=new_value,
        details=details,
    )
    db.add(entry)
    await db.flush()
    logger.debug("Audit %s guild=%s target=%s", action_type, guild_id, target_discord_id)
    return entry


async def get_recent(
    db: AsyncSession,
    guild_id: str,
    limit: int = 50,
    action_type: str | None = None,
    discord_id: str | None = None,
) -> list[AuditLog]:
    """Newest first. discord_id matches entries where the user is actor or target."""
    stmt = select(AuditLog).where(AuditLog.guild_id == str(guild_id))
    if action_type is not None:
        stmt = stmt.where(AuditLog.action_type == action_type)
    if discord_id is not None:
        stmt = stmt.where(or_(
            AuditLog.actor_discord_id == str(discord_id),
            AuditLog.target_discord_id == str(discord_id),
        ))
    stmt = stmt.order_by(AuditLog.id.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
