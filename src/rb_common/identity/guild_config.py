"""Per-guild settings rows."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rb_common.db.models import GuildConfig
from rb_common.db.timestamps import utcnow


async def get_guild_config(db: AsyncSession, guild_id: str) -> GuildConfig | None:
    result = await db.execute(select(GuildConfig).where(GuildConfig.guild_id == str(guild_id)))
    return result.scalar_one_or_none()


async def get_or_create_guild_config(db: AsyncSession, guild_id: str) -> GuildConfig:
    config = await get_guild_config(db, guild_id)
    if config is None:
        config = GuildConfig(guild_id=str(guild_id), auto_sync_enabled=True)
        db.add(config)
        await db.flush()
    return config


async def update_guild_config(db: AsyncSession, guild_id: str, /, **kwargs) -> GuildConfig:
    """Set whitelisted fields; unknown keys (including guild_id) are ignored."""
    config = await get_or_create_guild_config(db, guild_id)
    allowed = {
        "auto_sync_enabled",
        "log_channel_id",
        "verification_channel_id",
        "welcome_message",
    }
    for key, value in kwargs.items():
        if key in allowed:
            setattr(config, key, value)
    await db.flush()
    return config


async def list_auto_sync_guild_ids(db: AsyncSession) -> list[str]:
    result = await db.execute(
        select(GuildConfig.guild_id).where(GuildConfig.auto_sync_enabled.is_(True))
    )
    return list(result.scalars().all())


async def mark_synced(db: AsyncSession, guild_id: str) -> None:
    config = await get_or_create_guild_config(db, guild_id)
    config.last_sync_at = utcnow()
    await db.flush()
