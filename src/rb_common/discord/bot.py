"""RankBridge Discord client.

Provides the bot instance used throughout the application.
The bot is started as a background task during FastAPI lifespan.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import discord
from discord.ext import commands
from sqlalchemy.ext.asyncio import async_sessionmaker

from rb_common.discord.chat import DiscordChatAdapter, member_snapshot
from rb_common.discord.cooldowns import CooldownTracker
from rb_common.discord.role_sync import reconcile_member
from rb_common.errors import BridgeError
from rb_common.identity import links
from rb_common.identity.guild_config import get_guild_config, get_or_create_guild_config
from rb_common.roblox.client import RobloxClient
from rb_common.roblox.oauth_client import RobloxOAuthClient

logger = logging.getLogger(__name__)

# Intents: members required for join events and guild-wide sync
intents = discord.Intents.default()
intents.members = True
intents.message_content = False

bot = commands.Bot(command_prefix="!", intents=intents)


@dataclass
class BotContext:
    """Everything the event handlers and slash commands share."""

    session_factory: async_sessionmaker
    roblox: RobloxClient
    chat: DiscordChatAdapter
    cooldowns: CooldownTracker
    oauth: Optional[RobloxOAuthClient] = None
    default_group_id: Optional[str] = None
    verification_timeout_minutes: int = 10
    oauth_state_timeout_minutes: int = 10
    batch_concurrency: int = 1
    syncs_in_progress: set[str] = field(default_factory=set)


# context is set by the FastAPI lifespan after startup
_context: Optional[BotContext] = None
_commands_registered = False


def set_context(context: BotContext):
    """Called from FastAPI lifespan to give the bot its services."""
    global _context
    _context = context


def get_context() -> Optional[BotContext]:
    return _context


@bot.event
async def on_ready():
    global _commands_registered
    logger.info("RankBridge bot connected as %s (id=%s)", bot.user, bot.user.id)

    if _context is None:
        logger.warning("on_ready: context not set, slash commands not registered")
        return

    async with _context.session_factory() as db:
        for guild in bot.guilds:
            await get_or_create_guild_config(db, str(guild.id))
        await db.commit()

    if not _commands_registered:
        try:
            from rb_common.discord.admin_commands import register_admin_commands
            from rb_common.discord.commands import register_commands
            register_commands(bot.tree, _context)
            register_admin_commands(bot.tree, _context)
            await bot.tree.sync()
            _commands_registered = True
            logger.info("Slash commands registered")
        except Exception as e:
            logger.warning("Failed to register slash commands: %s", e)


@bot.event
async def on_guild_join(guild: discord.Guild):
    if _context is None:
        return
    async with _context.session_factory() as db:
        await get_or_create_guild_config(db, str(guild.id))
        await db.commit()
    logger.info("Joined guild %s (%s)", guild.name, guild.id)


@bot.event
async def on_member_join(member: discord.Member):
    if member.bot:
        return

    ctx = _context
    if ctx is None:
        logger.warning("on_member_join: context not set, skipping sync for %s", member.name)
        return

    async with ctx.session_factory() as db:
        link = await links.get_link_by_discord_id(db, str(member.id))

    if link is not None:
        try:
            result = await reconcile_member(
                ctx.session_factory, ctx.roblox, ctx.chat, member_snapshot(member), str(member.guild.id)
            )
            logger.info(
                "Auto-synced %s on join: +%d, -%d", member.name, result.roles_added, result.roles_removed
            )
        except BridgeError as e:
            logger.warning("on_member_join sync skipped for %s: %s", member.name, e.message)

    await send_welcome(ctx.session_factory, member)


def render_welcome(template: str, mention: str, server: str, username: str) -> str:
    """Fill the {user}, {server} and {username} placeholders of a welcome message."""
    return (
        template.replace("{user}", mention)
        .replace("{server}", server)
        .replace("{username}", username)
    )


async def _configured_channel(session_factory: async_sessionmaker, guild: discord.Guild, field_name: str):
    async with session_factory() as db:
        config = await get_guild_config(db, str(guild.id))
    channel_id = getattr(config, field_name, None) if config is not None else None
    if not channel_id:
        return config, None
    channel = guild.get_channel(int(channel_id))
    if channel is None:
        logger.warning("Configured %s %s not found in guild %s", field_name, channel_id, guild.id)
    return config, channel


async def send_welcome(session_factory: async_sessionmaker, member: discord.Member) -> bool:
    """Post the guild's welcome message in its verification channel, when both are set."""
    config, channel = await _configured_channel(session_factory, member.guild, "verification_channel_id")
    if channel is None or not config.welcome_message:
        return False
    text = render_welcome(config.welcome_message, member.mention, member.guild.name, member.name)
    try:
        await channel.send(text)
    except discord.HTTPException as e:
        logger.warning("Failed to send welcome message in guild %s: %s", member.guild.id, e)
        return False
    return True


async def post_to_log_channel(
    session_factory: async_sessionmaker, guild: discord.Guild, embed: discord.Embed
) -> bool:
    """Mirror an embed into the guild's log channel, if one is configured."""
    _, channel = await _configured_channel(session_factory, guild, "log_channel_id")
    if channel is None:
        return False
    try:
        await channel.send(embed=embed)
    except discord.HTTPException as e:
        logger.warning("Failed to post to log channel in guild %s: %s", guild.id, e)
        return False
    return True


async def start_bot(token: str) -> None:
    """Start the bot. Intended to be run as an asyncio background task."""
    await bot.start(token)


async def stop_bot() -> None:
    """Gracefully close the bot connection."""
    if not bot.is_closed():
        await bot.close()


def get_bot() -> commands.Bot:
    """Return the global bot instance."""
    return bot


def connected_guild_ids() -> list[str]:
    return [str(g.id) for g in bot.guilds]
