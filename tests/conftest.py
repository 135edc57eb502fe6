"""Shared pytest fixtures for the RankBridge test suite."""

import os
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# In-memory SQLite; every connection shares one database via StaticPool
TEST_DATABASE_URL = "sqlite+aiosqlite://"

# Override settings before any app import
os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)
os.environ.setdefault("APP_ENV", "testing")


@pytest_asyncio.fixture
async def test_engine():
    """Fresh schema per test."""
    from rb_common.db.models import Base

    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A session for store-level tests. Nothing else uses the database meanwhile."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_roblox():
    """RobloxClient stand-in; tests set return values on the methods they use."""
    roblox = MagicMock()
    roblox.resolve_username = AsyncMock(return_value=None)
    roblox.get_profile = AsyncMock(return_value=None)
    roblox.get_group_info = AsyncMock(return_value=None)
    roblox.get_group_roles = AsyncMock(return_value=[])
    roblox.get_membership_rank = AsyncMock(return_value=None)
    roblox.set_rank = AsyncMock(return_value=True)
    return roblox


@pytest.fixture
def mock_chat():
    """ChatPlatform stand-in that records every call."""
    chat = MagicMock()
    chat.add_roles = AsyncMock()
    chat.remove_roles = AsyncMock()
    chat.set_nickname = AsyncMock()
    chat.fetch_members = AsyncMock(return_value=[])
    chat.fetch_member = AsyncMock(return_value=None)
    return chat


@pytest.fixture
def seed_link(session_factory):
    """Async helper that writes a committed link and returns it."""
    from rb_common.identity import links

    async def _seed(discord_id: str, roblox_id: str, username: str, display_name: str | None = None):
        async with session_factory() as db:
            link = await links.create_link(db, discord_id, roblox_id, username, display_name)
            await db.commit()
        return link

    return _seed


@pytest.fixture
def bot_context(session_factory, mock_roblox, mock_chat):
    from rb_common.discord.bot import BotContext
    from rb_common.discord.cooldowns import CooldownTracker

    return BotContext(
        session_factory=session_factory,
        roblox=mock_roblox,
        chat=mock_chat,
        cooldowns=CooldownTracker(300),
        default_group_id="7",
    )


@pytest.fixture
def command_tree(bot_context):
    """A CommandTree holding every slash command, bound to bot_context."""
    from discord import app_commands

    from rb_common.discord.admin_commands import register_admin_commands
    from rb_common.discord.commands import register_commands

    client = MagicMock()
    client._connection._command_tree = None
    tree = app_commands.CommandTree(client)
    register_commands(tree, bot_context)
    register_admin_commands(tree, bot_context)
    return tree


@pytest.fixture
def make_interaction():
    """Builds an Interaction stand-in for a moderator in guild 500."""

    def _make(user_id: int = 1, guild_id: int = 500):
        interaction = MagicMock()
        interaction.user.id = user_id
        interaction.user.mention = f"<@{user_id}>"
        interaction.guild_id = guild_id
        interaction.guild.id = guild_id
        interaction.guild.name = "Test Guild"
        interaction.guild.me = None
        interaction.response.defer = AsyncMock()
        interaction.response.send_message = AsyncMock()
        interaction.followup.send = AsyncMock()
        return interaction

    return _make
