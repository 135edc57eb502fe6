"""
Unit tests for the bot's gateway event handlers and the discord.py adapter.

Discord objects are MagicMocks; reconcile_member is patched.
"""

import discord
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from rb_common.discord import bot as bot_module
from rb_common.discord.bot import (
    BotContext,
    on_guild_join,
    on_member_join,
    post_to_log_channel,
    send_welcome,
    set_context,
)
from rb_common.discord.chat import DiscordChatAdapter, member_snapshot
from rb_common.discord.cooldowns import CooldownTracker
from rb_common.errors import NoBindingsError
from rb_common.identity.guild_config import get_guild_config, update_guild_config


def _make_member(member_id=42, bot=False, role_ids=(1, 2), nick=None):
    member = MagicMock()
    member.id = member_id
    member.name = "discorduser"
    member.bot = bot
    member.nick = nick
    member.roles = [MagicMock(id=r) for r in role_ids]
    member.guild.id = 500
    return member


@pytest.fixture
def context(session_factory, mock_roblox, mock_chat):
    ctx = BotContext(
        session_factory=session_factory,
        roblox=mock_roblox,
        chat=mock_chat,
        cooldowns=CooldownTracker(300),
    )
    set_context(ctx)
    yield ctx
    set_context(None)


@pytest.fixture
def reconcile():
    with patch.object(bot_module, "reconcile_member", new_callable=AsyncMock) as mock:
        yield mock


def test_member_snapshot():
    snapshot = member_snapshot(_make_member(role_ids=(10, 20), nick="Nick"))
    assert snapshot.id == "42"
    assert snapshot.role_ids == frozenset({"10", "20"})
    assert snapshot.nickname == "Nick"
    assert snapshot.is_bot is False


class TestMemberJoin:
    async def test_linked_member_is_synced(self, context, reconcile, seed_link):
        await seed_link("42", "9001", "builderman")
        reconcile.return_value = MagicMock(roles_added=1, roles_removed=0)

        await on_member_join(_make_member())

        reconcile.assert_awaited_once()
        args = reconcile.await_args.args
        assert args[3].id == "42"
        assert args[4] == "500"

    async def test_unlinked_member_ignored(self, context, reconcile):
        await on_member_join(_make_member())
        reconcile.assert_not_awaited()

    async def test_bots_ignored(self, context, reconcile):
        await on_member_join(_make_member(bot=True))
        reconcile.assert_not_awaited()

    async def test_sync_error_is_logged_not_raised(self, context, reconcile, seed_link):
        await seed_link("42", "9001", "builderman")
        reconcile.side_effect = NoBindingsError()

        await on_member_join(_make_member())


class TestWelcomeMessage:
    async def _configure(self, session_factory, **fields):
        async with session_factory() as db:
            await update_guild_config(db, "500", **fields)
            await db.commit()

    def _member_in(self, channel):
        member = _make_member()
        member.mention = "<@42>"
        member.guild.name = "Test Guild"
        member.guild.get_channel.return_value = channel
        return member

    async def test_sent_to_unlinked_member(self, context, reconcile, session_factory):
        await self._configure(
            session_factory, verification_channel_id="900",
            welcome_message="Welcome {user} to {server}! Run /verify, {username}.",
        )
        channel = MagicMock(send=AsyncMock())

        await on_member_join(self._member_in(channel))

        reconcile.assert_not_awaited()
        channel.send.assert_awaited_once_with("Welcome <@42> to Test Guild! Run /verify, discorduser.")

    async def test_needs_both_channel_and_message(self, context, reconcile, session_factory):
        await self._configure(session_factory, welcome_message="Hi {user}")
        channel = MagicMock(send=AsyncMock())

        await on_member_join(self._member_in(channel))

        channel.send.assert_not_awaited()

    async def test_send_failure_is_logged(self, context, reconcile, session_factory):
        await self._configure(session_factory, verification_channel_id="900", welcome_message="Hi")
        channel = MagicMock()
        channel.send = AsyncMock(side_effect=discord.Forbidden(MagicMock(status=403, reason="Forbidden"), "nope"))

        assert await send_welcome(session_factory, self._member_in(channel)) is False


class TestLogChannel:
    async def test_posts_when_configured(self, session_factory):
        async with session_factory() as db:
            await update_guild_config(db, "500", log_channel_id="901")
            await db.commit()
        guild = MagicMock(id=500)
        guild.get_channel.return_value = MagicMock(send=AsyncMock())
        embed = discord.Embed(title="Rank Updated")

        assert await post_to_log_channel(session_factory, guild, embed) is True
        guild.get_channel.assert_called_once_with(901)
        guild.get_channel.return_value.send.assert_awaited_once_with(embed=embed)

    async def test_no_channel_configured(self, session_factory):
        guild = MagicMock(id=500)
        assert await post_to_log_channel(session_factory, guild, discord.Embed()) is False
        guild.get_channel.assert_not_called()

    async def test_deleted_channel(self, session_factory):
        async with session_factory() as db:
            await update_guild_config(db, "500", log_channel_id="901")
            await db.commit()
        guild = MagicMock(id=500)
        guild.get_channel.return_value = None
        assert await post_to_log_channel(session_factory, guild, discord.Embed()) is False


async def test_guild_join_creates_config(context, session_factory):
    guild = MagicMock()
    guild.id = 777
    guild.name = "Test Guild"

    await on_guild_join(guild)

    async with session_factory() as db:
        config = await get_guild_config(db, "777")
    assert config is not None
    assert config.auto_sync_enabled is True


class TestDiscordChatAdapter:
    @pytest.fixture
    def member(self):
        member = _make_member()
        member.add_roles = AsyncMock()
        member.remove_roles = AsyncMock()
        member.edit = AsyncMock()
        return member

    @pytest.fixture
    def adapter(self, member):
        guild = MagicMock()
        guild.get_member.return_value = member
        client = MagicMock()
        client.get_guild.return_value = guild
        return DiscordChatAdapter(client)

    async def test_add_roles_batched(self, adapter, member):
        await adapter.add_roles("500", "42", ["10", "20"])

        args, kwargs = member.add_roles.await_args
        assert [r.id for r in args] == [10, 20]
        assert kwargs["atomic"] is False

    async def test_single_role_is_atomic(self, adapter, member):
        await adapter.remove_roles("500", "42", ["10"])
        _, kwargs = member.remove_roles.await_args
        assert kwargs["atomic"] is True

    async def test_set_nickname(self, adapter, member):
        await adapter.set_nickname("500", "42", "[Pvt] builderman")
        assert member.edit.await_args.kwargs["nick"] == "[Pvt] builderman"

    async def test_fetch_member_not_found(self, adapter):
        guild = adapter.bot.get_guild.return_value
        guild.get_member.return_value = None
        guild.fetch_member = AsyncMock(
            side_effect=discord.NotFound(MagicMock(status=404, reason="Not Found"), "Unknown Member")
        )

        assert await adapter.fetch_member("500", "42") is None

    async def test_fetch_members_from_cache(self, adapter, member):
        guild = adapter.bot.get_guild.return_value
        guild.chunked = True
        guild.members = [member]

        members = await adapter.fetch_members("500")

        assert [m.id for m in members] == ["42"]
