"""
Unit tests for sync_guild (guild-wide role sync).

reconcile_member is patched out; members come from a mock chat platform.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from rb_common.audit import log as audit
from rb_common.discord.batch_sync import GuildSyncReport, sync_guild
from rb_common.discord.role_sync import ChatMember
from rb_common.errors import NoBindingsError, NotVerifiedError
from rb_common.identity.guild_config import get_guild_config

GUILD = "500"


def _members(n, bots=()):
    return [
        ChatMember(id=str(i), username=f"user{i}", is_bot=i in bots)
        for i in range(1, n + 1)
    ]


@pytest.fixture
def reconcile():
    with patch("rb_common.discord.batch_sync.reconcile_member", new_callable=AsyncMock) as mock:
        yield mock


class TestSyncGuild:
    async def test_counts_synced_skipped_failed(self, session_factory, mock_roblox, mock_chat, reconcile):
        mock_chat.fetch_members.return_value = _members(5, bots={1})

        async def outcome(factory, roblox, chat, member, guild_id):
            if member.id == "2":
                raise NotVerifiedError()
            if member.id == "3":
                raise NoBindingsError()
            if member.id == "4":
                raise RuntimeError("boom")

        reconcile.side_effect = outcome

        report = await sync_guild(session_factory, mock_roblox, mock_chat, GUILD)

        assert report.total == 5
        assert report.synced == 1
        assert report.skipped == 2
        assert report.failed == 2
        assert {e["member_id"]: e["error"] for e in report.errors} == {
            "3": "no_bindings",
            "4": "sync_failed",
        }
        # bots never reach the engine
        assert reconcile.await_count == 4

    async def test_marks_guild_synced_and_audits(self, session_factory, mock_roblox, mock_chat, reconcile):
        mock_chat.fetch_members.return_value = _members(2)

        await sync_guild(session_factory, mock_roblox, mock_chat, GUILD)

        async with session_factory() as db:
            config = await get_guild_config(db, GUILD)
            entries = await audit.get_recent(db, GUILD, action_type=audit.GUILD_SYNC)
        assert config.last_sync_at is not None
        assert len(entries) == 1
        assert entries[0].details["synced"] == 2

    async def test_member_listing_failure(self, session_factory, mock_roblox, mock_chat, reconcile):
        mock_chat.fetch_members.side_effect = RuntimeError("gateway down")

        report = await sync_guild(session_factory, mock_roblox, mock_chat, GUILD)

        assert report.total == 0
        assert report.errors[0]["error"] == "fetch_failed"
        reconcile.assert_not_awaited()

    async def test_progress_every_n_and_at_end(self, session_factory, mock_roblox, mock_chat, reconcile):
        mock_chat.fetch_members.return_value = _members(25)
        seen = []

        await sync_guild(
            session_factory, mock_roblox, mock_chat, GUILD,
            lambda done, total: seen.append((done, total)),
            progress_every=10,
        )

        assert seen == [(10, 25), (20, 25), (25, 25)]

    async def test_async_progress_callback(self, session_factory, mock_roblox, mock_chat, reconcile):
        mock_chat.fetch_members.return_value = _members(3)
        callback = AsyncMock()

        await sync_guild(session_factory, mock_roblox, mock_chat, GUILD, callback, progress_every=2)

        assert [c.args for c in callback.await_args_list] == [(2, 3), (3, 3)]

    async def test_broken_progress_callback_does_not_stop_sync(
        self, session_factory, mock_roblox, mock_chat, reconcile
    ):
        mock_chat.fetch_members.return_value = _members(4)
        callback = MagicMock(side_effect=RuntimeError("message deleted"))

        report = await sync_guild(session_factory, mock_roblox, mock_chat, GUILD, callback, progress_every=1)

        assert report.synced == 4

    async def test_cancel_stops_between_members(self, session_factory, mock_roblox, mock_chat, reconcile):
        mock_chat.fetch_members.return_value = _members(5)
        cancel = asyncio.Event()

        async def outcome(factory, roblox, chat, member, guild_id):
            if member.id == "2":
                cancel.set()

        reconcile.side_effect = outcome

        report = await sync_guild(
            session_factory, mock_roblox, mock_chat, GUILD, cancel_event=cancel
        )

        assert report.cancelled is True
        assert report.synced == 2
        assert reconcile.await_count == 2
        async with session_factory() as db:
            assert await get_guild_config(db, GUILD) is None

    async def test_concurrency_is_bounded(self, session_factory, mock_roblox, mock_chat, reconcile):
        mock_chat.fetch_members.return_value = _members(8)
        running = 0
        peak = 0

        async def outcome(*args):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0)
            running -= 1

        reconcile.side_effect = outcome

        report = await sync_guild(session_factory, mock_roblox, mock_chat, GUILD, concurrency=3)

        assert report.synced == 8
        assert 1 < peak <= 3


def test_report_dict():
    report = GuildSyncReport(total=3, synced=1, skipped=1, failed=1, errors=[{"member_id": "1"}])
    assert report.processed == 3
    assert report.to_dict()["errors"] == [{"member_id": "1"}]
