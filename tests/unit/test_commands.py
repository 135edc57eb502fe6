"""
Unit tests for slash commands.

error_text and binding_lines are pure. Command callbacks are pulled off a
real CommandTree and driven with MagicMock interactions against the
in-memory database.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import httpx
from sqlalchemy import select

from rb_common.audit import log as audit
from rb_common.db.models import PendingVerification
from rb_common.db.timestamps import utcnow
from rb_common.discord.commands import binding_lines, error_text
from rb_common.errors import (
    AlreadyVerifiedError,
    CodeNotFoundError,
    NotVerifiedError,
    UserNotFoundError,
)
from rb_common.identity import bindings
from rb_common.roblox.client import GroupMembership


class TestErrorText:
    def test_not_verified_self(self):
        assert "/verify" in error_text(NotVerifiedError())

    def test_not_verified_other_member(self):
        assert error_text(NotVerifiedError(), is_self=False, target="<@5>") == "<@5> is not verified."

    def test_code_not_found_shows_code(self):
        text = error_text(CodeNotFoundError(code="AB3C7K9Q"))
        assert "`AB3C7K9Q`" in text

    def test_already_verified_points_to_reverify(self):
        text = error_text(AlreadyVerifiedError("Already verified as builderman."))
        assert text.startswith("Already verified as builderman.")
        assert "/reverify" in text

    def test_other_errors_use_message(self):
        assert error_text(UserNotFoundError("Could not find Roblox user 'x'.")) == (
            "Could not find Roblox user 'x'."
        )


class TestBindingLines:
    def test_rank_and_group_lines(self):
        exported = {
            "guild_id": "1",
            "rank_bindings": [
                {"group_id": "7", "rank": 10, "rank_name": "Member", "role_id": "55",
                 "role_name": "Members", "priority": 0, "nickname_template": None},
                {"group_id": "7", "rank": 255, "rank_name": None, "role_id": "66",
                 "role_name": None, "priority": 5, "nickname_template": "[{rank-name}]"},
            ],
            "group_bindings": [
                {"group_id": "8", "role_id": "77", "role_name": "Allies", "priority": 0,
                 "nickname_template": None},
            ],
        }

        lines = binding_lines(exported)

        assert lines[0] == "Group 7 rank Member (10) → <@&55>"
        assert lines[1] == "Group 7 rank 255 → <@&66> · priority 5 · `[{rank-name}]`"
        assert lines[2] == "Group 8 (any rank) → <@&77>"

    def test_empty(self):
        assert binding_lines({"guild_id": "1", "rank_bindings": [], "group_bindings": []}) == []


class TestGroupBind:
    async def test_roblox_outage_reports_error(self, command_tree, make_interaction, mock_roblox, session_factory):
        mock_roblox.get_group_info.side_effect = httpx.ConnectTimeout("timed out")
        interaction = make_interaction()

        await command_tree.get_command("groupbind").callback(interaction, group="8", role=MagicMock(id=77))

        text = interaction.followup.send.await_args.args[0]
        assert text.startswith("❌ Could not reach Roblox")
        async with session_factory() as db:
            assert await bindings.get_group_bindings(db, "500") == []

    async def test_unknown_group(self, command_tree, make_interaction, mock_roblox):
        interaction = make_interaction()

        await command_tree.get_command("groupbind").callback(interaction, group="8", role=MagicMock(id=77))

        assert interaction.followup.send.await_args.args[0] == "❌ Roblox group 8 was not found."


class TestUnbindAll:
    async def test_removes_everything_and_audits(self, command_tree, make_interaction, session_factory):
        async with session_factory() as db:
            await bindings.upsert_rank_binding(db, "500", "7", 10, None, "55", None)
            await bindings.upsert_group_binding(db, "500", "8", "66", None)
            await db.commit()
        interaction = make_interaction()

        await command_tree.get_command("unbindall").callback(interaction)

        assert interaction.response.send_message.await_args.args[0] == "✅ Removed all 2 binding(s)."
        async with session_factory() as db:
            assert await bindings.get_managed_role_ids(db, "500") == set()
            entries = await audit.get_recent(db, "500")
        assert entries[0].details == {"action": "delete_all", "removed": 2}

    async def test_nothing_to_remove(self, command_tree, make_interaction):
        interaction = make_interaction()
        await command_tree.get_command("unbindall").callback(interaction)
        assert interaction.response.send_message.await_args.kwargs["ephemeral"] is True


class TestVerifyStatus:
    async def test_already_verified(self, command_tree, make_interaction, seed_link):
        await seed_link("1", "9001", "builderman")
        interaction = make_interaction()

        await command_tree.get_command("verify").callback(interaction)

        assert "already verified as **builderman**" in interaction.response.send_message.await_args.args[0]

    async def test_pending_code_is_repeated(self, command_tree, make_interaction, session_factory):
        async with session_factory() as db:
            db.add(PendingVerification(
                discord_id="1", verification_code="AB3C7K9Q", roblox_username="builderman",
                expires_at=utcnow() + timedelta(minutes=5),
            ))
            await db.commit()
        interaction = make_interaction()

        await command_tree.get_command("verify").callback(interaction)

        text = interaction.response.send_message.await_args.args[0]
        assert "`AB3C7K9Q`" in text
        assert "/verify-cancel" in text

    async def test_cancel(self, command_tree, make_interaction, session_factory):
        async with session_factory() as db:
            db.add(PendingVerification(
                discord_id="1", verification_code="AB3C7K9Q", roblox_username="builderman",
                expires_at=utcnow() + timedelta(minutes=5),
            ))
            await db.commit()
        interaction = make_interaction()

        await command_tree.get_command("verify-cancel").callback(interaction)
        await command_tree.get_command("verify-cancel").callback(interaction)

        first, second = interaction.response.send_message.await_args_list
        assert first.args[0].startswith("✅")
        assert second.args[0] == "❌ You have no pending verification."
        async with session_factory() as db:
            assert (await db.execute(select(PendingVerification))).first() is None


class TestRankInfo:
    async def test_shows_rank_and_group_name(self, command_tree, make_interaction, mock_roblox, seed_link):
        await seed_link("1", "9001", "builderman")
        mock_roblox.get_membership_rank.return_value = GroupMembership(True, 5, "200", "Corporal")
        mock_roblox.get_group_info.return_value = {"name": "Bridge Corps"}
        interaction = make_interaction()

        await command_tree.get_command("rankinfo").callback(interaction)

        embed = interaction.followup.send.await_args.kwargs["embed"]
        fields = {f.name: f.value for f in embed.fields}
        assert fields["Group"] == "Bridge Corps"
        assert fields["Current Rank"] == "Corporal"
        assert fields["Rank Number"] == "5"

    async def test_group_name_outage_falls_back_to_id(
        self, command_tree, make_interaction, mock_roblox, seed_link
    ):
        await seed_link("1", "9001", "builderman")
        mock_roblox.get_membership_rank.return_value = GroupMembership(in_group=False)
        mock_roblox.get_group_info.side_effect = httpx.ConnectError("down")
        interaction = make_interaction()

        await command_tree.get_command("rankinfo").callback(interaction)

        fields = {f.name: f.value for f in interaction.followup.send.await_args.kwargs["embed"].fields}
        assert fields["Group"] == "7"
        assert fields["In Group"] == "❌ No"

    async def test_unverified(self, command_tree, make_interaction):
        interaction = make_interaction()
        await command_tree.get_command("rankinfo").callback(interaction)
        assert "/verify" in interaction.followup.send.await_args.args[0]
