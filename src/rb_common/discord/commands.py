"""
Slash commands for verification, role sync, bindings and ranks.

Commands:
  /verify      : link a Roblox account (OAuth button, or bio code with a username)
  /verify-check: finish a bio-code verification
  /verify-cancel: drop a pending bio-code verification
  /reverify    : switch to a different Roblox account
  /unlink      : remove your link
  /update      : sync your (or another member's) roles now
  /syncall     : sync every member of the server (managers only)
  /bind, /unbind, /groupbind, /groupunbind, /unbindall, /bindings: manage bindings
  /whois       : show who a member is on Roblox
  /rankinfo, /ranks: show a member's group rank, or every rank in a group
  /setrank, /promote, /demote: change a member's Roblox group rank
"""

import asyncio
import logging
from typing import Optional

import discord
import httpx
from discord import app_commands

from rb_common.audit import log as audit
from rb_common.auth import oauth, verify_codes
from rb_common.discord.batch_sync import sync_guild
from rb_common.discord.bot import BotContext, post_to_log_channel
from rb_common.discord.chat import member_snapshot
from rb_common.discord.role_sync import SyncResult, reconcile_member
from rb_common.errors import (
    AlreadyVerifiedError,
    BridgeError,
    CodeNotFoundError,
    NoGroupError,
    NotVerifiedError,
    OnCooldownError,
    RankNotFoundError,
)
from rb_common.identity import bindings as binding_store
from rb_common.identity import links
from rb_common.ranks import service as ranks

logger = logging.getLogger(__name__)

BRIDGE_BLURPLE = 0x5865F2
SUCCESS_GREEN = 0x00D166
WARNING_YELLOW = 0xFEE75C
ERROR_RED = 0xED4245

SYNCALL_PROGRESS_EVERY = 10


def error_text(exc: BridgeError, is_self: bool = True, target: str = "That user") -> str:
    """User-facing text for a domain error."""
    if isinstance(exc, NotVerifiedError):
        if is_self:
            return "You need to verify your Roblox account first. Use `/verify` to get started."
        return f"{target} is not verified."
    if isinstance(exc, CodeNotFoundError):
        code = exc.context.get("code", "")
        return (
            f"The code `{code}` was not found in your Roblox bio. "
            "Save your profile and try again."
        )
    if isinstance(exc, AlreadyVerifiedError):
        return f"{exc.message} Use `/reverify` to switch accounts or `/unlink` to remove your link."
    return exc.message


def binding_lines(exported: dict) -> list[str]:
    """Render an export_bindings() dict as one line per binding."""
    lines = []
    for b in exported["rank_bindings"]:
        rank = f"{b['rank_name']} ({b['rank']})" if b["rank_name"] else str(b["rank"])
        line = f"Group {b['group_id']} rank {rank} → <@&{b['role_id']}>"
        if b["priority"]:
            line += f" · priority {b['priority']}"
        if b["nickname_template"]:
            line += f" · `{b['nickname_template']}`"
        lines.append(line)
    for b in exported["group_bindings"]:
        line = f"Group {b['group_id']} (any rank) → <@&{b['role_id']}>"
        if b["priority"]:
            line += f" · priority {b['priority']}"
        if b["nickname_template"]:
            line += f" · `{b['nickname_template']}`"
        lines.append(line)
    return lines


def sync_embed(result: SyncResult, title: str, description: str) -> discord.Embed:
    embed = discord.Embed(title=title, description=description, color=SUCCESS_GREEN)
    embed.add_field(name="Roblox Account", value=result.roblox_username or "?", inline=True)
    embed.add_field(name="Roles Added", value=str(result.roles_added), inline=True)
    embed.add_field(name="Roles Removed", value=str(result.roles_removed), inline=True)
    if result.roles_failed:
        embed.add_field(
            name="Could Not Change",
            value=" ".join(f"<@&{r}>" for r in result.roles_failed),
            inline=False,
        )
    if result.nickname_applied:
        embed.add_field(name="Nickname Set", value=f"`{result.nickname_applied}`", inline=False)
    return embed


class VerifyCheckView(discord.ui.View):
    """'I've added the code' button under a bio-code challenge."""

    def __init__(self, ctx: BotContext, timeout_minutes: int):
        super().__init__(timeout=timeout_minutes * 60)
        self.ctx = ctx

    @discord.ui.button(label="I've Added the Code", style=discord.ButtonStyle.success, emoji="✅")
    async def check(self, interaction: discord.Interaction, button: discord.ui.Button):
        await _complete_bio_verification(self.ctx, interaction)


def _oauth_view(url: str) -> discord.ui.View:
    view = discord.ui.View()
    view.add_item(discord.ui.Button(label="Verify with Roblox", url=url, emoji="🎮"))
    return view


async def _complete_bio_verification(ctx: BotContext, interaction: discord.Interaction):
    await interaction.response.defer(ephemeral=True)
    guild_id = str(interaction.guild_id) if interaction.guild_id else None
    try:
        link = await verify_codes.complete_verification(
            ctx.session_factory, ctx.roblox, str(interaction.user.id), guild_id
        )
    except BridgeError as exc:
        await interaction.followup.send(f"❌ {error_text(exc)}", ephemeral=True)
        return

    embed = discord.Embed(
        title="✅ Verification Complete",
        description=f"You are now verified as **{link.roblox_username}**.",
        color=SUCCESS_GREEN,
    )
    if guild_id and isinstance(interaction.user, discord.Member):
        try:
            result = await reconcile_member(
                ctx.session_factory, ctx.roblox, ctx.chat, member_snapshot(interaction.user), guild_id
            )
            embed.add_field(name="Roles Added", value=str(result.roles_added), inline=True)
        except BridgeError as exc:
            logger.info("Post-verify sync skipped for %s: %s", interaction.user.id, exc.code)
    await interaction.followup.send(embed=embed, ephemeral=True)


async def _start_bio_verification(
    ctx: BotContext, interaction: discord.Interaction, username: str, title: str
):
    guild_id = str(interaction.guild_id) if interaction.guild_id else None
    try:
        challenge = await verify_codes.start_verification(
            ctx.session_factory,
            ctx.roblox,
            str(interaction.user.id),
            username,
            guild_id,
            timeout_minutes=ctx.verification_timeout_minutes,
        )
    except BridgeError as exc:
        await interaction.followup.send(f"❌ {error_text(exc)}", ephemeral=True)
        return

    user = challenge.roblox_user
    embed = discord.Embed(
        title=title,
        description=(
            f"Add this code to your **Roblox bio**:\n```{challenge.code}```\n"
            "Then click the button below to complete verification."
        ),
        color=BRIDGE_BLURPLE,
    )
    embed.add_field(name="Roblox Account", value=f"{user.display_name} (@{user.name})", inline=True)
    embed.add_field(name="Expires In", value=f"{challenge.timeout_minutes} minutes", inline=True)
    embed.set_footer(text="You can remove the code from your bio after verification")
    await interaction.followup.send(
        embed=embed,
        view=VerifyCheckView(ctx, challenge.timeout_minutes),
        ephemeral=True,
    )


def register_commands(tree: app_commands.CommandTree, ctx: BotContext):
    """Register every RankBridge slash command on the given command tree."""

    async def _require_manager(interaction: discord.Interaction) -> bool:
        perms = getattr(interaction.user, "guild_permissions", None)
        if perms is None or not (perms.manage_roles or perms.administrator):
            await interaction.response.send_message(
                "❌ You need the Manage Roles permission to use this command.", ephemeral=True
            )
            return False
        return True

    # ------------------------------------------------------------------
    # verification
    # ------------------------------------------------------------------

    @tree.command(name="verify", description="Link your Discord account to your Roblox account")
    @app_commands.describe(username="Your Roblox username (leave blank for one-click OAuth)")
    async def verify(interaction: discord.Interaction, username: Optional[str] = None):
        status = await verify_codes.get_verification_status(ctx.session_factory, str(interaction.user.id))
        if status.state == verify_codes.VERIFIED:
            await interaction.response.send_message(
                f"❌ You are already verified as **{status.link.roblox_username}**. "
                "Use `/reverify` to switch accounts or `/unlink` to remove your link.",
                ephemeral=True,
            )
            return

        if not username and ctx.oauth is None and status.state == verify_codes.PENDING:
            pending = status.pending
            await interaction.response.send_message(
                f"⏳ You already have a pending verification for **{pending.roblox_username}**. "
                f"Add `{pending.verification_code}` to your Roblox bio, then use `/verify-check`. "
                "Use `/verify-cancel` to start over.",
                ephemeral=True,
            )
            return

        if not username and ctx.oauth is not None:
            url, _ = await oauth.begin_oauth(
                ctx.session_factory,
                ctx.oauth,
                str(interaction.user.id),
                str(interaction.guild_id) if interaction.guild_id else None,
                is_reverify=False,
                timeout_minutes=ctx.oauth_state_timeout_minutes,
            )
            embed = discord.Embed(
                title="🔗 Verify Your Roblox Account",
                description=(
                    "Click the button below to verify with Roblox. You'll be redirected to "
                    "Roblox to authorize, then verified automatically.\n\n"
                    "*Alternatively, use `/verify username:YourName` for code-in-bio verification.*"
                ),
                color=BRIDGE_BLURPLE,
            )
            embed.set_footer(text=f"Link expires in {ctx.oauth_state_timeout_minutes} minutes")
            await interaction.response.send_message(embed=embed, view=_oauth_view(url), ephemeral=True)
            return

        if not username:
            await interaction.response.send_message(
                "❌ Please provide your Roblox username: `/verify username:YourName`", ephemeral=True
            )
            return

        await interaction.response.defer(ephemeral=True)
        await _start_bio_verification(ctx, interaction, username, "📋 Verification Required")

    @tree.command(name="verify-check", description="Finish verification after adding the code to your bio")
    async def verify_check(interaction: discord.Interaction):
        await _complete_bio_verification(ctx, interaction)

    @tree.command(name="verify-cancel", description="Cancel your pending bio-code verification")
    async def verify_cancel(interaction: discord.Interaction):
        cancelled = await verify_codes.cancel_verification(ctx.session_factory, str(interaction.user.id))
        if not cancelled:
            await interaction.response.send_message("❌ You have no pending verification.", ephemeral=True)
            return
        await interaction.response.send_message(
            "✅ Pending verification cancelled. Use `/verify` to start again.", ephemeral=True
        )

    @tree.command(name="reverify", description="Switch your linked Roblox account")
    @app_commands.describe(username="Your new Roblox username (leave blank for one-click OAuth)")
    async def reverify(interaction: discord.Interaction, username: Optional[str] = None):
        guild_id = str(interaction.guild_id) if interaction.guild_id else None

        if not username and ctx.oauth is not None:
            async with ctx.session_factory() as db:
                existing = await links.get_link_by_discord_id(db, str(interaction.user.id))
            url, _ = await oauth.begin_oauth(
                ctx.session_factory,
                ctx.oauth,
                str(interaction.user.id),
                guild_id,
                is_reverify=True,
                timeout_minutes=ctx.oauth_state_timeout_minutes,
            )
            if existing is not None:
                description = (
                    f"You are currently verified as **{existing.roblox_username}**.\n\n"
                    "Click the button below to switch to a different Roblox account. "
                    "Your old link will be removed automatically."
                )
            else:
                description = "Click the button below to verify with a Roblox account."
            embed = discord.Embed(
                title="🔄 Re-verify Roblox Account", description=description, color=WARNING_YELLOW
            )
            embed.set_footer(text=f"Link expires in {ctx.oauth_state_timeout_minutes} minutes")
            await interaction.response.send_message(embed=embed, view=_oauth_view(url), ephemeral=True)
            return

        if not username:
            await interaction.response.send_message(
                "❌ Please provide your new Roblox username: `/reverify username:NewName`",
                ephemeral=True,
            )
            return

        await interaction.response.defer(ephemeral=True)
        try:
            previous = await verify_codes.unlink_account(
                ctx.session_factory, str(interaction.user.id), guild_id
            )
            logger.info("Reverify: unlinked %s for %s", previous.roblox_username, interaction.user.id)
        except NotVerifiedError:
            pass
        await _start_bio_verification(ctx, interaction, username, "🔄 Re-verification")

    @tree.command(name="unlink", description="Remove the link between your Discord and Roblox accounts")
    async def unlink(interaction: discord.Interaction):
        try:
            removed = await verify_codes.unlink_account(
                ctx.session_factory,
                str(interaction.user.id),
                str(interaction.guild_id) if interaction.guild_id else None,
            )
        except BridgeError as exc:
            await interaction.response.send_message(f"❌ {exc.message}", ephemeral=True)
            return
        await interaction.response.send_message(
            f"✅ Unlinked from **{removed.roblox_username}**.", ephemeral=True
        )

    # ------------------------------------------------------------------
    # sync
    # ------------------------------------------------------------------

    @tree.command(name="update", description="Sync Discord roles & nickname with Roblox ranks")
    @app_commands.describe(user="Member to update (defaults to yourself)")
    @app_commands.guild_only()
    async def update(interaction: discord.Interaction, user: Optional[discord.Member] = None):
        target = user or interaction.user
        is_self = target.id == interaction.user.id
        if not is_self and not await _require_manager(interaction):
            return

        guild_id = str(interaction.guild_id)
        try:
            ctx.cooldowns.try_acquire(guild_id, str(interaction.user.id))
        except OnCooldownError as exc:
            await interaction.response.send_message(f"⏳ {exc.message}", ephemeral=True)
            return

        await interaction.response.defer(ephemeral=True)
        try:
            result = await reconcile_member(
                ctx.session_factory, ctx.roblox, ctx.chat, member_snapshot(target), guild_id
            )
        except BridgeError as exc:
            await interaction.followup.send(
                f"❌ {error_text(exc, is_self, target.mention)}", ephemeral=True
            )
            return

        description = (
            "Your Discord roles have been updated based on your Roblox account."
            if is_self
            else f"Updated {target.mention}'s roles based on their Roblox account."
        )
        await interaction.followup.send(
            embed=sync_embed(result, "✅ Roles Synced", description), ephemeral=True
        )

    @tree.command(name="syncall", description="Sync roles for every member of this server")
    @app_commands.guild_only()
    async def syncall(interaction: discord.Interaction):
        if not await _require_manager(interaction):
            return
        guild_id = str(interaction.guild_id)
        if guild_id in ctx.syncs_in_progress:
            await interaction.response.send_message(
                "⏳ A server-wide sync is already running.", ephemeral=True
            )
            return

        await interaction.response.defer()
        message = await interaction.followup.send("🔄 Syncing all members…", wait=True)

        async def _progress(processed: int, total: int):
            await message.edit(content=f"🔄 Syncing all members… {processed}/{total}")

        ctx.syncs_in_progress.add(guild_id)
        try:
            report = await sync_guild(
                ctx.session_factory,
                ctx.roblox,
                ctx.chat,
                guild_id,
                _progress,
                concurrency=ctx.batch_concurrency,
                progress_every=SYNCALL_PROGRESS_EVERY,
            )
        finally:
            ctx.syncs_in_progress.discard(guild_id)

        embed = discord.Embed(
            title="✅ Server Sync Complete" if not report.cancelled else "⚠️ Server Sync Cancelled",
            color=SUCCESS_GREEN if not report.failed else WARNING_YELLOW,
        )
        embed.add_field(name="Total", value=str(report.total), inline=True)
        embed.add_field(name="Synced", value=str(report.synced), inline=True)
        embed.add_field(name="Skipped", value=str(report.skipped), inline=True)
        embed.add_field(name="Failed", value=str(report.failed), inline=True)
        if report.errors:
            shown = "\n".join(
                f"<@{e['member_id']}>: {e['message']}" if e.get("member_id") else e["message"]
                for e in report.errors[:10]
            )
            embed.add_field(name="Errors", value=shown[:1024], inline=False)
        await message.edit(content=None, embed=embed)

    # ------------------------------------------------------------------
    # bindings
    # ------------------------------------------------------------------

    def _group_or_default(group: Optional[str]) -> str:
        target = group or ctx.default_group_id
        if not target:
            raise NoGroupError()
        return target

    async def _check_role_manageable(interaction: discord.Interaction, role: discord.Role) -> bool:
        me = interaction.guild.me
        if me is not None and role.position >= me.top_role.position:
            await interaction.followup.send(
                f"❌ I cannot manage the {role.mention} role. "
                "Please move my role above it in the server settings."
            )
            return False
        return True

    @tree.command(name="bind", description="Bind a Roblox group rank to a Discord role")
    @app_commands.describe(
        rank="Roblox rank number (0-255)",
        role="Discord role to grant",
        group="Roblox group id (uses the default group if blank)",
        priority="Higher priority wins when picking the nickname template",
        nickname="Nickname template, e.g. [{rank-name}] {roblox-username}",
    )
    @app_commands.guild_only()
    async def bind(
        interaction: discord.Interaction,
        rank: app_commands.Range[int, 0, 255],
        role: discord.Role,
        group: Optional[str] = None,
        priority: app_commands.Range[int, 0, 1000] = 0,
        nickname: Optional[str] = None,
    ):
        if not await _require_manager(interaction):
            return
        await interaction.response.defer()
        try:
            group_id = _group_or_default(group)
            roles = await ctx.roblox.get_group_roles(group_id)
            roblox_role = ranks.find_role(roles, rank)
            if roblox_role is None:
                raise RankNotFoundError(f"Rank {rank} does not exist in group {group_id}.")
        except BridgeError as exc:
            await interaction.followup.send(f"❌ {exc.message}")
            return
        if not await _check_role_manageable(interaction, role):
            return

        guild_id = str(interaction.guild_id)
        async with ctx.session_factory() as db:
            await binding_store.upsert_rank_binding(
                db, guild_id, group_id, rank, roblox_role.name,
                str(role.id), role.name, priority, nickname,
            )
            await audit.record_audit(
                db, guild_id, audit.BINDING_CHANGE,
                actor_discord_id=str(interaction.user.id),
                new_value=f"{group_id}:{rank}->{role.id}",
                details={"action": "create", "kind": "rank", "group_id": group_id, "rank": rank,
                         "rank_name": roblox_role.name, "role_id": str(role.id), "priority": priority},
            )
            await db.commit()

        embed = discord.Embed(title="✅ Binding Saved", color=SUCCESS_GREEN)
        embed.add_field(name="Roblox Rank", value=f"{roblox_role.name} ({rank})", inline=True)
        embed.add_field(name="Discord Role", value=role.mention, inline=True)
        embed.add_field(name="Group ID", value=group_id, inline=True)
        if priority:
            embed.add_field(name="Priority", value=str(priority), inline=True)
        if nickname:
            embed.add_field(name="Nickname Template", value=f"`{nickname}`", inline=False)
        embed.set_footer(text="Use /update to sync roles for yourself")
        await interaction.followup.send(embed=embed)

    @tree.command(name="unbind", description="Remove a rank binding")
    @app_commands.describe(
        rank="Roblox rank number",
        role="Only remove the binding to this role (all roles if blank)",
        group="Roblox group id (uses the default group if blank)",
    )
    @app_commands.guild_only()
    async def unbind(
        interaction: discord.Interaction,
        rank: app_commands.Range[int, 0, 255],
        role: Optional[discord.Role] = None,
        group: Optional[str] = None,
    ):
        if not await _require_manager(interaction):
            return
        try:
            group_id = _group_or_default(group)
        except BridgeError as exc:
            await interaction.response.send_message(f"❌ {exc.message}", ephemeral=True)
            return

        guild_id = str(interaction.guild_id)
        async with ctx.session_factory() as db:
            removed = await binding_store.delete_rank_binding(
                db, guild_id, group_id, rank, str(role.id) if role else None
            )
            if removed:
                await audit.record_audit(
                    db, guild_id, audit.BINDING_CHANGE,
                    actor_discord_id=str(interaction.user.id),
                    old_value=f"{group_id}:{rank}",
                    details={"action": "delete", "kind": "rank", "group_id": group_id, "rank": rank,
                             "role_id": str(role.id) if role else None, "removed": removed},
                )
            await db.commit()

        if not removed:
            await interaction.response.send_message(
                f"❌ No binding found for rank {rank} in group {group_id}.", ephemeral=True
            )
            return
        await interaction.response.send_message(
            f"✅ Removed {removed} binding(s) for rank {rank} in group {group_id}."
        )

    @tree.command(name="groupbind", description="Give a Discord role to every member of a Roblox group")
    @app_commands.describe(
        group="Roblox group id",
        role="Discord role to grant",
        priority="Higher priority wins when picking the nickname template",
        nickname="Nickname template",
    )
    @app_commands.guild_only()
    async def groupbind(
        interaction: discord.Interaction,
        group: str,
        role: discord.Role,
        priority: app_commands.Range[int, 0, 1000] = 0,
        nickname: Optional[str] = None,
    ):
        if not await _require_manager(interaction):
            return
        await interaction.response.defer()
        try:
            info = await ctx.roblox.get_group_info(group)
        except httpx.HTTPError as exc:
            logger.warning("Group lookup failed for %s: %s", group, exc)
            await interaction.followup.send("❌ Could not reach Roblox to look up that group. Try again later.")
            return
        if info is None:
            await interaction.followup.send(f"❌ Roblox group {group} was not found.")
            return
        if not await _check_role_manageable(interaction, role):
            return

        guild_id = str(interaction.guild_id)
        async with ctx.session_factory() as db:
            await binding_store.upsert_group_binding(
                db, guild_id, group, str(role.id), role.name, priority, nickname
            )
            await audit.record_audit(
                db, guild_id, audit.BINDING_CHANGE,
                actor_discord_id=str(interaction.user.id),
                new_value=f"{group}->{role.id}",
                details={"action": "create", "kind": "group", "group_id": group,
                         "role_id": str(role.id), "priority": priority},
            )
            await db.commit()

        embed = discord.Embed(title="✅ Group Binding Saved", color=SUCCESS_GREEN)
        embed.add_field(name="Roblox Group", value=f"{info.get('name', group)} ({group})", inline=True)
        embed.add_field(name="Discord Role", value=role.mention, inline=True)
        if nickname:
            embed.add_field(name="Nickname Template", value=f"`{nickname}`", inline=False)
        await interaction.followup.send(embed=embed)

    @tree.command(name="groupunbind", description="Remove a group binding")
    @app_commands.describe(group="Roblox group id", role="Only remove the binding to this role")
    @app_commands.guild_only()
    async def groupunbind(
        interaction: discord.Interaction, group: str, role: Optional[discord.Role] = None
    ):
        if not await _require_manager(interaction):
            return
        guild_id = str(interaction.guild_id)
        async with ctx.session_factory() as db:
            removed = await binding_store.delete_group_binding(
                db, guild_id, group, str(role.id) if role else None
            )
            if removed:
                await audit.record_audit(
                    db, guild_id, audit.BINDING_CHANGE,
                    actor_discord_id=str(interaction.user.id),
                    old_value=group,
                    details={"action": "delete", "kind": "group", "group_id": group,
                             "role_id": str(role.id) if role else None, "removed": removed},
                )
            await db.commit()

        if not removed:
            await interaction.response.send_message(
                f"❌ No group binding found for group {group}.", ephemeral=True
            )
            return
        await interaction.response.send_message(f"✅ Removed {removed} group binding(s) for group {group}.")

    @tree.command(name="unbindall", description="Remove every rank and group binding in this server")
    @app_commands.guild_only()
    async def unbindall(interaction: discord.Interaction):
        if not await _require_manager(interaction):
            return
        guild_id = str(interaction.guild_id)
        async with ctx.session_factory() as db:
            removed = await binding_store.delete_all_for_guild(db, guild_id)
            if removed:
                await audit.record_audit(
                    db, guild_id, audit.BINDING_CHANGE,
                    actor_discord_id=str(interaction.user.id),
                    details={"action": "delete_all", "removed": removed},
                )
            await db.commit()

        if not removed:
            await interaction.response.send_message("❌ This server has no bindings.", ephemeral=True)
            return
        await interaction.response.send_message(f"✅ Removed all {removed} binding(s).")

    @tree.command(name="bindings", description="List this server's rank and group bindings")
    @app_commands.guild_only()
    async def list_bindings(interaction: discord.Interaction):
        guild_id = str(interaction.guild_id)
        async with ctx.session_factory() as db:
            exported = await binding_store.export_bindings(db, guild_id)
            managed = await binding_store.get_managed_role_ids(db, guild_id)
        lines = binding_lines(exported)
        if not lines:
            await interaction.response.send_message(
                "No bindings configured. Use `/bind` or `/groupbind` to add one.", ephemeral=True
            )
            return
        embed = discord.Embed(
            title=f"Bindings ({len(lines)})",
            description="\n".join(lines)[:4000],
            color=BRIDGE_BLURPLE,
        )
        embed.set_footer(text=f"{len(managed)} Discord role(s) managed by RankBridge")
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # ------------------------------------------------------------------
    # lookup
    # ------------------------------------------------------------------

    @tree.command(name="whois", description="Show the Roblox account linked to a member")
    @app_commands.describe(user="Member to look up (defaults to yourself)")
    async def whois(interaction: discord.Interaction, user: Optional[discord.User] = None):
        target = user or interaction.user
        async with ctx.session_factory() as db:
            link = await links.get_link_by_discord_id(db, str(target.id))
        if link is None:
            await interaction.response.send_message(f"{target.mention} is not verified.", ephemeral=True)
            return

        embed = discord.Embed(
            title=f"{link.roblox_display_name or link.roblox_username}",
            url=f"https://www.roblox.com/users/{link.roblox_id}/profile",
            color=BRIDGE_BLURPLE,
        )
        embed.add_field(name="Discord", value=target.mention, inline=True)
        embed.add_field(name="Roblox", value=f"@{link.roblox_username}", inline=True)
        embed.add_field(name="Roblox ID", value=link.roblox_id, inline=True)
        if ctx.default_group_id:
            membership = await ctx.roblox.get_membership_rank(link.roblox_id, ctx.default_group_id)
            if membership is not None:
                value = (
                    f"{membership.role_name} ({membership.rank})" if membership.in_group else "Not in group"
                )
                embed.add_field(name="Group Rank", value=value, inline=True)
        if link.verified_at:
            embed.add_field(
                name="Verified", value=discord.utils.format_dt(link.verified_at, "R"), inline=True
            )
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @tree.command(name="rankinfo", description="Show a member's current rank in a Roblox group")
    @app_commands.describe(user="Member to check (defaults to yourself)", group="Roblox group id")
    async def rankinfo(
        interaction: discord.Interaction, user: Optional[discord.User] = None, group: Optional[str] = None
    ):
        target = user or interaction.user
        await interaction.response.defer()
        try:
            link, membership = await ranks.get_rank_info(
                ctx.session_factory,
                ctx.roblox,
                discord_id=str(target.id),
                group_id=group,
                default_group_id=ctx.default_group_id,
            )
        except BridgeError as exc:
            await interaction.followup.send(
                f"❌ {error_text(exc, target.id == interaction.user.id, target.mention)}"
            )
            return

        group_id = group or ctx.default_group_id
        try:
            info = await ctx.roblox.get_group_info(group_id)
        except httpx.HTTPError as exc:
            logger.info("Group name lookup failed for %s: %s", group_id, exc)
            info = None

        embed = discord.Embed(title="🎖️ Rank Information", color=BRIDGE_BLURPLE)
        embed.add_field(name="Group", value=(info or {}).get("name", group_id), inline=True)
        embed.add_field(name="Roblox Username", value=link.roblox_username, inline=True)
        embed.add_field(name="In Group", value="✅ Yes" if membership.in_group else "❌ No", inline=True)
        if membership.in_group:
            embed.add_field(name="Current Rank", value=membership.role_name or "Unknown", inline=True)
            embed.add_field(name="Rank Number", value=str(membership.rank), inline=True)
        await interaction.followup.send(embed=embed)

    @tree.command(name="ranks", description="List every rank in a Roblox group")
    @app_commands.describe(group="Roblox group id (uses the default group if blank)")
    async def list_ranks(interaction: discord.Interaction, group: Optional[str] = None):
        try:
            group_id = _group_or_default(group)
        except BridgeError as exc:
            await interaction.response.send_message(f"❌ {exc.message}", ephemeral=True)
            return
        await interaction.response.defer()
        roles = await ctx.roblox.get_group_roles(group_id)
        if not roles:
            await interaction.followup.send("❌ Could not fetch ranks for this group.")
            return

        lines = [f"`{r.rank:>3}` - {r.name}" for r in sorted(roles, key=lambda r: r.rank, reverse=True)]
        embed = discord.Embed(
            title="🎖️ Group Ranks",
            description=f"Group ID: `{group_id}`\n\n" + "\n".join(lines)[:4000],
            color=BRIDGE_BLURPLE,
        )
        embed.set_footer(text=f"Total: {len(roles)} ranks")
        await interaction.followup.send(embed=embed)

    # ------------------------------------------------------------------
    # ranks
    # ------------------------------------------------------------------

    async def _rank_command(interaction: discord.Interaction, target: discord.Member, action, **kwargs):
        if not await _require_manager(interaction):
            return
        await interaction.response.defer()
        try:
            change = await action(
                ctx.session_factory,
                ctx.roblox,
                str(interaction.guild_id),
                str(interaction.user.id),
                discord_id=str(target.id),
                default_group_id=ctx.default_group_id,
                **kwargs,
            )
        except BridgeError as exc:
            await interaction.followup.send(f"❌ {error_text(exc, False, target.mention)}")
            return

        embed = discord.Embed(
            title="✅ Rank Updated",
            description=f"{target.mention} (**{change.roblox_username}**)",
            color=SUCCESS_GREEN,
        )
        embed.add_field(name="Old Rank", value=change.old_rank_name or "-", inline=True)
        embed.add_field(name="New Rank", value=change.new_rank_name, inline=True)
        await interaction.followup.send(embed=embed)
        if interaction.guild is not None:
            embed.set_footer(text=f"By {interaction.user}")
            await post_to_log_channel(ctx.session_factory, interaction.guild, embed)

        # Bring their Discord roles along with the new rank
        try:
            await asyncio.wait_for(
                reconcile_member(
                    ctx.session_factory, ctx.roblox, ctx.chat, member_snapshot(target),
                    str(interaction.guild_id),
                ),
                timeout=30,
            )
        except (BridgeError, asyncio.TimeoutError) as exc:
            logger.info("Post-rank sync skipped for %s: %s", target.id, exc)

    @tree.command(name="setrank", description="Set a member's Roblox group rank")
    @app_commands.describe(
        user="Member to change", rank="Rank number or rank name", group="Roblox group id"
    )
    @app_commands.guild_only()
    async def setrank(
        interaction: discord.Interaction, user: discord.Member, rank: str, group: Optional[str] = None
    ):
        await _rank_command(interaction, user, ranks.set_rank, rank=rank, group_id=group)

    @tree.command(name="promote", description="Promote a member one rank in the Roblox group")
    @app_commands.describe(user="Member to promote", group="Roblox group id")
    @app_commands.guild_only()
    async def promote(interaction: discord.Interaction, user: discord.Member, group: Optional[str] = None):
        await _rank_command(interaction, user, ranks.promote, group_id=group)

    @tree.command(name="demote", description="Demote a member one rank in the Roblox group")
    @app_commands.describe(user="Member to demote", group="Roblox group id")
    @app_commands.guild_only()
    async def demote(interaction: discord.Interaction, user: discord.Member, group: Optional[str] = None):
        await _rank_command(interaction, user, ranks.demote, group_id=group)
