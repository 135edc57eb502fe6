"""
Server administration slash commands.

Commands:
  /blacklist add|remove|list|check: block members from verifying
  /config view|logchannel|verificationchannel|autosync|welcome: per-server settings
  /logs: browse the audit log
"""

import logging
import re
from datetime import timedelta
from typing import Optional

import discord
from discord import app_commands

from rb_common.audit import log as audit
from rb_common.db.models import AuditLog
from rb_common.db.timestamps import ensure_utc, utcnow
from rb_common.discord.bot import BotContext, post_to_log_channel, render_welcome
from rb_common.discord.commands import BRIDGE_BLURPLE, ERROR_RED
from rb_common.identity import bindings as binding_store
from rb_common.identity import blacklist as blacklist_store
from rb_common.identity import guild_config, links

logger = logging.getLogger(__name__)


_DURATION_RE = re.compile(r"^(\d+)([hdwm])$")
_DURATION_UNITS = {
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "m": timedelta(days=30),
}

EMBED_FIELD_LIMIT = 1024


def parse_duration(text: Optional[str]) -> Optional[timedelta]:
    """'7d' -> 7 days. None or 'permanent' -> None. Anything else raises ValueError."""
    if text is None:
        return None
    text = text.strip().lower()
    if text in ("", "permanent"):
        return None
    match = _DURATION_RE.match(text)
    if match is None or int(match.group(1)) == 0:
        raise ValueError(f"Invalid duration {text!r}")
    return int(match.group(1)) * _DURATION_UNITS[match.group(2)]


def _when(value) -> str:
    if value is None:
        return "Never"
    return discord.utils.format_dt(ensure_utc(value), "R")


def audit_line(entry: AuditLog) -> str:
    line = f"**{entry.action_type}**"
    if entry.created_at is not None:
        line += f" {_when(entry.created_at)}"
    if entry.actor_discord_id:
        line += f"\nBy: <@{entry.actor_discord_id}>"
    if entry.target_discord_id:
        line += f"\nTarget: <@{entry.target_discord_id}>"
    if entry.old_value and entry.new_value:
        line += f"\n`{entry.old_value}` → `{entry.new_value}`"
    elif entry.new_value:
        line += f"\n`{entry.new_value}`"
    return line


def chunk_lines(lines: list[str], limit: int = EMBED_FIELD_LIMIT) -> list[str]:
    """Pack entries into blank-line separated chunks no longer than limit."""
    chunks: list[str] = []
    current = ""
    for line in lines:
        line = line[:limit]
        candidate = f"{current}\n\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


async def _require(interaction: discord.Interaction, permission: str, label: str) -> bool:
    perms = getattr(interaction.user, "guild_permissions", None)
    if perms is None or not (getattr(perms, permission) or perms.administrator):
        await interaction.response.send_message(
            f"❌ You need the {label} permission to use this command.", ephemeral=True
        )
        return False
    return True


def register_admin_commands(tree: app_commands.CommandTree, ctx: BotContext):
    """Register /blacklist, /config and /logs on the given command tree."""

    # ------------------------------------------------------------------
    # blacklist
    # ------------------------------------------------------------------

    blacklist_group = app_commands.Group(
        name="blacklist",
        description="Manage blacklisted users",
        guild_only=True,
        default_permissions=discord.Permissions(ban_members=True),
    )

    @blacklist_group.command(name="add", description="Add a user to the blacklist")
    @app_commands.describe(
        user="Discord user to blacklist",
        reason="Reason for blacklisting",
        duration="Duration (e.g. 12h, 7d, 2w, 1m, permanent)",
    )
    async def blacklist_add(
        interaction: discord.Interaction,
        user: discord.User,
        reason: str,
        duration: Optional[str] = None,
    ):
        if not await _require(interaction, "ban_members", "Ban Members"):
            return
        try:
            length = parse_duration(duration)
        except ValueError:
            await interaction.response.send_message(
                "❌ Duration must look like `12h`, `7d`, `2w`, `1m` or `permanent`.", ephemeral=True
            )
            return
        expires_at = utcnow() + length if length else None

        guild_id = str(interaction.guild_id)
        async with ctx.session_factory() as db:
            link = await links.get_link_by_discord_id(db, str(user.id))
            roblox_id = link.roblox_id if link else None
            await blacklist_store.add_to_blacklist(
                db, guild_id,
                discord_id=str(user.id),
                roblox_id=roblox_id,
                reason=reason,
                banned_by=str(interaction.user.id),
                expires_at=expires_at,
            )
            await audit.record_audit(
                db, guild_id, audit.BLACKLIST_ADD,
                actor_discord_id=str(interaction.user.id),
                target_discord_id=str(user.id),
                target_roblox_id=roblox_id,
                new_value=reason,
                details={"expires_at": expires_at.isoformat() if expires_at else None},
            )
            await db.commit()

        embed = discord.Embed(title="🚫 User Blacklisted", color=ERROR_RED)
        embed.add_field(name="User", value=user.mention, inline=True)
        embed.add_field(name="Reason", value=reason, inline=True)
        embed.add_field(name="Expires", value=_when(expires_at), inline=True)
        if roblox_id:
            embed.add_field(name="Roblox ID", value=roblox_id, inline=True)
        await interaction.response.send_message(embed=embed)
        if interaction.guild is not None:
            await post_to_log_channel(ctx.session_factory, interaction.guild, embed)

    @blacklist_group.command(name="remove", description="Remove a user from the blacklist")
    @app_commands.describe(user="Discord user to remove from the blacklist")
    async def blacklist_remove(interaction: discord.Interaction, user: discord.User):
        if not await _require(interaction, "ban_members", "Ban Members"):
            return
        guild_id = str(interaction.guild_id)
        async with ctx.session_factory() as db:
            removed = await blacklist_store.remove_from_blacklist(db, guild_id, discord_id=str(user.id))
            if removed:
                await audit.record_audit(
                    db, guild_id, audit.BLACKLIST_REMOVE,
                    actor_discord_id=str(interaction.user.id),
                    target_discord_id=str(user.id),
                )
            await db.commit()

        if not removed:
            await interaction.response.send_message(f"❌ {user.mention} is not blacklisted.", ephemeral=True)
            return
        await interaction.response.send_message(f"✅ {user.mention} has been removed from the blacklist.")

    @blacklist_group.command(name="list", description="View all blacklisted users")
    async def blacklist_list(interaction: discord.Interaction):
        if not await _require(interaction, "ban_members", "Ban Members"):
            return
        async with ctx.session_factory() as db:
            entries = await blacklist_store.get_blacklist(db, str(interaction.guild_id))
        if not entries:
            await interaction.response.send_message("✅ No users are currently blacklisted.", ephemeral=True)
            return

        lines = []
        for entry in entries[:20]:
            who = f"<@{entry.discord_id}>" if entry.discord_id else f"Roblox {entry.roblox_id}"
            lines.append(f"**{who}**\nReason: {entry.reason or '-'}\nExpires: {_when(entry.expires_at)}")
        embed = discord.Embed(
            title="🚫 Blacklisted Users",
            description=f"{len(entries)} user(s) blacklisted",
            color=ERROR_RED,
        )
        embed.add_field(name="Users", value=chunk_lines(lines)[0], inline=False)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @blacklist_group.command(name="check", description="Check if a user is blacklisted")
    @app_commands.describe(user="Discord user to check")
    async def blacklist_check(interaction: discord.Interaction, user: discord.User):
        if not await _require(interaction, "ban_members", "Ban Members"):
            return
        async with ctx.session_factory() as db:
            entry = await blacklist_store.get_active_entry(db, str(interaction.guild_id), str(user.id))
        if entry is None:
            await interaction.response.send_message(f"✅ {user.mention} is not blacklisted.", ephemeral=True)
            return

        embed = discord.Embed(title="🚫 User is Blacklisted", color=ERROR_RED)
        embed.add_field(name="User", value=user.mention, inline=True)
        embed.add_field(name="Reason", value=entry.reason or "-", inline=True)
        if entry.created_at is not None:
            embed.add_field(name="Since", value=_when(entry.created_at), inline=True)
        embed.add_field(name="Expires", value=_when(entry.expires_at), inline=True)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    tree.add_command(blacklist_group)

    # ------------------------------------------------------------------
    # config
    # ------------------------------------------------------------------

    config_group = app_commands.Group(
        name="config",
        description="Configure RankBridge for this server",
        guild_only=True,
        default_permissions=discord.Permissions(administrator=True),
    )

    async def _set(interaction: discord.Interaction, field_name: str, value, old_text, new_text) -> None:
        guild_id = str(interaction.guild_id)
        async with ctx.session_factory() as db:
            await guild_config.update_guild_config(db, guild_id, **{field_name: value})
            await audit.record_audit(
                db, guild_id, audit.CONFIG_CHANGE,
                actor_discord_id=str(interaction.user.id),
                old_value=old_text or "None",
                new_value=new_text,
                details={"field": field_name},
            )
            await db.commit()
        logger.info("Guild %s set %s by %s", guild_id, field_name, interaction.user.id)

    async def _current(interaction: discord.Interaction):
        async with ctx.session_factory() as db:
            config = await guild_config.get_or_create_guild_config(db, str(interaction.guild_id))
            await db.commit()
        return config

    @config_group.command(name="view", description="View this server's configuration")
    async def config_view(interaction: discord.Interaction):
        if not await _require(interaction, "administrator", "Administrator"):
            return
        guild_id = str(interaction.guild_id)
        async with ctx.session_factory() as db:
            config = await guild_config.get_or_create_guild_config(db, guild_id)
            managed = await binding_store.get_managed_role_ids(db, guild_id)
            await db.commit()

        def _channel(channel_id):
            return f"<#{channel_id}>" if channel_id else "Not set"

        embed = discord.Embed(title="⚙️ Server Configuration", color=BRIDGE_BLURPLE)
        embed.add_field(name="Log Channel", value=_channel(config.log_channel_id), inline=True)
        embed.add_field(name="Verification Channel", value=_channel(config.verification_channel_id), inline=True)
        embed.add_field(
            name="Auto-Sync", value="✅ Enabled" if config.auto_sync_enabled else "❌ Disabled", inline=True
        )
        embed.add_field(name="Managed Roles", value=str(len(managed)), inline=True)
        embed.add_field(name="Last Auto-Sync", value=_when(config.last_sync_at), inline=True)
        embed.add_field(name="Welcome Message", value=config.welcome_message or "Not set", inline=False)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @config_group.command(name="logchannel", description="Set the audit log channel")
    @app_commands.describe(channel="Channel for audit logs")
    async def config_logchannel(interaction: discord.Interaction, channel: discord.TextChannel):
        if not await _require(interaction, "administrator", "Administrator"):
            return
        config = await _current(interaction)
        await _set(interaction, "log_channel_id", str(channel.id), config.log_channel_id, str(channel.id))
        await interaction.response.send_message(f"✅ Log channel set to {channel.mention}.", ephemeral=True)

    @config_group.command(name="verificationchannel", description="Set the verification channel")
    @app_commands.describe(channel="Channel where new members are welcomed")
    async def config_verificationchannel(interaction: discord.Interaction, channel: discord.TextChannel):
        if not await _require(interaction, "administrator", "Administrator"):
            return
        config = await _current(interaction)
        await _set(
            interaction, "verification_channel_id", str(channel.id),
            config.verification_channel_id, str(channel.id),
        )
        await interaction.response.send_message(
            f"✅ Verification channel set to {channel.mention}.", ephemeral=True
        )

    @config_group.command(name="autosync", description="Toggle the scheduled role sync")
    @app_commands.describe(enabled="Enable or disable auto-sync")
    async def config_autosync(interaction: discord.Interaction, enabled: bool):
        if not await _require(interaction, "administrator", "Administrator"):
            return
        config = await _current(interaction)
        await _set(
            interaction, "auto_sync_enabled", enabled,
            "Enabled" if config.auto_sync_enabled else "Disabled",
            "Enabled" if enabled else "Disabled",
        )
        await interaction.response.send_message(
            f"✅ Auto-sync is now {'enabled' if enabled else 'disabled'}.", ephemeral=True
        )

    @config_group.command(name="welcome", description="Set the welcome message")
    @app_commands.describe(message="Welcome message ({user}, {server}, {username} placeholders)")
    async def config_welcome(interaction: discord.Interaction, message: str):
        if not await _require(interaction, "administrator", "Administrator"):
            return
        config = await _current(interaction)
        await _set(interaction, "welcome_message", message, config.welcome_message, message)
        preview = render_welcome(
            message,
            interaction.user.mention,
            interaction.guild.name if interaction.guild else "",
            interaction.user.name,
        )
        await interaction.response.send_message(
            f"✅ Welcome message updated.\n\n**Preview:**\n{preview}", ephemeral=True
        )

    tree.add_command(config_group)

    # ------------------------------------------------------------------
    # logs
    # ------------------------------------------------------------------

    @tree.command(name="logs", description="View the audit log")
    @app_commands.describe(
        action="Filter by action type",
        user="Only entries where this user is the actor or the target",
        limit="Number of entries to show (default 10)",
    )
    @app_commands.choices(action=[
        app_commands.Choice(name="Promotions", value=audit.PROMOTION),
        app_commands.Choice(name="Demotions", value=audit.DEMOTION),
        app_commands.Choice(name="Rank Changes", value=audit.RANK_CHANGE),
        app_commands.Choice(name="Verifications", value=audit.VERIFICATION),
        app_commands.Choice(name="Unlinks", value=audit.UNLINK),
        app_commands.Choice(name="Bindings", value=audit.BINDING_CHANGE),
        app_commands.Choice(name="Blacklist Adds", value=audit.BLACKLIST_ADD),
        app_commands.Choice(name="Config Changes", value=audit.CONFIG_CHANGE),
    ])
    @app_commands.rename(action="type")
    @app_commands.default_permissions(manage_guild=True)
    @app_commands.guild_only()
    async def logs(
        interaction: discord.Interaction,
        action: Optional[app_commands.Choice[str]] = None,
        user: Optional[discord.User] = None,
        limit: app_commands.Range[int, 1, 50] = 10,
    ):
        if not await _require(interaction, "manage_guild", "Manage Server"):
            return
        await interaction.response.defer(ephemeral=True)
        async with ctx.session_factory() as db:
            entries = await audit.get_recent(
                db,
                str(interaction.guild_id),
                limit=limit,
                action_type=action.value if action else None,
                discord_id=str(user.id) if user else None,
            )
        if not entries:
            await interaction.followup.send("❌ No logs found matching the criteria.", ephemeral=True)
            return

        description = f"Showing {len(entries)} log(s)"
        if user:
            description += f" for {user.mention}"
        if action:
            description += f" of type \"{action.name}\""
        embed = discord.Embed(title="📜 Audit Logs", description=description, color=BRIDGE_BLURPLE)
        # Embeds cap out at 25 fields
        for i, chunk in enumerate(chunk_lines([audit_line(e) for e in entries])[:25]):
            embed.add_field(name="Recent Activity" if i == 0 else "Continued", value=chunk, inline=False)
        await interaction.followup.send(embed=embed, ephemeral=True)
