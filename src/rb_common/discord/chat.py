"""discord.py implementation of the ChatPlatform the sync engine talks to."""

import logging
from typing import Optional

import discord

from rb_common.discord.role_sync import ChatMember

logger = logging.getLogger(__name__)

SYNC_REASON = "Roblox rank sync"


def member_snapshot(member: discord.Member) -> ChatMember:
    return ChatMember(
        id=str(member.id),
        username=member.name,
        role_ids=frozenset(str(r.id) for r in member.roles),
        is_bot=member.bot,
        nickname=member.nick,
    )


class DiscordChatAdapter:
    """Role and nickname mutations against a live bot connection.

    A role above the bot's top role makes Discord answer 403; that surfaces
    as discord.Forbidden and the engine records it as a per-role failure.
    """

    def __init__(self, bot: discord.Client):
        self.bot = bot

    async def _guild(self, guild_id: str) -> discord.Guild:
        guild = self.bot.get_guild(int(guild_id))
        if guild is None:
            guild = await self.bot.fetch_guild(int(guild_id))
        return guild

    async def _member(self, guild: discord.Guild, member_id: str) -> discord.Member:
        member = guild.get_member(int(member_id))
        if member is None:
            member = await guild.fetch_member(int(member_id))
        return member

    async def add_roles(self, guild_id: str, member_id: str, role_ids: list[str]) -> None:
        guild = await self._guild(guild_id)
        member = await self._member(guild, member_id)
        roles = [discord.Object(id=int(r)) for r in role_ids]
        # atomic=False sends one member edit for the whole batch
        await member.add_roles(*roles, reason=SYNC_REASON, atomic=len(roles) == 1)

    async def remove_roles(self, guild_id: str, member_id: str, role_ids: list[str]) -> None:
        guild = await self._guild(guild_id)
        member = await self._member(guild, member_id)
        roles = [discord.Object(id=int(r)) for r in role_ids]
        await member.remove_roles(*roles, reason=SYNC_REASON, atomic=len(roles) == 1)

    async def set_nickname(self, guild_id: str, member_id: str, nickname: str) -> None:
        guild = await self._guild(guild_id)
        member = await self._member(guild, member_id)
        await member.edit(nick=nickname, reason=SYNC_REASON)

    async def fetch_members(self, guild_id: str) -> list[ChatMember]:
        guild = await self._guild(guild_id)
        if guild.chunked and guild.members:
            members = guild.members
        else:
            members = [m async for m in guild.fetch_members(limit=None)]
        return [member_snapshot(m) for m in members]

    async def fetch_member(self, guild_id: str, member_id: str) -> Optional[ChatMember]:
        guild = await self._guild(guild_id)
        try:
            member = await self._member(guild, member_id)
        except discord.NotFound:
            logger.debug("Member %s not found in guild %s", member_id, guild_id)
            return None
        return member_snapshot(member)
