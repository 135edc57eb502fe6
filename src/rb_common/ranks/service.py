"""Roblox group rank changes (promote / demote / set rank) for linked users.

Callers pass the target's Discord id (slash commands) or Roblox id (in-game
HTTP API); either way the user must have a link. Every successful change is
written to the audit log.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from rb_common.audit import log as audit
from rb_common.db.models import LinkedAccount
from rb_common.errors import (
    NoGroupError,
    NotVerifiedError,
    RankChangeError,
    RankNotFoundError,
)
from rb_common.identity import links
from rb_common.roblox.client import GroupMembership, GroupRole, RobloxClient

logger = logging.getLogger(__name__)


@dataclass
class RankChange:
    roblox_id: str
    roblox_username: str
    group_id: str
    old_rank: Optional[int]
    old_rank_name: Optional[str]
    new_rank: int
    new_rank_name: str

    def to_dict(self) -> dict:
        return {
            "roblox_id": self.roblox_id,
            "roblox_username": self.roblox_username,
            "group_id": self.group_id,
            "old_rank": self.old_rank,
            "old_rank_name": self.old_rank_name,
            "new_rank": self.new_rank,
            "new_rank_name": self.new_rank_name,
        }


def _group_or_default(group_id: str | None, default_group_id: str | None) -> str:
    target = group_id or default_group_id
    if not target:
        raise NoGroupError()
    return str(target)


async def _load_target(
    session_factory: async_sessionmaker,
    discord_id: str | None = None,
    roblox_id: str | None = None,
) -> LinkedAccount:
    async with session_factory() as db:
        if discord_id is not None:
            link = await links.get_link_by_discord_id(db, discord_id)
        else:
            link = await links.get_link_by_roblox_id(db, roblox_id)
    if link is None:
        raise NotVerifiedError("Target user is not verified.")
    return link


async def _current_membership(roblox: RobloxClient, roblox_id: str, group_id: str) -> GroupMembership:
    membership = await roblox.get_membership_rank(roblox_id, group_id)
    if membership is None:
        raise RankChangeError("Failed to fetch rank information.")
    return membership


async def _apply(
    roblox: RobloxClient,
    link: LinkedAccount,
    group_id: str,
    membership: GroupMembership,
    role: GroupRole,
) -> RankChange:
    try:
        changed = await roblox.set_rank(group_id, link.roblox_id, role.id)
    except httpx.HTTPError as exc:
        logger.warning("Rank change for %s in group %s failed: %s", link.roblox_id, group_id, exc)
        raise RankChangeError(str(exc)) from exc
    if not changed:
        raise RankChangeError("User is not in the group.")
    return RankChange(
        roblox_id=link.roblox_id,
        roblox_username=link.roblox_username,
        group_id=group_id,
        old_rank=membership.rank if membership.in_group else None,
        old_rank_name=membership.role_name,
        new_rank=role.rank,
        new_rank_name=role.name,
    )


async def _record(
    session_factory: async_sessionmaker,
    guild_id: str | None,
    action_type: str,
    actor_discord_id: str | None,
    link: LinkedAccount,
    change: RankChange,
) -> None:
    async with session_factory() as db:
        await audit.record_audit(
            db,
            guild_id,
            action_type,
            actor_discord_id=actor_discord_id,
            target_discord_id=link.discord_id,
            target_roblox_id=link.roblox_id,
            old_value=change.old_rank_name,
            new_value=change.new_rank_name,
            details={"group_id": change.group_id, "old_rank": change.old_rank, "new_rank": change.new_rank},
        )
        await db.commit()


async def _step(
    session_factory: async_sessionmaker,
    roblox: RobloxClient,
    step: int,
    guild_id: str | None,
    actor_discord_id: str | None,
    discord_id: str | None,
    roblox_id: str | None,
    group_id: str | None,
    default_group_id: str | None,
) -> RankChange:
    """Move one role up (step=1) or down (step=-1) the group's ladder."""
    target_group = _group_or_default(group_id, default_group_id)
    link = await _load_target(session_factory, discord_id, roblox_id)

    membership = await _current_membership(roblox, link.roblox_id, target_group)
    if not membership.in_group:
        raise RankChangeError("User is not in the group.")

    roles = await roblox.get_group_roles(target_group)
    index = next((i for i, r in enumerate(roles) if r.rank == membership.rank), -1)
    if step > 0 and (index == -1 or index == len(roles) - 1):
        raise RankChangeError("Cannot promote further.")
    # index 0 is Guest; nobody is demoted into it
    if step < 0 and index <= 1:
        raise RankChangeError("Cannot demote further.")

    change = await _apply(roblox, link, target_group, membership, roles[index + step])
    action = audit.PROMOTION if step > 0 else audit.DEMOTION
    await _record(session_factory, guild_id, action, actor_discord_id, link, change)
    logger.info(
        "%s %s from %s to %s",
        "Promoted" if step > 0 else "Demoted",
        link.roblox_username, change.old_rank_name, change.new_rank_name,
    )
    return change


async def promote(
    session_factory: async_sessionmaker,
    roblox: RobloxClient,
    guild_id: str | None,
    actor_discord_id: str | None,
    *,
    discord_id: str | None = None,
    roblox_id: str | None = None,
    group_id: str | None = None,
    default_group_id: str | None = None,
) -> RankChange:
    return await _step(
        session_factory, roblox, 1, guild_id, actor_discord_id,
        discord_id, roblox_id, group_id, default_group_id,
    )


async def demote(
    session_factory: async_sessionmaker,
    roblox: RobloxClient,
    guild_id: str | None,
    actor_discord_id: str | None,
    *,
    discord_id: str | None = None,
    roblox_id: str | None = None,
    group_id: str | None = None,
    default_group_id: str | None = None,
) -> RankChange:
    return await _step(
        session_factory, roblox, -1, guild_id, actor_discord_id,
        discord_id, roblox_id, group_id, default_group_id,
    )


def find_role(roles: list[GroupRole], rank: int | str) -> Optional[GroupRole]:
    """Match a rank number (int or digit string) or a role name (case-insensitive)."""
    if isinstance(rank, int) or str(rank).strip().isdigit():
        number = int(rank)
        return next((r for r in roles if r.rank == number), None)
    name = str(rank).strip().lower()
    return next((r for r in roles if r.name.lower() == name), None)


async def set_rank(
    session_factory: async_sessionmaker,
    roblox: RobloxClient,
    guild_id: str | None,
    actor_discord_id: str | None,
    rank: int | str,
    *,
    discord_id: str | None = None,
    roblox_id: str | None = None,
    group_id: str | None = None,
    default_group_id: str | None = None,
) -> RankChange:
    target_group = _group_or_default(group_id, default_group_id)
    link = await _load_target(session_factory, discord_id, roblox_id)

    roles = await roblox.get_group_roles(target_group)
    role = find_role(roles, rank)
    if role is None:
        raise RankNotFoundError(f"Rank '{rank}' does not exist in group {target_group}.")

    membership = await _current_membership(roblox, link.roblox_id, target_group)
    change = await _apply(roblox, link, target_group, membership, role)
    await _record(session_factory, guild_id, audit.RANK_CHANGE, actor_discord_id, link, change)
    logger.info("Set %s to %s in group %s", link.roblox_username, role.name, target_group)
    return change


async def get_rank_info(
    session_factory: async_sessionmaker,
    roblox: RobloxClient,
    *,
    discord_id: str | None = None,
    roblox_id: str | None = None,
    group_id: str | None = None,
    default_group_id: str | None = None,
) -> tuple[LinkedAccount, GroupMembership]:
    target_group = _group_or_default(group_id, default_group_id)
    link = await _load_target(session_factory, discord_id, roblox_id)
    membership = await _current_membership(roblox, link.roblox_id, target_group)
    return link, membership
