"""Rank binding and group binding store functions.

Upsert semantics: re-creating an existing (guild, group, rank, role) or
(guild, group, role) tuple updates its names, priority and template.
"""

import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from rb_common.db.models import GroupBinding, RoleBinding

logger = logging.getLogger(__name__)

MIN_RANK = 0
MAX_RANK = 255


def _validate(priority: int, rank: int | None = None) -> None:
    if rank is not None and not MIN_RANK <= rank <= MAX_RANK:
        raise ValueError(f"Rank must be between {MIN_RANK} and {MAX_RANK}, got {rank}")
    if priority < 0:
        raise ValueError(f"Priority must be >= 0, got {priority}")


def _clean_template(template: str | None) -> str | None:
    if template is None:
        return None
    template = template.strip()
    return template or None


# ---------------------------------------------------------------------------
# Rank bindings
# ---------------------------------------------------------------------------


async def upsert_rank_binding(
    db: AsyncSession,
    guild_id: str,
    group_id: str,
    rank: int,
    rank_name: str | None,
    role_id: str,
    role_name: str | None,
    priority: int = 0,
    nickname_template: str | None = None,
) -> RoleBinding:
    _validate(priority, rank)
    result = await db.execute(
        select(RoleBinding).where(
            RoleBinding.guild_id == str(guild_id),
            RoleBinding.group_id == str(group_id),
            RoleBinding.roblox_rank == rank,
            RoleBinding.discord_role_id == str(role_id),
        )
    )
    binding = result.scalar_one_or_none()
    if binding is None:
        binding = RoleBinding(
            guild_id=str(guild_id),
            group_id=str(group_id),
            roblox_rank=rank,
            discord_role_id=str(role_id),
        )
        db.add(binding)
    binding.roblox_rank_name = rank_name
    binding.discord_role_name = role_name
    binding.priority = priority
    binding.nickname_template = _clean_template(nickname_template)
    await db.flush()
    logger.info(
        "Rank binding saved: guild=%s group=%s rank=%s -> role=%s (priority %s)",
        guild_id, group_id, rank, role_id, priority,
    )
    return binding


async def delete_rank_binding(
    db: AsyncSession,
    guild_id: str,
    group_id: str,
    rank: int,
    role_id: str | None = None,
) -> int:
    """Delete the bindings for one rank, or only the one for ``role_id``."""
    stmt = delete(RoleBinding).where(
        RoleBinding.guild_id == str(guild_id),
        RoleBinding.group_id == str(group_id),
        RoleBinding.roblox_rank == rank,
    )
    if role_id is not None:
        stmt = stmt.where(RoleBinding.discord_role_id == str(role_id))
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount or 0


async def get_rank_bindings(
    db: AsyncSession, guild_id: str, group_id: str | None = None
) -> list[RoleBinding]:
    stmt = select(RoleBinding).where(RoleBinding.guild_id == str(guild_id))
    if group_id is not None:
        stmt = stmt.where(RoleBinding.group_id == str(group_id))
    stmt = stmt.order_by(RoleBinding.priority.desc(), RoleBinding.roblox_rank, RoleBinding.id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Group bindings
# ---------------------------------------------------------------------------


async def upsert_group_binding(
    db: AsyncSession,
    guild_id: str,
    group_id: str,
    role_id: str,
    role_name: str | None,
    priority: int = 0,
    nickname_template: str | None = None,
) -> GroupBinding:
    _validate(priority)
    result = await db.execute(
        select(GroupBinding).where(
            GroupBinding.guild_id == str(guild_id),
            GroupBinding.group_id == str(group_id),
            GroupBinding.discord_role_id == str(role_id),
        )
    )
    binding = result.scalar_one_or_none()
    if binding is None:
        binding = GroupBinding(
            guild_id=str(guild_id),
            group_id=str(group_id),
            discord_role_id=str(role_id),
        )
        db.add(binding)
    binding.discord_role_name = role_name
    binding.priority = priority
    binding.nickname_template = _clean_template(nickname_template)
    await db.flush()
    logger.info(
        "Group binding saved: guild=%s group=%s -> role=%s (priority %s)",
        guild_id, group_id, role_id, priority,
    )
    return binding


async def delete_group_binding(
    db: AsyncSession, guild_id: str, group_id: str, role_id: str | None = None
) -> int:
    stmt = delete(GroupBinding).where(
        GroupBinding.guild_id == str(guild_id),
        GroupBinding.group_id == str(group_id),
    )
    if role_id is not None:
        stmt = stmt.where(GroupBinding.discord_role_id == str(role_id))
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount or 0


async def get_group_bindings(
    db: AsyncSession, guild_id: str, group_id: str | None = None
) -> list[GroupBinding]:
    stmt = select(GroupBinding).where(GroupBinding.guild_id == str(guild_id))
    if group_id is not None:
        stmt = stmt.where(GroupBinding.group_id == str(group_id))
    stmt = stmt.order_by(GroupBinding.priority.desc(), GroupBinding.group_id, GroupBinding.id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Whole-guild helpers
# ---------------------------------------------------------------------------


async def delete_all_for_guild(db: AsyncSession, guild_id: str) -> int:
    removed = 0
    for model in (RoleBinding, GroupBinding):
        result = await db.execute(delete(model).where(model.guild_id == str(guild_id)))
        removed += result.rowcount or 0
    await db.flush()
    return removed


async def get_managed_role_ids(db: AsyncSession, guild_id: str) -> set[str]:
    """Every Discord role referenced by any binding in the guild."""
    rank_roles = await db.execute(
        select(RoleBinding.discord_role_id).where(RoleBinding.guild_id == str(guild_id))
    )
    group_roles = await db.execute(
        select(GroupBinding.discord_role_id).where(GroupBinding.guild_id == str(guild_id))
    )
    return set(rank_roles.scalars().all()) | set(group_roles.scalars().all())


async def export_bindings(db: AsyncSession, guild_id: str) -> dict:
    rank_bindings = await get_rank_bindings(db, guild_id)
    group_bindings = await get_group_bindings(db, guild_id)
    return {
        "guild_id": str(guild_id),
        "rank_bindings": [
            {
                "group_id": b.group_id,
                "rank": b.roblox_rank,
                "rank_name": b.roblox_rank_name,
                "role_id": b.discord_role_id,
                "role_name": b.discord_role_name,
                "priority": b.priority,
                "nickname_template": b.nickname_template,
            }
            for b in rank_bindings
        ],
        "group_bindings": [
            {
                "group_id": b.group_id,
                "role_id": b.discord_role_id,
                "role_name": b.discord_role_name,
                "priority": b.priority,
                "nickname_template": b.nickname_template,
            }
            for b in group_bindings
        ],
    }
