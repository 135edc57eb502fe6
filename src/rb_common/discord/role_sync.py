"""Discord role sync: keeps a member's Discord roles and nickname in line with their Roblox ranks.

Roblox is the source of truth. For one linked member:
1. Load the guild's rank and group bindings.
2. Ask Roblox once per bound group whether the user is a member, and at which rank.
3. Work out which bound roles the member should hold (allowed) and which
   roles the bot may touch at all (managed: every role named by a binding).
4. Add allowed roles they lack; remove managed roles they hold but are not
   allowed. Roles no binding mentions are never touched.
5. Set the nickname from the highest-priority matched binding that has a template.

Steps 1-4 are pure (compute_plan) so they can be tested without Discord.
Role adds, role removes and the nickname are applied independently; a failure
in one is reported but does not undo the others.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional, Protocol

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from rb_common.db.models import GroupBinding, LinkedAccount, RoleBinding
from rb_common.errors import BridgeError, NoBindingsError, NotVerifiedError, SyncFailedError
from rb_common.identity import bindings as binding_store
from rb_common.identity import links
from rb_common.roblox.client import GroupMembership, RobloxClient

logger = logging.getLogger(__name__)

NICKNAME_MAX_LENGTH = 32
BATCH_ATTEMPTS = 2

RANK = "rank"
GROUP = "group"

_PLACEHOLDERS = {
    "roblox-username": "roblox_username",
    "display-name": "display_name",
    "discord-name": "discord_name",
    "rank-name": "rank_name",
    # short forms from older templates
    "roblox": "roblox_username",
    "display": "display_name",
    "discord": "discord_name",
}
_PLACEHOLDER_RE = re.compile(
    r"\{(" + "|".join(re.escape(k) for k in _PLACEHOLDERS) + r")\}", re.IGNORECASE
)


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Binding:
    """A rank binding or group binding, flattened for planning."""

    kind: str
    id: int
    group_id: str
    discord_role_id: str
    priority: int = 0
    rank: Optional[int] = None
    rank_name: Optional[str] = None
    nickname_template: Optional[str] = None

    @classmethod
    def from_rank_binding(cls, row: RoleBinding) -> "Binding":
        return cls(
            kind=RANK,
            id=row.id,
            group_id=str(row.group_id),
            discord_role_id=str(row.discord_role_id),
            priority=row.priority or 0,
            rank=row.roblox_rank,
            rank_name=row.roblox_rank_name,
            nickname_template=row.nickname_template,
        )

    @classmethod
    def from_group_binding(cls, row: GroupBinding) -> "Binding":
        return cls(
            kind=GROUP,
            id=row.id,
            group_id=str(row.group_id),
            discord_role_id=str(row.discord_role_id),
            priority=row.priority or 0,
            nickname_template=row.nickname_template,
        )

    def matches(self, membership: Optional[GroupMembership]) -> bool:
        if membership is None or not membership.in_group:
            return False
        if self.kind == GROUP:
            return True
        return membership.rank == self.rank


@dataclass(frozen=True)
class ChatMember:
    """Snapshot of a Discord member; the engine never holds a live discord.Member."""

    id: str
    username: str
    role_ids: frozenset[str] = frozenset()
    is_bot: bool = False
    nickname: Optional[str] = None


@dataclass
class ReconciliationPlan:
    roles_to_add: set[str] = field(default_factory=set)
    roles_to_remove: set[str] = field(default_factory=set)
    matched_bindings: list[Binding] = field(default_factory=list)
    managed_roles: set[str] = field(default_factory=set)
    nickname_binding: Optional[Binding] = None
    nickname_rank_name: Optional[str] = None
    nickname: Optional[str] = None

    @property
    def is_noop(self) -> bool:
        return not self.roles_to_add and not self.roles_to_remove


@dataclass
class SyncResult:
    roles_added: int = 0
    roles_removed: int = 0
    roles_failed: list[str] = field(default_factory=list)
    nickname_applied: Optional[str] = None
    nickname_error: Optional[str] = None
    roblox_username: Optional[str] = None
    plan: Optional[ReconciliationPlan] = None


class ChatPlatform(Protocol):
    """What the engine needs from Discord. Role ids and member ids are strings."""

    async def add_roles(self, guild_id: str, member_id: str, role_ids: list[str]) -> None: ...

    async def remove_roles(self, guild_id: str, member_id: str, role_ids: list[str]) -> None: ...

    async def set_nickname(self, guild_id: str, member_id: str, nickname: str) -> None: ...

    async def fetch_members(self, guild_id: str) -> list[ChatMember]: ...

    async def fetch_member(self, guild_id: str, member_id: str) -> Optional[ChatMember]: ...


# ---------------------------------------------------------------------------
# Pure planning
# ---------------------------------------------------------------------------


def resolve_template(
    template: str,
    *,
    roblox_username: str | None = None,
    display_name: str | None = None,
    discord_name: str | None = None,
    rank_name: str | None = None,
) -> str:
    """Fill in a nickname template. Placeholders are case-insensitive; the result is cut to 32 chars."""
    values = {
        "roblox_username": roblox_username or "",
        "display_name": display_name or "",
        "discord_name": discord_name or "",
        "rank_name": rank_name or "",
    }
    resolved = _PLACEHOLDER_RE.sub(
        lambda m: values[_PLACEHOLDERS[m.group(1).lower()]], template
    )
    return resolved[:NICKNAME_MAX_LENGTH]


def select_nickname_binding(matched: Iterable[Binding]) -> Optional[Binding]:
    """Highest priority binding with a template. Ties: rank bindings first, then lowest id."""
    candidates = [b for b in matched if b.nickname_template]
    if not candidates:
        return None
    return min(candidates, key=lambda b: (-b.priority, 0 if b.kind == RANK else 1, b.id))


def compute_plan(
    bindings: Iterable[Binding],
    memberships: dict[str, Optional[GroupMembership]],
    current_role_ids: Iterable[str],
) -> ReconciliationPlan:
    """
    Diff desired roles against current roles.

    memberships maps group_id -> membership (None or in_group=False means the
    user holds no rank in that group).
    """
    current = set(current_role_ids)
    allowed: set[str] = set()
    managed: set[str] = set()
    matched: list[Binding] = []

    for binding in bindings:
        managed.add(binding.discord_role_id)
        if binding.matches(memberships.get(binding.group_id)):
            allowed.add(binding.discord_role_id)
            matched.append(binding)

    plan = ReconciliationPlan(
        roles_to_add=allowed - current,
        roles_to_remove=(managed & current) - allowed,
        matched_bindings=matched,
        managed_roles=managed,
    )

    winner = select_nickname_binding(matched)
    if winner is not None:
        plan.nickname_binding = winner
        membership = memberships.get(winner.group_id)
        plan.nickname_rank_name = winner.rank_name or (membership.role_name if membership else None)
    return plan


# ---------------------------------------------------------------------------
# I/O
# ---------------------------------------------------------------------------


async def _load_inputs(
    session_factory: async_sessionmaker,
    discord_id: str,
    guild_id: str,
    group_id: str | None,
) -> tuple[LinkedAccount, list[Binding]]:
    async with session_factory() as db:
        link = await links.get_link_by_discord_id(db, discord_id)
        if link is None:
            raise NotVerifiedError()
        rank_rows = await binding_store.get_rank_bindings(db, guild_id, group_id)
        group_rows = await binding_store.get_group_bindings(db, guild_id, group_id)

    bound = [Binding.from_rank_binding(r) for r in rank_rows]
    bound += [Binding.from_group_binding(g) for g in group_rows]
    if not bound:
        raise NoBindingsError()
    return link, bound


async def _fetch_memberships(
    roblox: RobloxClient, roblox_id: str, bindings: list[Binding]
) -> dict[str, GroupMembership]:
    """One membership lookup per distinct bound group."""
    memberships: dict[str, GroupMembership] = {}
    for group_id in dict.fromkeys(b.group_id for b in bindings):
        membership = await roblox.get_membership_rank(roblox_id, group_id)
        if membership is None:
            raise SyncFailedError(
                f"Could not read group {group_id} membership from Roblox.", group_id=group_id
            )
        memberships[group_id] = membership
    return memberships


async def _plan_for_member(
    session_factory: async_sessionmaker,
    roblox: RobloxClient,
    member: ChatMember,
    guild_id: str,
    group_id: str | None,
) -> tuple[LinkedAccount, ReconciliationPlan]:
    link, bound = await _load_inputs(session_factory, member.id, guild_id, group_id)
    memberships = await _fetch_memberships(roblox, link.roblox_id, bound)
    plan = compute_plan(bound, memberships, member.role_ids)

    if plan.nickname_binding is not None:
        username = link.roblox_username
        display_name = link.roblox_display_name or link.roblox_username
        try:
            profile = await roblox.get_profile(link.roblox_id)
        except httpx.HTTPError as exc:
            # Nickname falls back to the stored names; roles still apply
            logger.warning("Profile lookup failed for %s, using stored names: %s", link.roblox_id, exc)
            profile = None
        if profile is not None:
            username = profile.name or username
            display_name = profile.display_name or display_name
            if username != link.roblox_username or display_name != link.roblox_display_name:
                async with session_factory() as db:
                    await links.refresh_display_name(db, member.id, username, display_name)
                    await db.commit()
                link.roblox_username = username
                link.roblox_display_name = display_name
        plan.nickname = resolve_template(
            plan.nickname_binding.nickname_template,
            roblox_username=username,
            display_name=display_name,
            discord_name=member.username,
            rank_name=plan.nickname_rank_name,
        )
    return link, plan


async def _apply_roles(
    mutate: Callable[[str, str, list[str]], Awaitable[None]],
    guild_id: str,
    member: ChatMember,
    role_ids: set[str],
    verb: str,
) -> tuple[list[str], list[str]]:
    """Try the batched call twice; if both fail fall back to one call per role.

    Returns (applied, failed) role ids.
    """
    if not role_ids:
        return [], []
    ordered = sorted(role_ids)
    for attempt in range(1, BATCH_ATTEMPTS + 1):
        try:
            await mutate(guild_id, member.id, ordered)
            logger.info("%s %d roles for %s", verb, len(ordered), member.username)
            return ordered, []
        except Exception as exc:
            logger.warning(
                "Batch %s failed for %s (attempt %d): %s", verb.lower(), member.username, attempt, exc
            )

    applied: list[str] = []
    failed: list[str] = []
    for role_id in ordered:
        try:
            await mutate(guild_id, member.id, [role_id])
            applied.append(role_id)
        except Exception as exc:
            logger.warning("Could not %s role %s for %s: %s", verb.lower(), role_id, member.username, exc)
            failed.append(role_id)
    return applied, failed


async def reconcile_member(
    session_factory: async_sessionmaker,
    roblox: RobloxClient,
    chat: ChatPlatform,
    member: ChatMember,
    guild_id: str,
    group_id: str | None = None,
) -> SyncResult:
    """Bring one member's roles and nickname in line with Roblox.

    Raises NotVerifiedError, NoBindingsError, or SyncFailedError (anything
    unexpected from Roblox or the database). Per-role and nickname failures
    are reported in the result, not raised.
    """
    guild_id = str(guild_id)
    try:
        link, plan = await _plan_for_member(session_factory, roblox, member, guild_id, group_id)

        added, add_failed = await _apply_roles(chat.add_roles, guild_id, member, plan.roles_to_add, "Added")
        removed, remove_failed = await _apply_roles(
            chat.remove_roles, guild_id, member, plan.roles_to_remove, "Removed"
        )
    except BridgeError:
        raise
    except Exception as exc:
        logger.error("Failed to sync member %s: %s", member.id, exc, exc_info=True)
        raise SyncFailedError(str(exc) or exc.__class__.__name__) from exc

    result = SyncResult(
        roles_added=len(added),
        roles_removed=len(removed),
        roles_failed=add_failed + remove_failed,
        roblox_username=link.roblox_username,
        plan=plan,
    )

    if plan.nickname and plan.nickname != member.nickname:
        try:
            await chat.set_nickname(guild_id, member.id, plan.nickname)
            result.nickname_applied = plan.nickname
        except Exception as exc:
            logger.warning("Failed to set nickname for %s: %s", member.id, exc)
            result.nickname_error = str(exc)

    logger.info(
        "Synced roles for %s: +%d, -%d%s",
        member.username,
        result.roles_added,
        result.roles_removed,
        f", nick: {result.nickname_applied}" if result.nickname_applied else "",
    )
    return result


async def preview_member_roles(
    session_factory: async_sessionmaker,
    roblox: RobloxClient,
    member: ChatMember,
    guild_id: str,
    group_id: str | None = None,
) -> ReconciliationPlan:
    """Same plan reconcile_member would apply, without touching Discord."""
    _, plan = await _plan_for_member(session_factory, roblox, member, str(guild_id), group_id)
    return plan
