"""One-click verification via Roblox OAuth 2.0 (authorization code).

begin_oauth() stores a random state token for the Discord user and returns
the Roblox authorize URL. handle_callback() redeems the state, exchanges the
code, and links the account. A state token is single-use: it is deleted on
every terminal outcome, success or failure.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rb_common.audit import log as audit
from rb_common.db.models import LinkedAccount, OAuthState
from rb_common.db.timestamps import expires_in, is_expired, utcnow
from rb_common.errors import (
    AlreadyVerifiedError,
    BlacklistedError,
    InvalidStateError,
    RobloxAlreadyLinkedError,
)
from rb_common.identity import blacklist, links
from rb_common.roblox.oauth_client import RobloxOAuthClient

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MINUTES = 10


@dataclass
class OAuthOutcome:
    discord_id: str
    guild_id: Optional[str]
    link: LinkedAccount
    is_reverify: bool = False
    previous_username: Optional[str] = None


async def _get_state(db: AsyncSession, state: str) -> OAuthState | None:
    result = await db.execute(select(OAuthState).where(OAuthState.state == state))
    return result.scalar_one_or_none()


async def _discard_state(session_factory: async_sessionmaker, state: str) -> None:
    async with session_factory() as db:
        await db.execute(delete(OAuthState).where(OAuthState.state == state))
        await db.commit()


async def begin_oauth(
    session_factory: async_sessionmaker,
    oauth_client: RobloxOAuthClient,
    discord_id: str,
    guild_id: str | None,
    is_reverify: bool = False,
    timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES,
) -> tuple[str, str]:
    """Returns (authorize_url, state). Replaces any earlier state for the user."""
    discord_id = str(discord_id)
    state = secrets.token_hex(32)

    async with session_factory() as db:
        result = await db.execute(select(OAuthState).where(OAuthState.discord_id == discord_id))
        row = result.scalar_one_or_none()
        if row is None:
            row = OAuthState(discord_id=discord_id)
            db.add(row)
        row.state = state
        row.guild_id = str(guild_id) if guild_id is not None else None
        row.is_reverify = is_reverify
        row.expires_at = expires_in(timeout_minutes)
        await db.commit()

    logger.info("Generated OAuth URL for discord=%s (reverify: %s)", discord_id, is_reverify)
    return oauth_client.authorize_url(state), state


async def handle_callback(
    session_factory: async_sessionmaker,
    oauth_client: RobloxOAuthClient,
    code: str,
    state: str,
) -> OAuthOutcome:
    async with session_factory() as db:
        row = await _get_state(db, state)
        if row is None:
            raise InvalidStateError()
        discord_id = row.discord_id
        guild_id = row.guild_id
        is_reverify = bool(row.is_reverify)
        expired = is_expired(row.expires_at)

    try:
        if expired:
            raise InvalidStateError(discord_id=discord_id)
        outcome = await _link_from_callback(
            session_factory, oauth_client, code, state, discord_id, guild_id, is_reverify
        )
    except Exception:
        await _discard_state(session_factory, state)
        raise

    logger.info(
        "OAuth verification complete: discord=%s -> roblox=%s (%s)",
        discord_id, outcome.link.roblox_id, outcome.link.roblox_username,
    )
    return outcome


async def _link_from_callback(
    session_factory: async_sessionmaker,
    oauth_client: RobloxOAuthClient,
    code: str,
    state: str,
    discord_id: str,
    guild_id: str | None,
    is_reverify: bool,
) -> OAuthOutcome:
    async with session_factory() as db:
        if await blacklist.is_discord_blacklisted(db, guild_id, discord_id):
            raise BlacklistedError("You are blacklisted from verification.", discord_id=discord_id)

    token = await oauth_client.exchange_code(code)
    userinfo = await oauth_client.get_userinfo(token)

    roblox_id = str(userinfo["sub"])
    username = userinfo.get("preferred_username") or userinfo.get("name") or f"User{roblox_id}"
    display_name = userinfo.get("nickname") or username
    logger.info("OAuth userinfo received: roblox %s (%s) for discord=%s", username, roblox_id, discord_id)

    async with session_factory() as db:
        if await blacklist.is_roblox_blacklisted(db, guild_id, roblox_id):
            raise BlacklistedError("This Roblox account is blacklisted.", discord_id=discord_id)

        owner = await links.get_link_by_roblox_id(db, roblox_id)
        if owner is not None and owner.discord_id != discord_id:
            raise RobloxAlreadyLinkedError(roblox_id=roblox_id, discord_id=discord_id)

        existing = await links.get_link_by_discord_id(db, discord_id)
        previous_username = existing.roblox_username if existing else None
        if existing is not None and not is_reverify:
            raise AlreadyVerifiedError(
                f"You are already verified as {existing.roblox_username}. "
                "Use /reverify to switch accounts.",
                discord_id=discord_id,
            )

        if is_reverify:
            previous, link = await links.replace_link(
                db, discord_id, roblox_id, username, display_name
            )
            if previous is not None:
                await audit.record_audit(
                    db,
                    guild_id,
                    audit.UNLINK,
                    actor_discord_id=discord_id,
                    target_discord_id=discord_id,
                    target_roblox_id=previous.roblox_id,
                    old_value=previous.roblox_username,
                    details={"reason": "reverify"},
                )
        else:
            link = await links.create_link(db, discord_id, roblox_id, username, display_name)

        await audit.record_audit(
            db,
            guild_id,
            audit.VERIFICATION,
            actor_discord_id=discord_id,
            target_discord_id=discord_id,
            target_roblox_id=roblox_id,
            old_value=previous_username,
            new_value=username,
            details={"method": "oauth", "reverify": is_reverify},
        )
        await db.execute(delete(OAuthState).where(OAuthState.state == state))
        await db.commit()

    return OAuthOutcome(
        discord_id=discord_id,
        guild_id=guild_id,
        link=link,
        is_reverify=is_reverify,
        previous_username=previous_username,
    )


async def cleanup_expired_states(session_factory: async_sessionmaker) -> int:
    async with session_factory() as db:
        result = await db.execute(delete(OAuthState).where(OAuthState.expires_at <= utcnow()))
        await db.commit()
    removed = result.rowcount or 0
    if removed:
        logger.info("Removed %d expired OAuth states", removed)
    return removed
