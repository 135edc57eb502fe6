"""Bio-code verification: prove ownership of a Roblox account by putting a code in its bio.

Flow:
1. start_verification() resolves the username and stores a pending code
   (one row per Discord user; starting again overwrites the old code).
2. The user pastes the code into their Roblox profile description.
3. complete_verification() re-reads the profile and writes the link.

A pending row past its expiry is treated as absent. Failed completions leave
the pending row alone so the user can fix their bio and retry.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rb_common.audit import log as audit
from rb_common.db.models import LinkedAccount, PendingVerification
from rb_common.db.timestamps import expires_in, is_expired, utcnow
from rb_common.errors import (
    AlreadyVerifiedError,
    BlacklistedError,
    CodeNotFoundError,
    NoPendingVerificationError,
    NotVerifiedError,
    RobloxAlreadyLinkedError,
    UserNotFoundError,
)
from rb_common.identity import blacklist, links
from rb_common.roblox.client import RobloxClient, RobloxUser

logger = logging.getLogger(__name__)

# Unambiguous chars: no 0/O, 1/I
_CHARSET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_CODE_LENGTH = 8

DEFAULT_TIMEOUT_MINUTES = 10

VERIFIED = "verified"
PENDING = "pending"
UNVERIFIED = "unverified"


@dataclass
class PendingChallenge:
    discord_id: str
    code: str
    roblox_user: RobloxUser
    expires_at: datetime
    timeout_minutes: int


@dataclass
class VerificationStatus:
    state: str
    link: Optional[LinkedAccount] = None
    pending: Optional[PendingVerification] = None


def generate_code() -> str:
    return "".join(secrets.choice(_CHARSET) for _ in range(_CODE_LENGTH))


async def get_pending(db: AsyncSession, discord_id: str) -> PendingVerification | None:
    """Return the unexpired pending verification for a user, else None."""
    result = await db.execute(
        select(PendingVerification).where(PendingVerification.discord_id == str(discord_id))
    )
    pending = result.scalar_one_or_none()
    if pending is None or is_expired(pending.expires_at):
        return None
    return pending


async def start_verification(
    session_factory: async_sessionmaker,
    roblox: RobloxClient,
    discord_id: str,
    roblox_username: str,
    guild_id: str | None = None,
    timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES,
) -> PendingChallenge:
    discord_id = str(discord_id)
    async with session_factory() as db:
        existing = await links.get_link_by_discord_id(db, discord_id)
        if existing is not None:
            raise AlreadyVerifiedError(
                f"You are already verified as {existing.roblox_username}.",
                roblox_username=existing.roblox_username,
            )
        if await blacklist.is_discord_blacklisted(db, guild_id, discord_id):
            raise BlacklistedError()

        user = await roblox.resolve_username(roblox_username.strip())
        if user is None:
            raise UserNotFoundError(f"Could not find Roblox user '{roblox_username}'.")

        if await blacklist.is_roblox_blacklisted(db, guild_id, user.id):
            raise BlacklistedError("This Roblox account is blacklisted from verification.")
        owner = await links.get_link_by_roblox_id(db, user.id)
        if owner is not None and owner.discord_id != discord_id:
            raise RobloxAlreadyLinkedError(roblox_id=user.id)

        code = generate_code()
        expires_at = expires_in(timeout_minutes)

        result = await db.execute(
            select(PendingVerification).where(PendingVerification.discord_id == discord_id)
        )
        pending = result.scalar_one_or_none()
        if pending is None:
            pending = PendingVerification(discord_id=discord_id)
            db.add(pending)
        pending.verification_code = code
        pending.roblox_username = user.name
        pending.expires_at = expires_at
        await db.commit()

    logger.info("Verification started: discord=%s roblox=%s", discord_id, user.name)
    return PendingChallenge(
        discord_id=discord_id,
        code=code,
        roblox_user=user,
        expires_at=expires_at,
        timeout_minutes=timeout_minutes,
    )


async def complete_verification(
    session_factory: async_sessionmaker,
    roblox: RobloxClient,
    discord_id: str,
    guild_id: str | None = None,
) -> LinkedAccount:
    """Check the Roblox bio for the pending code and write the link.

    Raises NoPendingVerificationError, UserNotFoundError or CodeNotFoundError
    without changing anything, so the user can retry with the same code.
    """
    discord_id = str(discord_id)
    async with session_factory() as db:
        pending = await get_pending(db, discord_id)
        if pending is None:
            raise NoPendingVerificationError()

        user = await roblox.resolve_username(pending.roblox_username)
        if user is None:
            raise UserNotFoundError(f"Could not find Roblox user '{pending.roblox_username}'.")
        profile = await roblox.get_profile(user.id)
        if profile is None:
            raise UserNotFoundError(f"Could not load the profile for '{user.name}'.")

        if pending.verification_code not in profile.description:
            raise CodeNotFoundError(code=pending.verification_code)

        if await blacklist.is_roblox_blacklisted(db, guild_id, user.id):
            raise BlacklistedError("This Roblox account is blacklisted from verification.")

        link = await links.create_link(
            db, discord_id, user.id, user.name, profile.display_name or user.display_name
        )
        await db.execute(
            delete(PendingVerification).where(PendingVerification.discord_id == discord_id)
        )
        await audit.record_audit(
            db,
            guild_id,
            audit.VERIFICATION,
            actor_discord_id=discord_id,
            target_discord_id=discord_id,
            target_roblox_id=user.id,
            new_value=user.name,
            details={"method": "bio_code"},
        )
        await db.commit()

    logger.info("Verification complete: discord=%s roblox=%s (%s)", discord_id, user.id, user.name)
    return link


async def cancel_verification(session_factory: async_sessionmaker, discord_id: str) -> bool:
    async with session_factory() as db:
        result = await db.execute(
            delete(PendingVerification).where(PendingVerification.discord_id == str(discord_id))
        )
        await db.commit()
    return bool(result.rowcount)


async def cleanup_expired_verifications(session_factory: async_sessionmaker) -> int:
    async with session_factory() as db:
        result = await db.execute(
            delete(PendingVerification).where(PendingVerification.expires_at <= utcnow())
        )
        await db.commit()
    removed = result.rowcount or 0
    if removed:
        logger.info("Removed %d expired pending verifications", removed)
    return removed


async def unlink_account(
    session_factory: async_sessionmaker,
    discord_id: str,
    guild_id: str | None = None,
    actor_discord_id: str | None = None,
) -> LinkedAccount:
    """Remove a user's link. Returns the removed link."""
    discord_id = str(discord_id)
    async with session_factory() as db:
        removed = await links.delete_link(db, discord_id)
        if removed is None:
            raise NotVerifiedError("You don't have a linked Roblox account.")
        await audit.record_audit(
            db,
            guild_id,
            audit.UNLINK,
            actor_discord_id=actor_discord_id or discord_id,
            target_discord_id=discord_id,
            target_roblox_id=removed.roblox_id,
            old_value=removed.roblox_username,
        )
        await db.commit()
    return removed


async def get_verification_status(
    session_factory: async_sessionmaker, discord_id: str
) -> VerificationStatus:
    async with session_factory() as db:
        link = await links.get_link_by_discord_id(db, discord_id)
        if link is not None:
            return VerificationStatus(state=VERIFIED, link=link)
        pending = await get_pending(db, discord_id)
        if pending is not None:
            return VerificationStatus(state=PENDING, pending=pending)
    return VerificationStatus(state=UNVERIFIED)
