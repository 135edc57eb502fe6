"""Linked account (Discord <-> Roblox) store functions.

The pair is unique in both directions. Writes check first and the table's
unique constraints catch anything that slips past the check; either way the
caller gets a domain error and nothing is committed.
"""

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rb_common.db.models import LinkedAccount
from rb_common.errors import AlreadyVerifiedError, RobloxAlreadyLinkedError

logger = logging.getLogger(__name__)


async def get_link_by_discord_id(db: AsyncSession, discord_id: str) -> LinkedAccount | None:
    result = await db.execute(
        select(LinkedAccount).where(LinkedAccount.discord_id == str(discord_id))
    )
    return result.scalar_one_or_none()


async def get_link_by_roblox_id(db: AsyncSession, roblox_id: str) -> LinkedAccount | None:
    result = await db.execute(
        select(LinkedAccount).where(LinkedAccount.roblox_id == str(roblox_id))
    )
    return result.scalar_one_or_none()


async def create_link(
    db: AsyncSession,
    discord_id: str,
    roblox_id: str,
    roblox_username: str,
    roblox_display_name: str | None = None,
) -> LinkedAccount:
    """Insert a new link.

    Raises RobloxAlreadyLinkedError if the Roblox account belongs to a
    different Discord user, AlreadyVerifiedError if the Discord user is
    already linked (to anything).
    """
    discord_id = str(discord_id)
    roblox_id = str(roblox_id)

    existing_roblox = await get_link_by_roblox_id(db, roblox_id)
    if existing_roblox is not None and existing_roblox.discord_id != discord_id:
        raise RobloxAlreadyLinkedError(roblox_id=roblox_id)

    existing_discord = await get_link_by_discord_id(db, discord_id)
    if existing_discord is not None:
        raise AlreadyVerifiedError(
            f"Already verified as {existing_discord.roblox_username}.",
            roblox_username=existing_discord.roblox_username,
        )

    link = LinkedAccount(
        discord_id=discord_id,
        roblox_id=roblox_id,
        roblox_username=roblox_username,
        roblox_display_name=roblox_display_name,
    )
    db.add(link)
    try:
        await db.flush()
    except IntegrityError as exc:
        # Lost a race against a concurrent link; the constraint tells us which side.
        await db.rollback()
        if "roblox_id" in str(exc.orig):
            raise RobloxAlreadyLinkedError(roblox_id=roblox_id) from exc
        raise AlreadyVerifiedError() from exc

    logger.info("Linked account: discord=%s -> roblox=%s (%s)", discord_id, roblox_id, roblox_username)
    return link


async def delete_link(db: AsyncSession, discord_id: str) -> LinkedAccount | None:
    """Remove the link for a Discord user. Returns the removed row, if any."""
    link = await get_link_by_discord_id(db, discord_id)
    if link is None:
        return None
    await db.execute(delete(LinkedAccount).where(LinkedAccount.id == link.id))
    await db.flush()
    logger.info("Unlinked account: discord=%s (was roblox=%s)", link.discord_id, link.roblox_id)
    return link


async def replace_link(
    db: AsyncSession,
    discord_id: str,
    roblox_id: str,
    roblox_username: str,
    roblox_display_name: str | None = None,
) -> tuple[LinkedAccount | None, LinkedAccount]:
    """Re-link: drop the Discord user's current link and write the new one.

    Both steps run in the caller's transaction. If the new link is rejected
    the caller never commits, so the old link survives.
    """
    previous = await delete_link(db, discord_id)
    link = await create_link(db, discord_id, roblox_id, roblox_username, roblox_display_name)
    return previous, link


async def refresh_display_name(
    db: AsyncSession,
    discord_id: str,
    roblox_username: str,
    roblox_display_name: str | None = None,
) -> LinkedAccount | None:
    link = await get_link_by_discord_id(db, discord_id)
    if link is None:
        return None
    link.roblox_username = roblox_username
    if roblox_display_name is not None:
        link.roblox_display_name = roblox_display_name
    await db.flush()
    return link
