"""Roblox OAuth redirect target. Public (no API key); renders an HTML result page."""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from rankbridge.deps import get_oauth_client, get_session_factory
from rankbridge.templating import templates
from rb_common.auth.oauth import OAuthOutcome, handle_callback
from rb_common.errors import BridgeError
from rb_common.roblox.oauth_client import RobloxOAuthClient

logger = logging.getLogger(__name__)

router = APIRouter(tags=["oauth"])


def _result_page(request: Request, success: bool, message: str, status_code: int = 200):
    return templates.TemplateResponse(
        request,
        "oauth_result.html",
        {"success": success, "message": message},
        status_code=status_code,
    )


async def _after_verification(outcome: OAuthOutcome) -> None:
    """Sync roles in the originating guild and DM the user. Both are best effort."""
    from rb_common.discord.bot import get_bot, get_context
    from rb_common.discord.role_sync import reconcile_member

    ctx = get_context()
    if ctx is None:
        return

    if outcome.guild_id:
        try:
            member = await ctx.chat.fetch_member(outcome.guild_id, outcome.discord_id)
            if member is not None:
                await reconcile_member(
                    ctx.session_factory, ctx.roblox, ctx.chat, member, outcome.guild_id
                )
                logger.info("Auto-synced roles for %s after OAuth verification", outcome.discord_id)
        except Exception as exc:
            logger.warning("Could not auto-sync roles after OAuth verify: %s", exc)

    try:
        import discord

        user = await get_bot().fetch_user(int(outcome.discord_id))
        link = outcome.link
        await user.send(
            embed=discord.Embed(
                title="✅ Verification Complete!",
                description=(
                    f"You are now verified as **{link.roblox_username}** "
                    f"({link.roblox_display_name or link.roblox_username})."
                ),
                color=0x00D166,
            )
        )
    except Exception as exc:
        logger.debug("Could not DM user %s: %s", outcome.discord_id, exc)


@router.get("/oauth/callback", include_in_schema=False)
async def oauth_callback(
    request: Request,
    background: BackgroundTasks,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    factory: async_sessionmaker = Depends(get_session_factory),
    oauth_client: Optional[RobloxOAuthClient] = Depends(get_oauth_client),
):
    if oauth_client is None:
        return _result_page(request, False, "One-click verification is not enabled.", 404)
    if error:
        logger.warning("OAuth error from Roblox: %s", error)
        return _result_page(request, False, "Authorization was denied or an error occurred.", 400)
    if not code or not state:
        return _result_page(request, False, "Missing authorization code or state.", 400)

    try:
        outcome = await handle_callback(factory, oauth_client, code, state)
    except BridgeError as exc:
        logger.info("OAuth callback rejected (%s)", exc.code)
        return _result_page(request, False, exc.message)
    except Exception as exc:
        logger.error("OAuth callback error: %s", exc, exc_info=True)
        return _result_page(request, False, "An unexpected error occurred.", 500)

    background.add_task(_after_verification, outcome)
    return _result_page(
        request, True, f"You are now verified as {outcome.link.roblox_username}!"
    )
