"""In-game HTTP API: look up linked users and change group ranks.

Every route needs the shared secret in the ``X-API-Key`` header.
"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rankbridge.config import Settings
from rankbridge.deps import get_app_settings, get_db, get_roblox, get_session_factory, verify_api_key
from rb_common.errors import (
    BridgeError,
    NoGroupError,
    NotVerifiedError,
    RankChangeError,
    RankNotFoundError,
)
from rb_common.identity import links
from rb_common.ranks import service as ranks
from rb_common.roblox.client import RobloxClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["ranks"], dependencies=[Depends(verify_api_key)])

API_ACTOR = "api"

_STATUS_BY_ERROR = {
    NotVerifiedError: 404,
    NoGroupError: 400,
    RankNotFoundError: 400,
    RankChangeError: 400,
}


class RankChangeRequest(BaseModel):
    roblox_id: Union[int, str]
    group_id: Optional[Union[int, str]] = None
    guild_id: Optional[str] = None


class SetRankRequest(RankChangeRequest):
    rank: Union[int, str]


def _raise_for(exc: BridgeError):
    status = next((s for cls, s in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500)
    raise HTTPException(status, {"error": exc.code, "message": exc.message})


def _group(value) -> Optional[str]:
    return str(value) if value is not None else None


@router.get("/user/{roblox_id}")
async def get_user(roblox_id: str, db: AsyncSession = Depends(get_db)):
    link = await links.get_link_by_roblox_id(db, roblox_id)
    if link is None:
        raise HTTPException(404, "User not found")
    return {
        "ok": True,
        "data": {
            "verified": True,
            "discord_id": link.discord_id,
            "roblox_id": link.roblox_id,
            "roblox_username": link.roblox_username,
            "roblox_display_name": link.roblox_display_name,
        },
    }


@router.get("/verify/{roblox_id}")
async def is_verified(roblox_id: str, db: AsyncSession = Depends(get_db)):
    link = await links.get_link_by_roblox_id(db, roblox_id)
    return {
        "ok": True,
        "data": {"verified": link is not None, "discord_id": link.discord_id if link else None},
    }


@router.get("/user/{roblox_id}/rank")
async def get_user_rank(
    roblox_id: str,
    group_id: Optional[str] = None,
    roblox: RobloxClient = Depends(get_roblox),
    settings: Settings = Depends(get_app_settings),
):
    target_group = group_id or settings.roblox_default_group_id
    if not target_group:
        raise HTTPException(400, "No group ID specified")
    membership = await roblox.get_membership_rank(roblox_id, target_group)
    if membership is None:
        raise HTTPException(502, "Failed to fetch rank")
    return {
        "ok": True,
        "data": {
            "roblox_id": roblox_id,
            "group_id": target_group,
            "in_group": membership.in_group,
            "rank": membership.rank,
            "rank_name": membership.role_name,
        },
    }


async def _change(action, body: RankChangeRequest, factory, roblox, settings: Settings, **kwargs):
    try:
        change = await action(
            factory,
            roblox,
            body.guild_id,
            API_ACTOR,
            roblox_id=str(body.roblox_id),
            group_id=_group(body.group_id),
            default_group_id=settings.roblox_default_group_id or None,
            **kwargs,
        )
    except BridgeError as exc:
        _raise_for(exc)
    return {"ok": True, "data": change.to_dict()}


@router.post("/promote")
async def promote(
    body: RankChangeRequest,
    factory: async_sessionmaker = Depends(get_session_factory),
    roblox: RobloxClient = Depends(get_roblox),
    settings: Settings = Depends(get_app_settings),
):
    return await _change(ranks.promote, body, factory, roblox, settings)


@router.post("/demote")
async def demote(
    body: RankChangeRequest,
    factory: async_sessionmaker = Depends(get_session_factory),
    roblox: RobloxClient = Depends(get_roblox),
    settings: Settings = Depends(get_app_settings),
):
    return await _change(ranks.demote, body, factory, roblox, settings)


@router.post("/setrank")
async def setrank(
    body: SetRankRequest,
    factory: async_sessionmaker = Depends(get_session_factory),
    roblox: RobloxClient = Depends(get_roblox),
    settings: Settings = Depends(get_app_settings),
):
    return await _change(ranks.set_rank, body, factory, roblox, settings, rank=body.rank)
