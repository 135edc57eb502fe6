"""FastAPI dependencies shared across routes.

Long-lived services (session factory, Roblox clients, bot context) are put on
``app.state`` by the lifespan; routes reach them through these helpers.
"""

import secrets
from collections.abc import AsyncGenerator
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rankbridge.config import Settings
from rb_common.roblox.client import RobloxClient
from rb_common.roblox.oauth_client import RobloxOAuthClient


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_factory(request: Request) -> async_sessionmaker:
    factory = getattr(request.app.state, "session_factory", None)
    if factory is None:
        raise HTTPException(503, "Database not initialised")
    return factory


async def get_db(
    factory: async_sessionmaker = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: yields a database session per request."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_roblox(request: Request) -> RobloxClient:
    roblox = getattr(request.app.state, "roblox", None)
    if roblox is None:
        raise HTTPException(503, "Roblox client not initialised")
    return roblox


def get_oauth_client(request: Request) -> Optional[RobloxOAuthClient]:
    return getattr(request.app.state, "oauth_client", None)


async def verify_api_key(
    x_api_key: str = Header(None),
    settings: Settings = Depends(get_app_settings),
):
    """Shared-secret auth for the in-game API."""
    if not settings.api_secret_key:
        raise HTTPException(500, "API_SECRET_KEY not configured")
    if not secrets.compare_digest((x_api_key or "").encode(), settings.api_secret_key.encode()):
        raise HTTPException(401, "Invalid API key")
