"""RankBridge application factory."""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from rankbridge.config import Settings, get_settings
from rb_common.db.engine import dispose_engine, get_session_factory

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiter for the in-game API (in-process, simple sliding window)
# ---------------------------------------------------------------------------

# IP -> timestamps of recent requests
_rate_limit_store: dict[str, list[float]] = {}
_RATE_LIMIT_WINDOW = 60    # seconds
_next_sweep = 0.0


def _check_rate_limit(ip: str, max_requests: int) -> bool:
    """Return True if the request is allowed, False if rate-limited."""
    now = time.monotonic()
    window_start = now - _RATE_LIMIT_WINDOW
    _drop_idle_clients(now, window_start)
    # Remove entries outside the window
    hits = [t for t in _rate_limit_store.get(ip, ()) if t >= window_start]
    if len(hits) >= max_requests:
        _rate_limit_store[ip] = hits
        return False
    hits.append(now)
    _rate_limit_store[ip] = hits
    return True


def _drop_idle_clients(now: float, window_start: float) -> None:
    """Forget clients with no request inside the window. Runs at most once per window."""
    global _next_sweep
    if now < _next_sweep:
        return
    _next_sweep = now + _RATE_LIMIT_WINDOW
    for ip in [ip for ip, hits in _rate_limit_store.items() if not hits or hits[-1] < window_start]:
        del _rate_limit_store[ip]


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    # Surface discord.py logs at WARNING and above
    logging.getLogger("discord").setLevel(logging.WARNING)
    logging.getLogger("discord.gateway").setLevel(logging.INFO)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting RankBridge (env=%s)", settings.app_env)

        from rb_common.discord.cooldowns import CooldownTracker
        from rb_common.roblox.client import RobloxClient
        from rb_common.roblox.oauth_client import RobloxOAuthClient

        factory = get_session_factory(settings.database_url)
        app.state.session_factory = factory

        roblox = RobloxClient(settings.roblox_api_key)
        await roblox.initialize()
        app.state.roblox = roblox

        oauth_client = None
        if settings.oauth_enabled:
            oauth_client = RobloxOAuthClient(
                settings.roblox_oauth_client_id,
                settings.roblox_oauth_client_secret,
                settings.oauth_redirect_uri,
            )
            await oauth_client.initialize()
            logger.info("Roblox OAuth enabled (redirect %s)", settings.oauth_redirect_uri)
        app.state.oauth_client = oauth_client

        cooldowns = CooldownTracker(settings.sync_cooldown_seconds)

        # Start the Discord bot in a background task (skipped if no token)
        bot_task = None
        scheduler = None
        if settings.discord_bot_token:
            from rb_common.discord.bot import BotContext, connected_guild_ids, get_bot, set_context, start_bot
            from rb_common.discord.chat import DiscordChatAdapter
            from rb_common.sync.scheduler import BridgeScheduler

            bot = get_bot()
            chat = DiscordChatAdapter(bot)
            set_context(
                BotContext(
                    session_factory=factory,
                    roblox=roblox,
                    chat=chat,
                    cooldowns=cooldowns,
                    oauth=oauth_client,
                    default_group_id=settings.roblox_default_group_id or None,
                    verification_timeout_minutes=settings.verification_timeout_minutes,
                    oauth_state_timeout_minutes=settings.oauth_state_timeout_minutes,
                    batch_concurrency=settings.batch_concurrency,
                )
            )
            app.state.bot = bot
            bot_task = asyncio.create_task(start_bot(settings.discord_bot_token))
            logger.info("Discord bot task started")

            scheduler = BridgeScheduler(
                session_factory=factory,
                roblox=roblox,
                chat=chat,
                cooldowns=cooldowns,
                connected_guild_ids=connected_guild_ids,
                auto_sync_interval_hours=settings.auto_sync_interval_hours,
                concurrency=settings.batch_concurrency,
            )
            await scheduler.start()
        else:
            app.state.bot = None
            logger.info("No DISCORD_BOT_TOKEN; bot and scheduler not started")
        app.state.scheduler = scheduler

        yield

        # Graceful shutdown
        if scheduler is not None:
            await scheduler.stop()

        if bot_task is not None:
            from rb_common.discord.bot import stop_bot
            await stop_bot()
            bot_task.cancel()
            try:
                await bot_task
            except asyncio.CancelledError:
                pass

        if oauth_client is not None:
            await oauth_client.close()
        await roblox.close()
        await dispose_engine()
        logger.info("RankBridge shutdown complete")

    app = FastAPI(
        title="RankBridge",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ---------------------------------------------------------------------------
    # Exception handlers
    # ---------------------------------------------------------------------------

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc):
        return JSONResponse(
            {"ok": False, "error": getattr(exc, "detail", None) or "Not found"},
            status_code=404,
        )

    @app.exception_handler(500)
    async def server_error_handler(request: Request, exc):
        error_id = str(uuid.uuid4())[:8]
        logger.error("Server error %s on %s: %s", error_id, request.url.path, exc)
        return Response(
            content=f'{{"ok":false,"error":"Internal server error","error_id":"{error_id}"}}',
            status_code=500,
            media_type="application/json",
        )

    @app.middleware("http")
    async def rate_limit_api(request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith("/api/"):
            client_ip = request.client.host if request.client else "unknown"
            if not _check_rate_limit(client_ip, settings.api_rate_limit_per_minute):
                logger.warning("Rate limit hit for IP %s on %s", client_ip, request.url.path)
                return Response(
                    content='{"ok":false,"error":"Too many requests"}',
                    status_code=429,
                    media_type="application/json",
                )
        return await call_next(request)

    from rankbridge.api.health import router as health_router
    from rankbridge.api.oauth_routes import router as oauth_router
    from rankbridge.api.rank_routes import router as rank_router

    app.include_router(health_router)
    app.include_router(oauth_router)
    app.include_router(rank_router)

    return app
