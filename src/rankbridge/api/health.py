"""Health check endpoint."""

from datetime import datetime, timezone

from fastapi import APIRouter, Request
from sqlalchemy import text

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    db_status = "disconnected"
    factory = getattr(request.app.state, "session_factory", None)
    if factory is not None:
        try:
            async with factory() as session:
                await session.execute(text("SELECT 1"))
            db_status = "connected"
        except Exception as exc:
            db_status = f"error: {exc}"

    bot = getattr(request.app.state, "bot", None)
    return {
        "ok": True,
        "data": {
            "db": db_status,
            "bot": "connected" if bot is not None and bot.is_ready() else "offline",
            "version": "0.1.0",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }
