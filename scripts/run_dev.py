"""Development server runner.

Usage: python scripts/run_dev.py

Reads APP_HOST / APP_PORT from the environment (or .env) like the app does.
"""

import sys
import os

# Ensure src/ is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import uvicorn

from rankbridge.config import get_settings

settings = get_settings()

uvicorn.run(
    "rankbridge.app:create_app",
    host=settings.app_host,
    port=settings.app_port,
    reload=True,
    factory=True,
    reload_dirs=["src"],
)
