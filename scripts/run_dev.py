"""Development server runner.

Usage: python scripts/run_dev.py

Host and port come from APP_HOST / APP_PORT (environment or .env).
"""

import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv  # type: ignore

load_dotenv()

import uvicorn

from realmwatch.config import get_settings

settings = get_settings()

uvicorn.run(
    "realmwatch.app:create_app",
    host=settings.app_host,
    port=settings.app_port,
    reload=settings.app_env == "development",
    factory=True,
    reload_dirs=["src"],
)
