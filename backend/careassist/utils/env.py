"""Environment helpers shared by the API, the worker and alembic.

WHAT: Locate and load backend/.env, then read mandatory variables from it
WHY: database.py and security.py run at import time in every entry point
     (uvicorn, arq, alembic, pytest) and each starts from a different cwd
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def load_env_file() -> bool:
    """Load backend/.env, falling back to a .env in the working directory.

    Exported variables always win (override=False).
    Returns True when a file was read.
    """
    env_path = BACKEND_ENV_FILE if BACKEND_ENV_FILE.exists() else None
    loaded = load_dotenv(dotenv_path=env_path, override=False)
    if loaded:
        logger.info("[ENV] Loaded %s", env_path or ".env from working directory")
    else:
        logger.debug("[ENV] No .env file found")
    return loaded


def require_env(name: str) -> str:
    """Return a mandatory variable, reading .env once if it is not exported."""
    value = os.getenv(name)
    if not value:
        load_env_file()
        value = os.getenv(name)
    if not value:
        raise RuntimeError(
            f"{name} is not set. Export it or add it to {BACKEND_ENV_FILE}"
        )
    return value
