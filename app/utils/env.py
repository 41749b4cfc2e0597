"""Environment helpers for process entrypoints.

Used before Settings exists (database module import, arq worker boot).
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def require_env(name: str) -> str:
    """Return the value of a mandatory environment variable or raise RuntimeError.
    WHY: Fail-fast during startup when critical configuration is missing.
    """
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def env_flag(name: str, default: bool = False) -> bool:
    """Parse a boolean feature flag such as ENFORCE_PHONE_VERIFICATION=true."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUTHY


def load_env_file(path: Optional[str] = None) -> bool:
    """Load variables from a .env file without overwriting the environment.

    WHAT:
        Loads variables from a local .env file into os.environ.
    WHY:
        Local development uses a .env file; deployed instances get real
        environment variables, which must win.

    Returns:
        True if a file was found and loaded
    """
    loaded = load_dotenv(dotenv_path=path, override=False)

    if loaded:
        logger.info("[ENV] Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("[ENV] No local .env file found")
    return loaded
