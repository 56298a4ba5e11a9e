"""Version of the Kaleidoplan playback layer (kept in step with pyproject.toml)."""

from typing import Optional

VERSION = "0.4.0"
PRE_RELEASE: Optional[str] = None  # e.g. "rc1"

APP_NAME = "Kaleidoplan Player"


def get_full_version() -> str:
    """``Kaleidoplan Player 0.4.0`` plus the pre-release tag when one is set."""
    version = VERSION if not PRE_RELEASE else f"{VERSION}-{PRE_RELEASE}"
    return f"{APP_NAME} {version}"
