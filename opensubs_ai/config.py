"""Configuration constants, polling defaults, and .env loading.

WHY: Centralizes every configurable value of the client (service URLs,
credentials, polling budget, cache lifetimes, file-type routing) so they
are easy to find, update, and override. Plain data structures, not logic
buried in the client or the poller.

HOW: python-dotenv loads the .env file on import. Constants are defined
as module-level strings, numbers, and sets read from the environment
with defaults. The load_*() functions give a clear error when a required
value is missing. PollingSettings bundles the polling budget into one
mutable object so the interval can be changed while jobs are running.

RULES:
- API key and credentials come from .env / environment, never hardcoded
- POLLING_TIMEOUT_SECONDS defaults to 2 hours (long media transcription)
- POLLING_INTERVAL_SECONDS defaults to 10 seconds
- Token files older than TOKEN_MAX_AGE_SECONDS (12h) are treated as absent
- Catalog data is cached for CATALOG_CACHE_TTL_SECONDS (24h)
- All defaults can be overridden via environment variables
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

# Load .env from the project root (where the script is run from)
load_dotenv()

# ---------------------------------------------------------------------------
# Remote service
# ---------------------------------------------------------------------------

OPENSUBS_BASE_URL = os.getenv(
    "OPENSUBS_BASE_URL", "https://api.opensubtitles.com/api/v1"
)
OPENSUBS_URL_PARAMETER = os.getenv("OPENSUBS_URL_PARAMETER", "")
"""Optional query suffix appended to every request URL (debug routing)."""

OPENSUBS_USER_AGENT = os.getenv(
    "OPENSUBS_USER_AGENT", "AI.Opensubtitles.com-Client v1.0.0"
)

TRANSPORT_MAX_RETRIES = int(os.getenv("TRANSPORT_MAX_RETRIES", "3"))
TRANSPORT_BASE_DELAY_S = float(os.getenv("TRANSPORT_BASE_DELAY_S", "1.0"))

# ---------------------------------------------------------------------------
# Polling budget
# ---------------------------------------------------------------------------

POLLING_INTERVAL_SECONDS = float(os.getenv("POLLING_INTERVAL_SECONDS", "10"))
POLLING_TIMEOUT_SECONDS = float(os.getenv("POLLING_TIMEOUT_SECONDS", str(2 * 60 * 60)))

# ---------------------------------------------------------------------------
# Caches
# ---------------------------------------------------------------------------

TOKEN_CACHE_PATH = Path(
    os.getenv(
        "TOKEN_CACHE_PATH",
        str(Path.home() / ".opensubs_ai" / "auth_token.txt"),
    )
).expanduser()
TOKEN_MAX_AGE_SECONDS = float(os.getenv("TOKEN_MAX_AGE_SECONDS", str(12 * 60 * 60)))

CATALOG_CACHE_TTL_SECONDS = float(
    os.getenv("CATALOG_CACHE_TTL_SECONDS", str(24 * 60 * 60))
)

# ---------------------------------------------------------------------------
# File-type routing
# ---------------------------------------------------------------------------

SUPPORTED_MEDIA_FORMATS: set[str] = {
    ".aac", ".aiff", ".avi", ".flac", ".m4a", ".mkv", ".mov",
    ".mp3", ".mp4", ".ogg", ".wav", ".webm", ".wma", ".wmv",
}
"""Audio/video extensions submitted for transcription (lowercase, with dot)."""

SUPPORTED_SUBTITLE_FORMATS: set[str] = {
    ".srt", ".vtt", ".ass", ".ssa", ".sub", ".txt",
}
"""Subtitle extensions submitted for translation (lowercase, with dot)."""


@dataclass
class PollingSettings:
    """Polling interval and wall-clock timeout for asynchronous jobs.

    WHY: The same budget must fit fast text jobs and multi-hour audio jobs,
    and the UI may change the interval while jobs are in flight.

    HOW: The poller reads interval_seconds afresh before every reschedule
    and compares elapsed time against timeout_seconds at every check.

    RULES:
    - interval_seconds must be > 0
    - timeout_seconds must be > 0
    """

    interval_seconds: float = POLLING_INTERVAL_SECONDS
    timeout_seconds: float = POLLING_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("Polling interval must be positive")
        if self.timeout_seconds <= 0:
            raise ValueError("Polling timeout must be positive")


def load_api_key() -> str:
    """Load the OpenSubtitles API key from the environment.

    WHY: Every request carries the Api-Key header. Loading it from the
    environment (via .env) keeps it out of source code.

    RULES:
    - Raises ValueError if the key is missing or empty
    - Never returns a default/placeholder value
    """
    key = os.getenv("OPENSUBS_API_KEY", "").strip()
    if not key:
        raise ValueError(
            "OpenSubtitles API key not configured. "
            "Add OPENSUBS_API_KEY to the .env file in the app folder."
        )
    return key


def load_credentials() -> Tuple[str, str]:
    """Load the username and password used for fresh logins.

    RULES:
    - Raises ValueError if either value is missing
    """
    username = os.getenv("OPENSUBS_USERNAME", "").strip()
    password = os.getenv("OPENSUBS_PASSWORD", "")
    if not username or not password:
        raise ValueError(
            "OpenSubtitles credentials not configured. "
            "Add OPENSUBS_USERNAME and OPENSUBS_PASSWORD to the .env file."
        )
    return username, password
