"""OpenSubtitles AI API package: async HTTP client and response models.

WHY: Everything that knows URLs, headers, and JSON shapes lives here so
the session, poller, and facade deal only in typed values and
classified ServiceErrors.

RULES:
- All HTTP calls go through OpenSubtitlesAIClient (no direct httpx usage elsewhere)
- Catalog response shapes are normalized here, once
"""

from opensubs_ai.api.client import OpenSubtitlesAIClient
from opensubs_ai.api.models import JobKind, LanguageEntry, TaskResponse

__all__ = ["OpenSubtitlesAIClient", "JobKind", "LanguageEntry", "TaskResponse"]
