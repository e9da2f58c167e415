"""OpenSubtitles AI API response dataclasses, schemas, and catalog normalization.

WHY: The AI API returns loosely shaped JSON: task responses that are
sometimes synchronous results and sometimes correlation ids, and
language catalogs that are sometimes a flat list and sometimes a map
keyed by provider. Typed dataclasses and one normalization point keep
those shape differences out of the poller, the consolidator, and the UI.

HOW: Each dataclass has a from_dict() factory. The *_SCHEMA dicts are
the JSON schemas the client hands to the error classifier so a 200 with
an unusable body surfaces as UnexpectedResponse. normalize_catalog()
resolves the catalog response variant once into
{provider_id: [LanguageEntry, ...]}.

RULES:
- RemoteStatus values are upper case; lower-case status strings from
  the service are accepted and upper-cased
- A task response with data but no status is a synchronous COMPLETED result
- A task response with only a correlation_id is CREATED
- Catalog entries without a language code are dropped with a warning
- Nothing downstream of normalize_catalog() branches on response shape
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


class JobKind(str, enum.Enum):
    """The three kinds of asynchronous work the service performs."""

    TRANSCRIPTION = "transcription"
    TRANSLATION = "translation"
    LANGUAGE_DETECTION = "language_detection"

    @property
    def label(self) -> str:
        """Human-readable name used in status and error messages."""
        return self.value.replace("_", " ").capitalize()


class RemoteStatus(str, enum.Enum):
    """Task status values reported by the submission and status calls."""

    CREATED = "CREATED"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


TERMINAL_REMOTE_STATUSES = frozenset(
    {RemoteStatus.COMPLETED, RemoteStatus.ERROR, RemoteStatus.TIMEOUT}
)

# ---------------------------------------------------------------------------
# Response schemas (validated by the error classifier)
# ---------------------------------------------------------------------------

LOGIN_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["token"],
    "properties": {"token": {"type": "string", "minLength": 1}},
}

CREDITS_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "anyOf": [
        {"required": ["credits"], "properties": {"credits": {"type": "number"}}},
        {
            "required": ["data"],
            "properties": {
                "data": {
                    "type": "object",
                    "required": ["credits"],
                    "properties": {"credits": {"type": "number"}},
                }
            },
        },
    ],
}

TASK_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "anyOf": [
        {"required": ["correlation_id"]},
        {"required": ["status"]},
        {"required": ["data"]},
    ],
    "properties": {
        "status": {"enum": [s.value for s in RemoteStatus] + [s.value.lower() for s in RemoteStatus]},
        "correlation_id": {"type": ["string", "integer"]},
        "errors": {"type": ["array", "string"]},
    },
}

CATALOG_RESPONSE_SCHEMA: Dict[str, Any] = {"type": ["object", "array"]}

LIST_RESPONSE_SCHEMA: Dict[str, Any] = {
    "anyOf": [
        {"type": "array"},
        {"type": "object", "required": ["data"], "properties": {"data": {"type": "array"}}},
    ],
}

SEARCH_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["data"],
    "properties": {
        "data": {"type": "array"},
        "total_count": {"type": "integer"},
        "total_pages": {"type": "integer"},
        "page": {"type": "integer"},
    },
}

DOWNLOAD_LINK_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["link"],
    "properties": {"link": {"type": "string", "minLength": 1}},
}

# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class TaskResponse:
    """A submission or status response for a transcription/translation/detection task.

    WHY: Submission calls answer in three shapes (synchronous result,
    correlation id, error) and status calls share the same envelope.

    HOW: from_dict() infers a missing status: data without status means a
    synchronous result, a bare correlation_id means the task was created.

    RULES:
    - status is None only if the body carried neither status, data, nor id
    - errors is always a list of strings
    - correlation_id is normalized to str
    """

    status: Optional[RemoteStatus]
    correlation_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    errors: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> TaskResponse:
        raw_status = payload.get("status")
        correlation_id = payload.get("correlation_id")
        data = payload.get("data")
        errors = payload.get("errors") or []
        if isinstance(errors, str):
            errors = [errors]

        status: Optional[RemoteStatus]
        if raw_status:
            status = RemoteStatus(str(raw_status).upper())
        elif data is not None and correlation_id is None:
            status = RemoteStatus.COMPLETED
        elif correlation_id is not None:
            status = RemoteStatus.CREATED
        else:
            status = None

        return cls(
            status=status,
            correlation_id=str(correlation_id) if correlation_id is not None else None,
            data=data if isinstance(data, dict) else None,
            errors=[str(e) for e in errors],
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REMOTE_STATUSES

    @property
    def error_text(self) -> Optional[str]:
        """Provider error text joined for display, or None."""
        return ", ".join(self.errors) if self.errors else None


@dataclass(frozen=True)
class LanguageEntry:
    """One language offered by one provider, as the provider spells it.

    RULES:
    - code keeps the provider's original spelling (e.g. "en-US")
    - display_name falls back to the code when the provider omits it
    """

    provider_id: str
    code: str
    display_name: str


@dataclass
class Credits:
    """Remaining credit balance reported by the liveness/credits call."""

    remaining: float

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> Credits:
        data = payload.get("data")
        if isinstance(data, dict) and "credits" in data:
            return cls(remaining=data["credits"])
        return cls(remaining=payload.get("credits", 0))


@dataclass
class DetectedLanguage:
    """Language reported by a completed language detection task."""

    iso_639_1: str
    name: str
    w3c: Optional[str] = None
    native: Optional[str] = None
    iso_639_2b: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> DetectedLanguage:
        return cls(
            iso_639_1=payload.get("ISO_639_1") or payload.get("W3C") or "",
            name=payload.get("name", ""),
            w3c=payload.get("W3C"),
            native=payload.get("native"),
            iso_639_2b=payload.get("ISO_639_2b"),
        )


# ---------------------------------------------------------------------------
# Catalog normalization
# ---------------------------------------------------------------------------


def unwrap_data(payload: Any) -> Any:
    """Return payload["data"] when the service wrapped the result, else payload."""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def normalize_catalog(
    payload: Any,
    providers: Sequence[str],
) -> Dict[str, List[LanguageEntry]]:
    """Resolve a catalog response into one list of LanguageEntry per provider.

    WHY: The languages endpoint answers either with a flat list (every
    provider supports every language) or with a map provider → list.
    Resolving the variant here means nothing downstream ever branches
    on response shape again.

    HOW: Unwraps a "data" envelope, then:
      - list → the same entries are attributed to every provider in
        `providers`
      - dict → each key is a provider id, each value its entry list;
        providers listed in `providers` but missing from the map get []

    RULES:
    - Provider order: `providers` first, then extra map keys in map order
    - Entries accept language_code/language_name or code/name keys
    - Entries without a code are skipped with a warning

    Args:
        payload: Raw JSON body of the languages call.
        providers: Provider ids from the matching apis call.

    Returns:
        Ordered dict of provider id → list of LanguageEntry.
    """
    body = unwrap_data(payload)
    catalogs: Dict[str, List[LanguageEntry]] = {}

    if isinstance(body, list):
        if not providers:
            logger.warning("Flat language list received but no providers are known")
        for provider_id in providers:
            catalogs[provider_id] = _parse_entries(provider_id, body)
        return catalogs

    if isinstance(body, dict):
        for provider_id in providers:
            catalogs[provider_id] = _parse_entries(provider_id, body.get(provider_id) or [])
        for provider_id, entries in body.items():
            if provider_id not in catalogs:
                catalogs[provider_id] = _parse_entries(provider_id, entries or [])
        return catalogs

    logger.warning("Unrecognized catalog payload type: %s", type(body).__name__)
    return catalogs


def _parse_entries(provider_id: str, raw_entries: Any) -> List[LanguageEntry]:
    if not isinstance(raw_entries, list):
        logger.warning("Catalog for provider %s is not a list, ignoring it", provider_id)
        return []

    entries: List[LanguageEntry] = []
    for raw in raw_entries:
        if isinstance(raw, str):
            code, name = raw, raw
        elif isinstance(raw, dict):
            code = raw.get("language_code") or raw.get("code") or ""
            name = raw.get("language_name") or raw.get("name") or code
        else:
            code, name = "", ""

        code = str(code).strip()
        if not code:
            logger.warning("Skipping catalog entry without a code for %s: %r", provider_id, raw)
            continue
        entries.append(LanguageEntry(provider_id=provider_id, code=code, display_name=str(name)))
    return entries
