"""Pydantic request/response models for the local HTTP bridge.

WHY: The bridge endpoints need typed schemas for request validation,
response serialization, and the OpenAPI docs a UI developer reads.

HOW: One model per request or response body. Every field carries a
Field(description=...) so /docs is self-explanatory.

RULES:
- State and category strings are the enum values used internally
- Response models never expose tokens or passwords
- Python 3.9+ compatible (no PEP 604 unions, use Optional from typing)
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CatalogKind(str, Enum):
    """Job kinds that have a language catalog."""

    transcription = "transcription"
    translation = "translation"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Credentials submitted by the UI's login form."""

    username: str = Field(description="OpenSubtitles username.")
    password: str = Field(description="OpenSubtitles password.")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    """Current authentication state and credit balance."""

    auth_state: str = Field(description="unauthenticated, authenticating, or authenticated.")
    credits: Optional[float] = Field(
        default=None,
        description="Remaining credits, when known.",
    )


class LanguageOptionModel(BaseModel):
    """One entry of a language picker."""

    id: str = Field(description="Canonical language id (base subtag, or 'auto-detect').")
    name: str = Field(description="Display name.")
    compatible: bool = Field(description="Whether the selected provider supports it.")
    providers: List[str] = Field(description="Providers that offer this language.")


class LanguagesResponse(BaseModel):
    """Consolidated languages for one job kind."""

    kind: CatalogKind = Field(description="Catalog kind.")
    providers: List[str] = Field(description="Provider (model) ids, in service order.")
    languages: List[LanguageOptionModel] = Field(
        description="Auto-detect first, then sorted by display name.",
    )


class JobCreatedResponse(BaseModel):
    """Response returned when a job has been submitted.

    RULES:
    - state is 'completed' for synchronous results, else 'created'
    """

    id: str = Field(description="Job id for polling and cancellation.")
    kind: str = Field(description="transcription, translation, or language_detection.")
    state: str = Field(description="Initial job state.")
    filename: str = Field(description="Uploaded filename.")


class JobResponse(BaseModel):
    """Job status response.

    RULES:
    - result is only present for completed jobs
    - error is only present for error, timeout, and cancelled jobs
    """

    id: str = Field(description="Job id.")
    kind: str = Field(description="Job kind.")
    state: str = Field(description="created, pending, completed, error, timeout, or cancelled.")
    filename: str = Field(description="Uploaded filename.")
    created_at: float = Field(description="Submission timestamp (Unix epoch seconds).")
    correlation_id: Optional[str] = Field(
        default=None,
        description="Service-side task id, when the job is polled.",
    )
    message: Optional[str] = Field(
        default=None,
        description="User-facing summary once the job is terminal.",
    )
    progress: List[str] = Field(default_factory=list, description="Progress messages so far.")
    result: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Service result payload (url, content, credits_left, ...).",
    )
    error: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Error category, message, status_code, and retryable flag.",
    )

    model_config = {"json_schema_extra": {
        "examples": [
            {
                "id": "550e8400e29b41d4a716446655440000",
                "kind": "transcription",
                "state": "pending",
                "filename": "interview.mp3",
                "created_at": 1739959200.0,
                "correlation_id": "a1b2c3",
                "message": None,
                "progress": ["Task created, waiting for completion..."],
                "result": None,
                "error": None,
            }
        ]
    }}


class ErrorResponse(BaseModel):
    """Standard error response body."""

    detail: str = Field(description="Human-readable error description.")
    category: Optional[str] = Field(
        default=None,
        description="Error category for failures reported by the remote service.",
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Bridge health status.", json_schema_extra={"example": "ok"})
    version: str = Field(description="Package version.", json_schema_extra={"example": "0.1.0"})
    auth_state: str = Field(description="Current authentication state.")
