"""Orchestration facade: the single boundary the UI, CLI, and HTTP bridge call.

WHY: A user-facing front end needs login/logout, credits, language
choices that are valid for the chosen model, job submission, waiting,
and cancellation, without knowing about tokens, correlation ids, or
per-provider language spellings. The facade is also the single source
of truth for session and credit state.

HOW: Orchestrator composes one OpenSubtitlesAIClient, one
SessionManager, one JobPoller, and a TTLCache. Catalogs are fetched per
job kind, consolidated with core.languages.consolidate(), and swapped
in wholesale. Every remote call runs through
SessionManager.wrap_authenticated().

RULES:
- The session is read through the facade; only SessionManager mutates it
- Catalog models are replaced atomically, never edited in place
- Credits are refreshed from credits_left in completed job payloads
- Submitting a job invalidates the cached recent-media list
- A job kind is inferred from the file extension when not given
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from opensubs_ai.api.models import Credits, DetectedLanguage, JobKind, TaskResponse
from opensubs_ai.config import (
    SUPPORTED_MEDIA_FORMATS,
    SUPPORTED_SUBTITLE_FORMATS,
    PollingSettings,
)
from opensubs_ai.core.cache import TTLCache
from opensubs_ai.core.errors import ServiceError, ValidationError
from opensubs_ai.core.languages import (
    AUTO_DETECT_CODE,
    AUTO_DETECT_ID,
    LanguageCatalog,
    consolidate,
)
from opensubs_ai.core.moviehash import movie_hash
from opensubs_ai.core.poller import Clock, JobOutcome, JobPoller, JobState
from opensubs_ai.core.session import Credentials, Session, SessionManager, TokenCache

logger = logging.getLogger(__name__)

_RECENT_MEDIA_KEY = "recent_media"
_SERVICES_KEY = "services_info"
_SEARCH_LANGUAGES_KEY = "subtitle_search_languages"


class AuthState(str, enum.Enum):
    """Authentication state exposed to the UI."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class LanguageOption:
    """One entry of a language picker.

    RULES:
    - compatible is False when the selected provider lacks the language
    - available_in lists the providers that offer it
    """

    canonical_id: str
    display_name: str
    compatible: bool
    available_in: tuple[str, ...]


@dataclass(frozen=True)
class JobHandle:
    """Reference to a submitted job returned by Orchestrator.submit()."""

    job_id: str
    kind: JobKind
    file_name: str
    correlation_id: str | None = None


def job_kind_for(path: Path) -> JobKind:
    """Pick transcription or translation from a file's extension.

    Raises ValueError for unsupported extensions.
    """
    suffix = Path(path).suffix.lower()
    if suffix in SUPPORTED_MEDIA_FORMATS:
        return JobKind.TRANSCRIPTION
    if suffix in SUPPORTED_SUBTITLE_FORMATS:
        return JobKind.TRANSLATION
    raise ValueError("Unsupported file type: {}".format(suffix or Path(path).name))


class Orchestrator:
    """Session, catalog, and job orchestration over one API client.

    WHY: Several front ends (CLI, HTTP bridge) need the same workflow;
    keeping it here means none of them re-implements auth retries,
    language resolution, or polling.

    HOW: Construct with an OpenSubtitlesAIClient that is already inside
    its async context. Collaborators are created with defaults unless
    injected (tests inject fakes and a FakeClock).

    RULES:
    - Must be used from a single event loop
    - catalog(kind) is None until refresh_catalogs() has loaded it
    """

    def __init__(
        self,
        client: Any,
        credentials: Credentials | None = None,
        token_cache: TokenCache | None = None,
        settings: PollingSettings | None = None,
        clock: Clock | None = None,
        cache: TTLCache | None = None,
        session: SessionManager | None = None,
        poller: JobPoller | None = None,
    ) -> None:
        self._client = client
        self._sessions = session or SessionManager(client, token_cache=token_cache, credentials=credentials)
        self.settings = settings or PollingSettings()
        self._poller = poller or JobPoller(client, self._sessions, self.settings, clock)
        self._cache = cache or TTLCache()
        self._catalogs: dict[JobKind, LanguageCatalog] = {}
        self._credits: float | None = None

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._sessions.session

    @property
    def auth_state(self) -> AuthState:
        if self._sessions.is_authenticating:
            return AuthState.AUTHENTICATING
        if self._sessions.session.is_live:
            return AuthState.AUTHENTICATED
        return AuthState.UNAUTHENTICATED

    @property
    def credits(self) -> float | None:
        return self._credits

    @property
    def last_error(self):
        return self._sessions.last_error

    async def ensure_authenticated(self) -> bool:
        """Reuse a cached token when the service still accepts it, else log in."""
        ok = await self._sessions.ensure_authenticated()
        if ok and self._sessions.last_credits is not None:
            self._credits = self._sessions.last_credits.remaining
        return ok

    async def login(self, username: str, password: str) -> bool:
        """Log in with new credentials, replacing any current token."""
        ok = await self._sessions.login(Credentials(username, password))
        if ok:
            await self._try_refresh_credits()
        return ok

    def logout(self) -> None:
        """Clear the session, credits, and cached account data."""
        self._sessions.logout()
        self._credits = None
        self._cache.clear()
        self._catalogs = {}

    async def refresh_credits(self) -> Credits:
        credits: Credits = await self._sessions.wrap_authenticated(self._client.get_credits)
        self._credits = credits.remaining
        return credits

    async def _try_refresh_credits(self) -> None:
        try:
            await self.refresh_credits()
        except ServiceError as exc:
            logger.warning("Could not refresh credits: %s", exc)

    # ------------------------------------------------------------------
    # Catalogs
    # ------------------------------------------------------------------

    async def refresh_catalogs(self, force: bool = False) -> dict[JobKind, LanguageCatalog]:
        """Load both catalogs and rebuild the consolidated models.

        RULES:
        - Cached raw catalogs are reused for CATALOG_CACHE_TTL_SECONDS
        - force=True drops the cached entries first
        - Each model is replaced wholesale
        """
        for kind in (JobKind.TRANSCRIPTION, JobKind.TRANSLATION):
            await self.load_catalog(kind, force=force)
        return dict(self._catalogs)

    async def load_catalog(self, kind: JobKind, force: bool = False) -> LanguageCatalog:
        key = "catalog_{}".format(kind.value)
        if force:
            self._cache.remove(key)
        raw = self._cache.get(key)
        if raw is None:
            raw = await self._sessions.wrap_authenticated(lambda: self._client.get_catalog(kind))
            self._cache.set(key, raw)
        catalog = consolidate(raw)
        self._catalogs[kind] = catalog
        logger.info(
            "%s catalog ready: %d providers, %d languages",
            kind.label, len(catalog.providers), len(catalog.languages) - 1,
        )
        return catalog

    def catalog(self, kind: JobKind) -> LanguageCatalog | None:
        return self._catalogs.get(kind)

    async def language_options(self, kind: JobKind, provider: str | None = None) -> list[LanguageOption]:
        """Languages for a picker, flagged by compatibility with `provider`.

        Without a provider every language is compatible.
        """
        catalog = self._catalogs.get(kind) or await self.load_catalog(kind)
        options = []
        for language in catalog.languages:
            options.append(
                LanguageOption(
                    canonical_id=language.canonical_id,
                    display_name=language.display_name,
                    compatible=provider is None or catalog.is_compatible(language.canonical_id, provider),
                    available_in=tuple(sorted(catalog.providers_for(language.canonical_id))),
                )
            )
        return options

    def resolve_language(self, kind: JobKind, canonical_id: str, provider: str) -> str:
        """Code to submit to `provider` for `canonical_id`.

        Raises ValidationError when the provider does not offer the
        language or the catalog is not loaded.
        """
        if canonical_id in (AUTO_DETECT_ID, AUTO_DETECT_CODE):
            return AUTO_DETECT_CODE
        catalog = self._catalogs.get(kind)
        if catalog is None:
            raise ValidationError("{} languages are not loaded".format(kind.label))
        language = catalog.get(canonical_id) or catalog.by_code(canonical_id)
        if language is None:
            raise ValidationError("Unknown language: {}".format(canonical_id))
        code = language.variant_for(provider)
        if code is None:
            raise ValidationError(
                "{} is not supported by {}".format(language.display_name, provider)
            )
        return code

    # ------------------------------------------------------------------
    # Account data
    # ------------------------------------------------------------------

    async def recent_media(self, force: bool = False) -> list[dict[str, Any]]:
        if force:
            self._cache.remove(_RECENT_MEDIA_KEY)
        cached = self._cache.get(_RECENT_MEDIA_KEY)
        if cached is not None:
            return cached
        media = await self._sessions.wrap_authenticated(self._client.get_recent_media)
        self._cache.set(_RECENT_MEDIA_KEY, media)
        return media

    async def services_info(self) -> dict[str, Any]:
        cached = self._cache.get(_SERVICES_KEY)
        if cached is not None:
            return cached
        info = await self._sessions.wrap_authenticated(self._client.get_services_info)
        self._cache.set(_SERVICES_KEY, info)
        return info

    async def credit_packages(self, email: str | None = None) -> list[dict[str, Any]]:
        return await self._sessions.wrap_authenticated(
            lambda: self._client.get_credit_packages(email)
        )

    async def recent_activities(self) -> list[dict[str, Any]]:
        return await self._sessions.wrap_authenticated(self._client.get_recent_activities)

    async def download_media_file(self, media_id: str | int, file_name: str) -> str:
        """Text of a subtitle file listed under a recent-media entry."""
        return await self._sessions.wrap_authenticated(
            lambda: self._client.download_media_file(media_id, file_name)
        )

    # ------------------------------------------------------------------
    # Subtitle search
    # ------------------------------------------------------------------

    async def search_subtitles(self, path: Path | str | None = None, **params: Any) -> dict[str, Any]:
        """Search existing subtitles, optionally matching a local video file.

        When `path` is given its movie hash is sent as `moviehash`; an
        explicit moviehash keyword wins. A file too small to hash is a
        ValidationError.
        """
        if path is not None and not params.get("moviehash"):
            try:
                params["moviehash"] = movie_hash(path)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        return await self._sessions.wrap_authenticated(
            lambda: self._client.search_subtitles(**params)
        )

    async def search_features(self, **params: Any) -> dict[str, Any]:
        return await self._sessions.wrap_authenticated(
            lambda: self._client.search_features(**params)
        )

    async def download_subtitle(self, file_id: int, **options: Any) -> str:
        """Fetch a download link for `file_id`, then return the file's text."""
        info = await self._sessions.wrap_authenticated(
            lambda: self._client.request_subtitle_download(file_id, **options)
        )
        remaining = info.get("remaining")
        if remaining is not None:
            logger.info("Subtitle %s link issued, %s downloads remaining", file_id, remaining)
        return await self._client.download_file(info["link"])

    async def subtitle_search_languages(self, force: bool = False) -> list[dict[str, Any]]:
        if force:
            self._cache.remove(_SEARCH_LANGUAGES_KEY)
        cached = self._cache.get(_SEARCH_LANGUAGES_KEY)
        if cached is not None:
            return cached
        languages = await self._sessions.wrap_authenticated(self._client.get_subtitle_search_languages)
        self._cache.set(_SEARCH_LANGUAGES_KEY, languages)
        return languages

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def set_polling_interval(self, seconds: float) -> None:
        """Change the interval for every job, including ones already polling."""
        if seconds <= 0:
            raise ValueError("Polling interval must be positive")
        self.settings.interval_seconds = seconds

    async def submit(
        self,
        path: Path,
        kind: JobKind | None = None,
        provider: str | None = None,
        language: str = AUTO_DETECT_ID,
        translate_to: str | None = None,
        duration: float | None = None,
        return_content: bool = False,
        on_status: Callable[[str], None] | None = None,
    ) -> JobHandle:
        """Submit a file and start tracking the resulting job.

        WHY: One entry point for all three job kinds, so front ends only
        decide what the user picked.

        HOW: Resolves canonical language ids to the provider's codes,
        sends the submission through wrap_authenticated(), and hands the
        response to the poller.

        RULES:
        - Transcription and translation need a provider
        - Translation needs translate_to; language is the source language
        - Language detection ignores provider and language
        - The kind's catalog is loaded first if it is not loaded yet
        - Submission failures raise ServiceError; nothing is tracked then

        Args:
            path: Media or subtitle file to submit.
            kind: Job kind; inferred from the extension when None.
            provider: Provider (model) id.
            language: Canonical id (or "auto-detect") of the source language.
            translate_to: Canonical id of the target language (translation).
            duration: Media duration in seconds (language detection).
            return_content: Ask the service to inline the result text.
            on_status: Optional progress callback.

        Returns:
            JobHandle for wait() and cancel().
        """
        path = Path(path)
        kind = kind or job_kind_for(path)

        if kind is JobKind.LANGUAGE_DETECTION:
            submit_call = lambda: self._client.detect_language(path, duration)  # noqa: E731
        else:
            if not provider:
                raise ValidationError("A {} model must be selected".format(kind.value))
            if kind not in self._catalogs:
                await self.load_catalog(kind)
            source = self.resolve_language(kind, language, provider)
            if kind is JobKind.TRANSCRIPTION:
                submit_call = lambda: self._client.initiate_transcription(  # noqa: E731
                    path, source, provider, return_content
                )
            else:
                if not translate_to:
                    raise ValidationError("A target language must be selected")
                target = self.resolve_language(kind, translate_to, provider)
                submit_call = lambda: self._client.initiate_translation(  # noqa: E731
                    path, source, target, provider, return_content
                )

        if on_status:
            on_status("Submitting {}...".format(path.name))
        self._cache.remove(_RECENT_MEDIA_KEY)
        response: TaskResponse = await self._sessions.wrap_authenticated(submit_call)
        job = self._poller.start(kind, response, on_status)
        logger.info("Submitted %s for %s as job %s", path.name, kind.value, job.id)
        return JobHandle(
            job_id=job.id,
            kind=kind,
            file_name=path.name,
            correlation_id=job.correlation_id,
        )

    async def wait(self, handle: JobHandle | str) -> JobOutcome:
        """Wait for a job's terminal outcome and update credits from it."""
        job_id = handle.job_id if isinstance(handle, JobHandle) else handle
        outcome = await self._poller.wait(job_id)
        if outcome.state is JobState.COMPLETED and outcome.data:
            credits_left = outcome.data.get("credits_left")
            if isinstance(credits_left, (int, float)):
                self._credits = credits_left
        return outcome

    def cancel(self, handle: JobHandle | str) -> bool:
        job_id = handle.job_id if isinstance(handle, JobHandle) else handle
        return self._poller.cancel(job_id)

    def job_state(self, job_id: str) -> JobState | None:
        job = self._poller.get(job_id)
        return job.state if job is not None else None

    async def transcribe_file(
        self,
        path: Path,
        provider: str,
        language: str = AUTO_DETECT_ID,
        on_status: Callable[[str], None] | None = None,
    ) -> JobOutcome:
        handle = await self.submit(
            path, JobKind.TRANSCRIPTION, provider=provider, language=language, on_status=on_status
        )
        return await self.wait(handle)

    async def translate_file(
        self,
        path: Path,
        provider: str,
        translate_to: str,
        translate_from: str = AUTO_DETECT_ID,
        on_status: Callable[[str], None] | None = None,
    ) -> JobOutcome:
        handle = await self.submit(
            path,
            JobKind.TRANSLATION,
            provider=provider,
            language=translate_from,
            translate_to=translate_to,
            on_status=on_status,
        )
        return await self.wait(handle)

    async def detect_file_language(
        self,
        path: Path,
        duration: float | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> tuple[JobOutcome, DetectedLanguage | None]:
        """Run language detection; the language is None unless it completed."""
        handle = await self.submit(
            path, JobKind.LANGUAGE_DETECTION, duration=duration, on_status=on_status
        )
        outcome = await self.wait(handle)
        detected = None
        if outcome.succeeded and outcome.data:
            raw = outcome.data.get("language")
            if isinstance(raw, dict):
                detected = DetectedLanguage.from_dict(raw)
        return outcome, detected

    async def download_result(self, outcome: JobOutcome) -> str:
        """Subtitle text of a completed job (inline content or data.url).

        Raises ValueError when the outcome has nothing to download.
        """
        if not outcome.succeeded or not outcome.data:
            raise ValueError("Job {} has no result to download".format(outcome.job_id))
        content = outcome.data.get("content")
        if isinstance(content, str):
            return content
        url = outcome.data.get("url")
        if not url:
            raise ValueError("Job {} result has no download URL".format(outcome.job_id))
        return await self._sessions.wrap_authenticated(lambda: self._client.download_file(url))
