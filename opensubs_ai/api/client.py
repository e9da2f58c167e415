"""Async HTTP client for the OpenSubtitles AI API.

WHY: The session manager, the poller, and the facade need the service's
operations (login, credits, submissions, status checks, catalogs) as
plain async methods that either return typed data or raise a classified
ServiceError. This module is the only place that knows URLs, headers,
multipart field names, and transport retries.

HOW: Uses httpx.AsyncClient for non-blocking HTTP. OpenSubtitlesAIClient
is an async context manager: enter it to open the connection pool, exit
to close it. Every call goes through _request(), which builds headers,
retries transport failures with exponential backoff, parses the body,
and hands status + body + expected schema to error_from_response().

RULES:
- Always use the async context manager (async with OpenSubtitlesAIClient() as client:)
- AI endpoints live under <base>/ai; login and the search language
  list are on the main API (<base>/login, <base>/infos/languages)
- Headers: Api-Key, User-Agent, Accept; Authorization: Bearer <token> when set
- The optional URL parameter is appended verbatim to every URL
- Only NetworkError is retried here (TRANSPORT_MAX_RETRIES attempts);
  every other category is raised on the first occurrence
- Every httpx.HTTPError becomes a ServiceError: undecodable bodies and
  redirect loops are UnexpectedResponse, the rest NetworkError
- Upload files are re-opened for every attempt
- `token` is written by SessionManager only
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from opensubs_ai.api.models import (
    CATALOG_RESPONSE_SCHEMA,
    CREDITS_RESPONSE_SCHEMA,
    DOWNLOAD_LINK_SCHEMA,
    LIST_RESPONSE_SCHEMA,
    LOGIN_RESPONSE_SCHEMA,
    SEARCH_RESPONSE_SCHEMA,
    TASK_RESPONSE_SCHEMA,
    Credits,
    JobKind,
    LanguageEntry,
    TaskResponse,
    normalize_catalog,
    unwrap_data,
)
from opensubs_ai.config import (
    OPENSUBS_BASE_URL,
    OPENSUBS_URL_PARAMETER,
    OPENSUBS_USER_AGENT,
    TRANSPORT_BASE_DELAY_S,
    TRANSPORT_MAX_RETRIES,
    load_api_key,
)
from opensubs_ai.core.errors import (
    NetworkError,
    UnexpectedResponse,
    ValidationError,
    error_from_response,
)

logger = logging.getLogger(__name__)

_STATUS_PATHS: dict[JobKind, str] = {
    JobKind.TRANSCRIPTION: "/transcribe/{}",
    JobKind.TRANSLATION: "/translation/{}",
    JobKind.LANGUAGE_DETECTION: "/detectLanguage/{}",
}

_CATALOG_PREFIXES: dict[JobKind, str] = {
    JobKind.TRANSCRIPTION: "transcription",
    JobKind.TRANSLATION: "translation",
}


class OpenSubtitlesAIClient:
    """Async client for the OpenSubtitles AI endpoints.

    WHY: Gives the rest of the package a typed interface to the service
    and a single place where HTTP failures become ServiceErrors.

    HOW: Wraps httpx.AsyncClient. `transport` can be an
    httpx.MockTransport so tests run without a network.

    RULES:
    - api_key defaults to load_api_key() from .env
    - base_url, user_agent, url_parameter default to config values
    - retry_delay is the first backoff delay; it doubles per attempt
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        user_agent: str | None = None,
        url_parameter: str | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else load_api_key()
        self._base_url = (base_url or OPENSUBS_BASE_URL).rstrip("/")
        self._user_agent = user_agent or OPENSUBS_USER_AGENT
        self._url_parameter = (
            url_parameter if url_parameter is not None else OPENSUBS_URL_PARAMETER
        )
        self._max_retries = max(1, max_retries if max_retries is not None else TRANSPORT_MAX_RETRIES)
        self._retry_delay = retry_delay if retry_delay is not None else TRANSPORT_BASE_DELAY_S
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.token: str | None = None

    async def __aenter__(self) -> OpenSubtitlesAIClient:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(300.0, connect=30.0),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Return the active httpx client, raising if not in context manager."""
        if self._client is None:
            raise RuntimeError(
                "OpenSubtitlesAIClient must be used as an async context manager: "
                "async with OpenSubtitlesAIClient() as client: ..."
            )
        return self._client

    # ------------------------------------------------------------------
    # URLs and headers
    # ------------------------------------------------------------------

    def _ai_url(self, endpoint: str) -> str:
        return "{}/ai{}{}".format(self._base_url, endpoint, self._url_parameter)

    def _main_url(self, endpoint: str) -> str:
        return "{}{}{}".format(self._base_url, endpoint, self._url_parameter)

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Api-Key": self._api_key,
            "User-Agent": self._user_agent,
        }
        if self.token:
            headers["Authorization"] = "Bearer {}".format(self.token)
        return headers

    # ------------------------------------------------------------------
    # Request pipeline
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        schema: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        data: dict[str, str] | None = None,
        file_path: Path | None = None,
        expect_json: bool = True,
    ) -> Any:
        """Send one logical request, retrying transport failures only.

        RULES:
        - httpx.TransportError → NetworkError, retried with backoff
        - httpx.DecodingError / TooManyRedirects → UnexpectedResponse
        - Any other httpx.HTTPError → NetworkError, not retried
        - Any HTTP response is classified once and never retried here
        - Non-JSON bodies are passed to the classifier as text
        """
        client = self._ensure_client()
        last_error: NetworkError | None = None

        for attempt in range(1, self._max_retries + 1):
            try:
                if file_path is not None:
                    with open(file_path, "rb") as f:
                        resp = await client.request(
                            method,
                            url,
                            headers=self._headers(),
                            data=data,
                            files={"file": (file_path.name, f)},
                        )
                else:
                    resp = await client.request(
                        method, url, headers=self._headers(), json=json, data=data
                    )
            except httpx.TransportError as exc:
                last_error = NetworkError(
                    "Network connection failed ({})".format(type(exc).__name__)
                )
                if attempt < self._max_retries:
                    delay = self._retry_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "%s %s failed (%s), retry %d/%d in %.1fs",
                        method, url, type(exc).__name__, attempt, self._max_retries - 1, delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error("%s %s failed after %d attempts", method, url, attempt)
                raise last_error from exc
            except (httpx.DecodingError, httpx.TooManyRedirects) as exc:
                logger.error("%s %s returned an unreadable response: %s", method, url, exc)
                raise UnexpectedResponse(
                    "The server returned an unreadable response ({})".format(type(exc).__name__)
                ) from exc
            except httpx.HTTPError as exc:
                logger.error("%s %s failed: %s", method, url, exc)
                raise NetworkError(
                    "Request failed ({})".format(type(exc).__name__)
                ) from exc

            body = _parse_body(resp) if expect_json else resp.text
            error = error_from_response(
                resp.status_code, body, schema if expect_json else None
            )
            if error is not None:
                logger.warning(
                    "%s %s → HTTP %d (%s): %s",
                    method, url, resp.status_code, error.category.value, error.message,
                )
                raise error
            return body

        # Unreachable: the loop either returns or raises.
        raise last_error or NetworkError("Network connection failed")

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def login(self, username: str, password: str) -> str:
        """Submit credentials and return the issued token.

        RULES:
        - Missing username, password, or API key → ValidationError, no call
        - Uses the main API login endpoint, not the /ai one
        """
        if not username or not password:
            raise ValidationError("Username and password are required")
        if not self._api_key:
            raise ValidationError("API Key is required for authentication")

        logger.info("Logging in as %s (API key %s)", username, "SET" if self._api_key else "NOT SET")
        body = await self._request(
            "POST",
            self._main_url("/login"),
            schema=LOGIN_RESPONSE_SCHEMA,
            json={"username": username, "password": password},
        )
        return body["token"]

    async def get_credits(self) -> Credits:
        """Fetch the credit balance; doubles as the token liveness check."""
        body = await self._request("POST", self._ai_url("/credits"), schema=CREDITS_RESPONSE_SCHEMA)
        return Credits.from_dict(body)

    async def get_credit_packages(self, email: str | None = None) -> list[dict[str, Any]]:
        """List purchasable credit packages (with checkout links)."""
        body = await self._request(
            "POST",
            self._ai_url("/credits/buy"),
            schema=LIST_RESPONSE_SCHEMA,
            data={"email": email} if email else None,
        )
        return list(unwrap_data(body))

    async def get_services_info(self) -> dict[str, Any]:
        """Describe the available services and their per-unit pricing."""
        body = await self._request("GET", self._ai_url("/info/services"), schema=CATALOG_RESPONSE_SCHEMA)
        data = unwrap_data(body)
        return data if isinstance(data, dict) else {"services": data}

    async def get_recent_media(self) -> list[dict[str, Any]]:
        """List media (and produced subtitle files) from recent jobs."""
        body = await self._request("POST", self._ai_url("/recent_media"), schema=LIST_RESPONSE_SCHEMA)
        return list(unwrap_data(body))

    async def get_recent_activities(self) -> list[dict[str, Any]]:
        """List recent account activity (submissions, purchases, downloads)."""
        body = await self._request(
            "POST", self._ai_url("/recent_activities"), schema=LIST_RESPONSE_SCHEMA
        )
        return list(unwrap_data(body))

    async def download_media_file(self, media_id: str | int, file_name: str) -> str:
        """Text of a file attached to a recent-media entry."""
        path = "/files/{}/{}".format(quote(str(media_id), safe=""), quote(file_name, safe=""))
        return await self._request("GET", self._ai_url(path), expect_json=False)

    # ------------------------------------------------------------------
    # Subtitle search
    # ------------------------------------------------------------------

    async def search_subtitles(self, **params: Any) -> dict[str, Any]:
        """Search the subtitle catalog through the AI proxy.

        Keyword arguments become query parameters (query, imdb_id,
        moviehash, languages, season_number, ...). None and "" are left
        out; booleans are sent as "true"/"false".
        """
        url = self._ai_url("/proxy/subtitles?{}".format(_query_string(params)))
        return await self._request("GET", url, schema=SEARCH_RESPONSE_SCHEMA)

    async def search_features(self, **params: Any) -> dict[str, Any]:
        """Search movies and episodes (features) through the AI proxy."""
        url = self._ai_url("/proxy/features?{}".format(_query_string(params)))
        return await self._request("GET", url, schema=SEARCH_RESPONSE_SCHEMA)

    async def request_subtitle_download(self, file_id: int, **options: Any) -> dict[str, Any]:
        """Ask for a temporary download link for one subtitle file.

        RULES:
        - Needs both the API key and a login token (counts against quota)
        - options: sub_format, file_name, in_fps, out_fps, timeshift,
          force_download; None values are not sent
        """
        payload: dict[str, Any] = {"file_id": file_id}
        payload.update({key: value for key, value in options.items() if value is not None})
        logger.info("Requesting download link for subtitle file %s", file_id)
        return await self._request(
            "POST", self._ai_url("/proxy/download"), schema=DOWNLOAD_LINK_SCHEMA, json=payload
        )

    async def get_subtitle_search_languages(self) -> list[dict[str, Any]]:
        """Languages accepted by subtitle search (main API, not /ai)."""
        body = await self._request("GET", self._main_url("/infos/languages"), schema=LIST_RESPONSE_SCHEMA)
        return list(unwrap_data(body))

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    async def initiate_transcription(
        self,
        file_path: Path,
        language: str,
        api: str,
        return_content: bool = False,
    ) -> TaskResponse:
        """Upload an audio/video file for transcription.

        Args:
            file_path: Audio or video file (already converted if needed).
            language: Provider-specific language code, or "auto".
            api: Provider (model) id.
            return_content: Ask the service to inline the subtitle text.

        Returns:
            TaskResponse: a correlation id, or a synchronous result.
        """
        fields = {"language": language, "api": api}
        if return_content:
            fields["return_content"] = "true"
        file_path = Path(file_path)
        logger.info("Submitting %s for transcription (api=%s, language=%s)", file_path.name, api, language)
        body = await self._request(
            "POST", self._ai_url("/transcribe"), schema=TASK_RESPONSE_SCHEMA,
            data=fields, file_path=file_path,
        )
        return TaskResponse.from_dict(body)

    async def initiate_translation(
        self,
        file_path: Path,
        translate_from: str,
        translate_to: str,
        api: str,
        return_content: bool = False,
    ) -> TaskResponse:
        """Upload a subtitle file for translation."""
        fields = {"translate_from": translate_from, "translate_to": translate_to, "api": api}
        if return_content:
            fields["return_content"] = "true"
        file_path = Path(file_path)
        logger.info(
            "Submitting %s for translation (api=%s, %s → %s)",
            file_path.name, api, translate_from, translate_to,
        )
        body = await self._request(
            "POST", self._ai_url("/translate"), schema=TASK_RESPONSE_SCHEMA,
            data=fields, file_path=file_path,
        )
        return TaskResponse.from_dict(body)

    async def detect_language(self, file_path: Path, duration: float | None = None) -> TaskResponse:
        """Submit a file for language detection.

        Text files are answered synchronously ({"data": {"language": ...}});
        audio files return a correlation id.
        """
        fields = {"duration": str(duration)} if duration else None
        file_path = Path(file_path)
        logger.info("Submitting %s for language detection", file_path.name)
        body = await self._request(
            "POST", self._ai_url("/detect_language"), schema=TASK_RESPONSE_SCHEMA,
            data=fields, file_path=file_path,
        )
        return TaskResponse.from_dict(body)

    async def check_status(self, kind: JobKind, correlation_id: str) -> TaskResponse:
        """Issue one status check for a submitted job."""
        path = _STATUS_PATHS[kind].format(correlation_id)
        body = await self._request("POST", self._ai_url(path), schema=TASK_RESPONSE_SCHEMA)
        response = TaskResponse.from_dict(body)
        logger.debug("%s %s status: %s", kind.label, correlation_id, response.status)
        return response

    # ------------------------------------------------------------------
    # Catalogs
    # ------------------------------------------------------------------

    async def get_apis(self, kind: JobKind) -> list[str]:
        """Provider ids offered for `kind` (transcription or translation)."""
        prefix = _catalog_prefix(kind)
        body = await self._request(
            "POST", self._ai_url("/info/{}_apis".format(prefix)), schema=CATALOG_RESPONSE_SCHEMA
        )
        apis = unwrap_data(body)
        if isinstance(apis, dict):
            return [str(key) for key in apis]
        return [str(api) for api in apis or []]

    async def get_languages(self, kind: JobKind) -> Any:
        """Raw languages payload for `kind` (flat list or provider map)."""
        prefix = _catalog_prefix(kind)
        return await self._request(
            "POST", self._ai_url("/info/{}_languages".format(prefix)), schema=CATALOG_RESPONSE_SCHEMA
        )

    async def get_catalog(self, kind: JobKind) -> dict[str, list[LanguageEntry]]:
        """Fetch providers and languages together and normalize them.

        HOW: Issues the apis and languages calls concurrently, then
        resolves the languages payload shape with normalize_catalog().
        """
        apis, languages = await asyncio.gather(self.get_apis(kind), self.get_languages(kind))
        catalogs = normalize_catalog(languages, apis)
        logger.info(
            "%s catalog: %d providers, %d entries",
            kind.label, len(catalogs), sum(len(entries) for entries in catalogs.values()),
        )
        return catalogs

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def download_file(self, url: str) -> str:
        """Download a produced subtitle file and return its text."""
        return await self._request("GET", url, expect_json=False)


def _catalog_prefix(kind: JobKind) -> str:
    try:
        return _CATALOG_PREFIXES[kind]
    except KeyError:
        raise ValueError("No language catalog for {}".format(kind.value)) from None


def _query_string(params: dict[str, Any]) -> str:
    """Encode search parameters, dropping empty ones and lower-casing booleans."""
    cleaned: dict[str, str] = {}
    for key, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        cleaned[key] = str(value)
    return str(httpx.QueryParams(cleaned))


def _parse_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text



