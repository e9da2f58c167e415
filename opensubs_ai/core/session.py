"""Authenticated session lifecycle: token cache, single-flight login, reauth-and-retry.

WHY: Every AI API call needs a bearer token. Tokens are cached on disk
between runs, can expire at any time, and several parts of the client
(startup, the first catalog fetch, a job submission) tend to ask for
authentication at the same moment. Without a single owner, the client
would submit credentials several times and churn tokens.

HOW: SessionManager owns the Session value and is the only code that
changes the token, both in memory (pushed to the HTTP client) and on
disk (TokenCache). ensure_authenticated() and login() run through one
shared AuthAttempt (an asyncio task) so concurrent callers await the
same outcome. wrap_authenticated() runs a call and, on an
AuthenticationError, clears the token, reauthenticates, and retries the
call exactly once.

RULES:
- Token is wholly valid or wholly absent: an unverified token is dropped
- Cached token is verified with the cheap credits call before use
- Network/server failure during verification falls through to fresh login
  (the on-disk token is only deleted on a confirmed 401/403)
- Only one AuthAttempt is outstanding at a time; it is discarded as soon
  as it resolves, success or failure
- A second AuthenticationError after the single retry is surfaced
- logout() is unconditional and idempotent
- Passwords and tokens are never logged
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

from opensubs_ai.api.models import Credits
from opensubs_ai.config import TOKEN_CACHE_PATH, TOKEN_MAX_AGE_SECONDS
from opensubs_ai.core.errors import (
    AuthenticationError,
    ServiceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Credentials:
    """Username/password pair used for fresh logins."""

    username: str
    password: str

    def __repr__(self) -> str:
        return "Credentials(username={!r}, password='***')".format(self.username)


@dataclass
class Session:
    """Current authentication state, owned by SessionManager.

    RULES:
    - token is None or a token that was issued or verified by the service
    - issued_at is the wall-clock time the token was adopted
    - cached_on_disk is True when the token is persisted in the TokenCache
    """

    token: Optional[str] = None
    issued_at: Optional[float] = None
    cached_on_disk: bool = False

    @property
    def is_live(self) -> bool:
        return self.token is not None


class TokenCache:
    """File-backed persisted token with a maximum age.

    WHY: Reusing yesterday's token avoids a credential round-trip on
    every start, but tokens older than the service's lifetime are useless.

    HOW: The token is a single line in a text file. Its age is the
    file's modification time. Stale files are deleted on load.

    RULES:
    - load() returns None for missing, empty, or stale files
    - save() creates parent directories; returns False on I/O failure
    - clear() never raises and is idempotent
    """

    def __init__(
        self,
        path: Path = TOKEN_CACHE_PATH,
        max_age_seconds: float = TOKEN_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self._max_age_seconds = max_age_seconds
        self._clock = clock

    def load(self) -> Optional[str]:
        try:
            if not self.path.exists():
                return None
            age = self._clock() - self.path.stat().st_mtime
            if age > self._max_age_seconds:
                logger.info("Cached token is %.0fs old, discarding it", age)
                self.clear()
                return None
            token = self.path.read_text(encoding="utf-8").strip()
        except OSError:
            logger.warning("Failed to read token cache: %s", self.path)
            return None
        return token or None

    def save(self, token: str) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(token, encoding="utf-8")
        except OSError:
            logger.warning("Failed to write token cache: %s", self.path)
            return False
        logger.info("Token saved to cache")
        return True

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to delete token cache: %s", self.path)


class SessionManager:
    """Owner of the token lifecycle for one API client.

    WHY: The facade, the poller, and the HTTP bridge all make
    authenticated calls; they must share one session and one in-flight
    authentication instead of each logging in on its own.

    HOW: The client object must expose a writable `token` attribute and
    the coroutines `login(username, password) -> str` and
    `get_credits() -> Credits`. The manager adopts tokens into the
    client, persists them in the TokenCache, and coordinates
    concurrent authentication through a single shared task.

    RULES:
    - session is read-only for callers; mutate only via manager methods
    - last_error holds the failure of the most recent unsuccessful attempt
    - last_credits holds the balance seen by the most recent verification
    """

    def __init__(
        self,
        client: Any,
        token_cache: Optional[TokenCache] = None,
        credentials: Optional[Credentials] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._cache = token_cache if token_cache is not None else TokenCache()
        self._credentials = credentials
        self._clock = clock
        self._session = Session()
        self._attempt: Optional[asyncio.Task] = None
        self.last_error: Optional[ServiceError] = None
        self.last_credits: Optional[Credits] = None

    @property
    def session(self) -> Session:
        return self._session

    @property
    def is_authenticating(self) -> bool:
        return self._attempt is not None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def ensure_authenticated(self, credentials: Optional[Credentials] = None) -> bool:
        """Make the session live, reusing a valid cached token when possible.

        WHY: On startup and before the first API call the client should
        reuse yesterday's token if the service still accepts it, and only
        fall back to submitting credentials when it does not.

        HOW: Joins the outstanding AuthAttempt if there is one; otherwise
        starts one that verifies the in-memory or on-disk token with the
        credits call and falls through to a fresh login.

        RULES:
        - Concurrent callers observe one attempt and the same result
        - Returns False (never raises ServiceError) on failure; see last_error

        Args:
            credentials: Credentials for a fresh login. Remembered for
                later reauthentication. Defaults to the remembered ones.

        Returns:
            True when the session is live.
        """
        if credentials is not None:
            self._credentials = credentials
        return await self._single_flight(self._authenticate)

    async def login(self, credentials: Optional[Credentials] = None) -> bool:
        """Force a fresh credential login (single-flight), replacing any token."""
        if credentials is not None:
            self._credentials = credentials
        return await self._single_flight(self._fresh_login)

    async def wrap_authenticated(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run `call`, recovering once from an authentication failure.

        WHY: Tokens can expire mid-session (including halfway through a
        two-hour polling loop). Callers should not have to notice.

        HOW: On AuthenticationError the token that was used for the call
        is cleared (unless another caller already replaced it), the
        session is reauthenticated, and `call` runs one more time.

        RULES:
        - At most one retry; a second AuthenticationError propagates
        - Failed reauthentication raises AuthenticationError("authentication failed")
        - Every other ServiceError propagates unchanged (no internal retry)
        """
        token_used = self._session.token
        try:
            return await call()
        except AuthenticationError as exc:
            logger.warning("Authentication error (HTTP %s), re-authenticating", exc.status_code)
            if self._session.token == token_used:
                self.clear_token()
            if not await self.ensure_authenticated():
                raise AuthenticationError(
                    "authentication failed", status_code=exc.status_code
                ) from exc
            logger.info("Re-authentication successful, retrying original call")
            return await call()

    def logout(self) -> None:
        """Forget the session: memory, disk, and remembered credentials."""
        self.clear_token()
        self._credentials = None
        self.last_credits = None
        logger.info("Logged out")

    def clear_token(self) -> None:
        """Drop the token from memory and from the on-disk cache."""
        self._session = Session()
        self._client.token = None
        self._cache.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _single_flight(self, factory: Callable[[], Awaitable[bool]]) -> bool:
        attempt = self._attempt
        if attempt is None:
            attempt = asyncio.ensure_future(self._run_attempt(factory))
            self._attempt = attempt
        else:
            logger.info("Authentication already in progress, waiting for it")
        return await asyncio.shield(attempt)

    async def _run_attempt(self, factory: Callable[[], Awaitable[bool]]) -> bool:
        try:
            return await factory()
        finally:
            self._attempt = None

    async def _authenticate(self) -> bool:
        token = self._session.token
        from_disk = False
        if token is None:
            token = self._cache.load()
            from_disk = token is not None

        if token is not None:
            self._adopt(token, cached_on_disk=from_disk or self._session.cached_on_disk)
            logger.info("Verifying %s token with credits check", "cached" if from_disk else "current")
            try:
                self.last_credits = await self._client.get_credits()
            except AuthenticationError:
                logger.warning("Cached token rejected by the service, clearing it")
                self.clear_token()
            except ServiceError as exc:
                logger.warning(
                    "Could not confirm token liveness (%s), attempting fresh login",
                    exc.category.value,
                )
                self._session = Session()
                self._client.token = None
            else:
                self.last_error = None
                logger.info("Token verified successfully")
                return True

        return await self._fresh_login()

    async def _fresh_login(self) -> bool:
        credentials = self._credentials
        if credentials is None or not credentials.username or not credentials.password:
            self.last_error = ValidationError("Username and password are required")
            logger.error("Cannot log in: %s", self.last_error.message)
            return False

        logger.info("Attempting login with username: %s", credentials.username)
        try:
            token = await self._client.login(credentials.username, credentials.password)
        except ServiceError as exc:
            self.last_error = exc
            logger.error("Login failed (%s): %s", exc.category.value, exc.message)
            return False

        saved = self._cache.save(token)
        self._adopt(token, cached_on_disk=saved)
        self.last_error = None
        logger.info("Login successful")
        return True

    def _adopt(self, token: str, cached_on_disk: bool) -> None:
        self._session = Session(token=token, issued_at=self._clock(), cached_on_disk=cached_on_disk)
        self._client.token = token
