"""FastAPI bridge exposing the orchestration facade to a local UI process.

WHY: A desktop or web front end runs in its own process. It needs the
session state, language pickers, and job lifecycle over a small HTTP
API, while the token, the polling loops, and the uploaded files stay
in one place.

HOW: create_app() builds a FastAPI app around one Orchestrator (created
in the lifespan from .env configuration unless one is injected) and one
JobStore. POST /jobs writes the upload to a per-job temp directory,
submits it through the facade, and starts a watcher task that waits
for the outcome and records it. GET polls the record; DELETE cancels.

RULES:
- Every endpoint has an OpenAPI summary and documented error responses
- ServiceError maps to HTTP: auth → 401, rate limit → 429,
  validation → 400, everything else → 502
- The uploaded file is deleted when the job ends, when submission
  fails, and on shutdown
- A watcher that fails unexpectedly records an ERROR outcome, so no
  record stays non-terminal after its job is gone
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from typing import Annotated, Dict, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from opensubs_ai import __version__
from opensubs_ai.api.models import JobKind
from opensubs_ai.core.errors import ErrorCategory, ServiceError, UnexpectedResponse
from opensubs_ai.core.poller import JobOutcome, JobState
from opensubs_ai.facade import JobHandle, Orchestrator, job_kind_for
from opensubs_ai.server.jobs import JobRecord, JobStore
from opensubs_ai.server.models import (
    CatalogKind,
    ErrorResponse,
    HealthResponse,
    JobCreatedResponse,
    JobResponse,
    LanguageOptionModel,
    LanguagesResponse,
    LoginRequest,
    SessionResponse,
)

logger = logging.getLogger(__name__)

_CLEANUP_INTERVAL_S = 300
_CANCEL_WAIT_S = 10.0

_HTTP_STATUS: Dict[ErrorCategory, int] = {
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.RATE_LIMITED: 429,
    ErrorCategory.VALIDATION: 400,
}


async def _default_orchestrator(stack: AsyncExitStack) -> Orchestrator:
    """Build the facade from .env configuration and log in if possible."""
    from opensubs_ai.api.client import OpenSubtitlesAIClient
    from opensubs_ai.config import load_credentials
    from opensubs_ai.core.session import Credentials

    client = await stack.enter_async_context(OpenSubtitlesAIClient())
    try:
        credentials = Credentials(*load_credentials())
    except ValueError:
        credentials = None
    orchestrator = Orchestrator(client, credentials=credentials)
    if await orchestrator.ensure_authenticated():
        logger.info("Bridge session ready")
    else:
        logger.warning("Bridge started without a session; POST /session/login to log in")
    return orchestrator


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    store: Optional[JobStore] = None,
) -> FastAPI:
    """Create the bridge app.

    Args:
        orchestrator: Facade to expose. When None, one is built at startup
            from the .env configuration.
        store: Record store; a fresh JobStore when None.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with AsyncExitStack() as stack:
            if app.state.orchestrator is None:
                app.state.orchestrator = await _default_orchestrator(stack)
            cleanup = asyncio.ensure_future(_periodic_cleanup(app.state.store))
            try:
                yield
            finally:
                cleanup.cancel()
                for task in list(app.state.watchers.values()):
                    task.cancel()
                await asyncio.gather(cleanup, *app.state.watchers.values(), return_exceptions=True)
                app.state.store.clear()

    app = FastAPI(
        lifespan=lifespan,
        title="OpenSubtitles AI Bridge",
        description=(
            "Local HTTP API over the OpenSubtitles AI client: session state, "
            "consolidated language pickers, and transcription, translation, "
            "and language detection jobs."
        ),
        version=__version__,
    )
    app.state.orchestrator = orchestrator
    app.state.store = store or JobStore()
    app.state.watchers = {}

    @app.exception_handler(ServiceError)
    async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        status = _HTTP_STATUS.get(exc.category, 502)
        return JSONResponse(
            status_code=status,
            content={"detail": exc.message, "category": exc.category.value},
        )

    _register_routes(app)
    return app


async def _periodic_cleanup(store: JobStore) -> None:
    """Expire finished records every few minutes."""
    while True:
        await asyncio.sleep(_CLEANUP_INTERVAL_S)
        store.cleanup_expired()


def _orchestrator(request: Request) -> Orchestrator:
    orchestrator = request.app.state.orchestrator
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Bridge is not ready")
    return orchestrator


def _session_response(orchestrator: Orchestrator) -> SessionResponse:
    return SessionResponse(
        auth_state=orchestrator.auth_state.value,
        credits=orchestrator.credits,
    )


def _record_response(record: JobRecord, live_state: Optional[JobState] = None) -> JobResponse:
    state = record.state if record.is_terminal or live_state is None else live_state
    return JobResponse(
        id=record.id,
        kind=record.kind,
        state=state.value,
        filename=record.filename,
        created_at=record.created_at,
        correlation_id=record.correlation_id,
        message=record.message,
        progress=list(record.progress),
        result=record.result,
        error=record.error,
    )


async def _watch_job(app: FastAPI, record_id: str, handle: JobHandle) -> None:
    """Wait for a job's outcome, record it, and drop the upload."""
    orchestrator: Orchestrator = app.state.orchestrator
    store: JobStore = app.state.store
    try:
        outcome = await orchestrator.wait(handle)
        store.finish_job(record_id, outcome)
        logger.info("Job %s finished: %s", record_id, outcome.state.value)
    except asyncio.CancelledError:
        orchestrator.cancel(handle)
        raise
    except Exception as exc:
        logger.exception("Watcher for job %s failed", record_id)
        store.finish_job(
            record_id,
            JobOutcome(
                job_id=handle.job_id,
                kind=handle.kind,
                state=JobState.ERROR,
                correlation_id=handle.correlation_id,
                error=UnexpectedResponse(str(exc) or type(exc).__name__),
            ),
        )
    finally:
        store.release_upload(record_id)
        app.state.watchers.pop(record_id, None)


def _register_routes(app: FastAPI) -> None:

    # -----------------------------------------------------------------------
    # Health and session
    # -----------------------------------------------------------------------

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["health"],
        summary="Health check",
    )
    async def health(request: Request) -> HealthResponse:
        orchestrator = request.app.state.orchestrator
        auth_state = orchestrator.auth_state.value if orchestrator else "unavailable"
        return HealthResponse(status="ok", version=__version__, auth_state=auth_state)

    @app.get(
        "/session",
        response_model=SessionResponse,
        tags=["session"],
        summary="Current authentication state and credits",
    )
    async def get_session(request: Request) -> SessionResponse:
        return _session_response(_orchestrator(request))

    @app.post(
        "/session/login",
        response_model=SessionResponse,
        tags=["session"],
        summary="Log in with username and password",
        responses={
            401: {"model": ErrorResponse, "description": "Credentials rejected"},
            400: {"model": ErrorResponse, "description": "Missing username or password"},
        },
    )
    async def login(request: Request, body: LoginRequest) -> SessionResponse:
        orchestrator = _orchestrator(request)
        if not await orchestrator.login(body.username, body.password):
            error = orchestrator.last_error
            if error is not None:
                raise error
            raise HTTPException(status_code=401, detail="Login failed")
        return _session_response(orchestrator)

    @app.post(
        "/session/logout",
        response_model=SessionResponse,
        tags=["session"],
        summary="Log out and forget the cached token",
    )
    async def logout(request: Request) -> SessionResponse:
        orchestrator = _orchestrator(request)
        orchestrator.logout()
        return _session_response(orchestrator)

    # -----------------------------------------------------------------------
    # Languages
    # -----------------------------------------------------------------------

    @app.get(
        "/languages/{kind}",
        response_model=LanguagesResponse,
        tags=["languages"],
        summary="Consolidated languages for a job kind",
        description=(
            "Languages merged across providers. With ?provider=..., each "
            "language is flagged as compatible or not with that provider."
        ),
    )
    async def list_languages(
        request: Request,
        kind: CatalogKind,
        provider: Optional[str] = None,
        refresh: bool = False,
    ) -> LanguagesResponse:
        orchestrator = _orchestrator(request)
        job_kind = JobKind(kind.value)
        catalog = await orchestrator.load_catalog(job_kind, force=refresh)
        options = await orchestrator.language_options(job_kind, provider)
        return LanguagesResponse(
            kind=kind,
            providers=list(catalog.providers),
            languages=[
                LanguageOptionModel(
                    id=option.canonical_id,
                    name=option.display_name,
                    compatible=option.compatible,
                    providers=list(option.available_in),
                )
                for option in options
            ],
        )

    # -----------------------------------------------------------------------
    # Jobs
    # -----------------------------------------------------------------------

    @app.post(
        "/jobs",
        response_model=JobCreatedResponse,
        status_code=201,
        tags=["jobs"],
        summary="Submit a file",
        description=(
            "Upload a media or subtitle file. The job kind is inferred from the "
            "extension unless given. Poll GET /jobs/{id} for the outcome."
        ),
        responses={
            400: {"model": ErrorResponse, "description": "Invalid file type or options"},
            401: {"model": ErrorResponse, "description": "Not authenticated"},
            429: {"model": ErrorResponse, "description": "Too many jobs or rate limited"},
        },
    )
    async def create_job(
        request: Request,
        file: Annotated[UploadFile, File(description="Media or subtitle file")],
        kind: Annotated[
            Optional[JobKind],
            Form(description="transcription, translation, or language_detection."),
        ] = None,
        provider: Annotated[
            Optional[str],
            Form(description="Provider (model) id; required except for detection."),
        ] = None,
        language: Annotated[
            str,
            Form(description="Canonical source language id, or 'auto-detect'."),
        ] = "auto-detect",
        translate_to: Annotated[
            Optional[str],
            Form(description="Canonical target language id (translation only)."),
        ] = None,
        duration: Annotated[
            Optional[float],
            Form(description="Media duration in seconds (language detection only)."),
        ] = None,
    ) -> JobCreatedResponse:
        orchestrator = _orchestrator(request)
        store: JobStore = request.app.state.store

        # Sanitize filename to prevent path traversal
        filename = Path(file.filename or "upload").name
        try:
            job_kind = kind or job_kind_for(Path(filename))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

        try:
            record = store.create_job(filename=filename, kind=job_kind.value)
        except ValueError as exc:
            raise HTTPException(status_code=429, detail=str(exc))

        record_id = record.id
        try:
            record.upload_path.write_bytes(await file.read())
            handle = await orchestrator.submit(
                record.upload_path,
                kind=job_kind,
                provider=provider,
                language=language,
                translate_to=translate_to,
                duration=duration,
                on_status=lambda message: store.update_job(record_id, progress=message),
            )
        except BaseException:
            store.delete_job(record_id)
            raise

        state = orchestrator.job_state(handle.job_id) or JobState.CREATED
        store.attach(record_id, handle.job_id, handle.correlation_id, state)
        request.app.state.watchers[record_id] = asyncio.ensure_future(
            _watch_job(request.app, record_id, handle)
        )
        return JobCreatedResponse(
            id=record_id,
            kind=job_kind.value,
            state=state.value,
            filename=filename,
        )

    @app.get(
        "/jobs/{job_id}",
        response_model=JobResponse,
        tags=["jobs"],
        summary="Get job status",
        responses={404: {"model": ErrorResponse, "description": "Job not found"}},
    )
    async def get_job(request: Request, job_id: str) -> JobResponse:
        record = request.app.state.store.get_job(job_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Job not found: {}".format(job_id))
        live_state = None
        if record.job_id is not None:
            live_state = _orchestrator(request).job_state(record.job_id)
        return _record_response(record, live_state)

    @app.delete(
        "/jobs/{job_id}",
        response_model=JobResponse,
        tags=["jobs"],
        summary="Cancel a job",
        description=(
            "Stops polling for the job and reports it as cancelled. The "
            "remote task itself is not aborted."
        ),
        responses={
            404: {"model": ErrorResponse, "description": "Job not found"},
            409: {"model": ErrorResponse, "description": "Job already finished"},
        },
    )
    async def cancel_job(request: Request, job_id: str) -> JobResponse:
        store: JobStore = request.app.state.store
        record = store.get_job(job_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Job not found: {}".format(job_id))
        if record.is_terminal or record.job_id is None:
            raise HTTPException(
                status_code=409,
                detail="Job is not running (current state: {}).".format(record.state.value),
            )

        _orchestrator(request).cancel(record.job_id)
        watcher = request.app.state.watchers.get(job_id)
        if watcher is not None:
            try:
                await asyncio.wait_for(asyncio.shield(watcher), timeout=_CANCEL_WAIT_S)
            except asyncio.TimeoutError:
                logger.warning("Job %s did not stop within %.0fs", job_id, _CANCEL_WAIT_S)
        return _record_response(store.get_job(job_id))


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8765)
