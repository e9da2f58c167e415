"""Poll-until-terminal state machine for transcription, translation, and detection jobs.

WHY: Submitting a file returns either a finished result or a correlation
id; in the latter case the job may take seconds (text translation) or
hours (long audio). The client must keep checking, survive token
expiry mid-poll, give up after a wall-clock budget, and stop at once
when the user cancels.

HOW: JobPoller.start() turns a submission response into a Job. Jobs
with an inline result finish immediately; the others get one asyncio
task each that loops: wait one interval on a cancellable timer, issue
one status check through SessionManager.wrap_authenticated(), and
decide. Time comes from an injectable Clock, so tests run without
real waits.

RULES:
- States: CREATED → PENDING → {COMPLETED | ERROR | TIMEOUT | CANCELLED}
- State never regresses; leaving a terminal state raises
- Polls for one job are strictly sequential (one loop, one call at a time)
- Timeout is elapsed wall-clock time since submission, checked after each
  poll; the last wait is shortened so TIMEOUT lands at the budget
- The interval is re-read before every wait (can change mid-flight)
- cancel() stops the pending timer; an in-flight status call is not
  aborted, its result is discarded
- No status call is issued after a job reaches a terminal state
- A status check that fails with anything other than a ServiceError
  still ends the job in ERROR (wrapped as UnexpectedResponse)
- A job is forgotten once its outcome has been handed to wait()
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from opensubs_ai.api.models import JobKind, RemoteStatus, TaskResponse
from opensubs_ai.config import PollingSettings
from opensubs_ai.core.errors import (
    JobCancelledError,
    JobFailedError,
    JobTimeoutError,
    ServiceError,
    UnexpectedResponse,
    user_message,
)
from opensubs_ai.core.session import SessionManager

logger = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    """Lifecycle states of a polled job."""

    CREATED = "created"
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {JobState.COMPLETED, JobState.ERROR, JobState.TIMEOUT, JobState.CANCELLED}
)

_STATE_RANK: Dict[JobState, int] = {
    JobState.CREATED: 0,
    JobState.PENDING: 1,
    JobState.COMPLETED: 2,
    JobState.ERROR: 2,
    JobState.TIMEOUT: 2,
    JobState.CANCELLED: 2,
}


class InvalidTransitionError(RuntimeError):
    """Raised when a job would leave a terminal state."""


class Clock:
    """Monotonic time source and sleeper used by the poller."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass
class Job:
    """One submitted job tracked by the poller.

    RULES:
    - id is a local UUID4 hex; correlation_id is the service's id (None
      for synchronously completed jobs)
    - submitted_at is a Clock.monotonic() timestamp
    - state only moves forward (see advance())
    - status_checks counts status calls issued for this job
    """

    kind: JobKind
    submitted_at: float
    correlation_id: Optional[str] = None
    state: JobState = JobState.CREATED
    last_error: Optional[ServiceError] = None
    result_payload: Optional[Dict[str, Any]] = None
    status_checks: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cancel_requested: bool = False
    timer: Optional[asyncio.Future] = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, new_state: JobState) -> bool:
        """Move to `new_state` if it is not a regression.

        Returns True when the state changed. Backward moves between
        non-terminal states (a late CREATED after PENDING) are ignored.
        """
        if self.is_terminal:
            if new_state is self.state:
                return False
            raise InvalidTransitionError(
                "Job {} is already {}, cannot become {}".format(
                    self.id, self.state.value, new_state.value
                )
            )
        if _STATE_RANK[new_state] < _STATE_RANK[self.state] or new_state is self.state:
            return False
        self.state = new_state
        return True


@dataclass
class JobOutcome:
    """Terminal report handed to the caller of JobPoller.wait().

    RULES:
    - data is the service's result payload for COMPLETED, else None
    - error is set for ERROR, TIMEOUT, and CANCELLED
    """

    job_id: str
    kind: JobKind
    state: JobState
    correlation_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[ServiceError] = None
    status_checks: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.COMPLETED

    @property
    def message(self) -> str:
        """User-facing one-line summary of the outcome."""
        if self.succeeded:
            return "{} completed successfully!".format(self.kind.label)
        if self.error is not None:
            return user_message(self.error, self.kind.label)
        return "{} failed. Please try again.".format(self.kind.label)


StatusCallback = Callable[[str], None]


class JobPoller:
    """Drives every submitted job to a terminal state.

    WHY: Many jobs may be running at once (batch mode); each needs its
    own timer, cancellation, and timeout, and all must share one session.

    HOW: One asyncio task per polled job runs _poll_loop(). The task's
    result is the JobOutcome; wait() awaits it and then forgets the job.

    RULES:
    - Status calls go through client.check_status(kind, correlation_id)
      wrapped by session.wrap_authenticated()
    - on_status callbacks receive human-readable progress strings
    """

    def __init__(
        self,
        client: Any,
        session: SessionManager,
        settings: Optional[PollingSettings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._client = client
        self._session = session
        self.settings = settings if settings is not None else PollingSettings()
        self._clock = clock if clock is not None else Clock()
        self._jobs: Dict[str, Job] = {}
        self._outcomes: Dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def start(
        self,
        kind: JobKind,
        response: TaskResponse,
        on_status: Optional[StatusCallback] = None,
    ) -> Job:
        """Create a Job from a submission response and start polling if needed.

        RULES:
        - COMPLETED with inline data → job COMPLETED, no polling
        - ERROR → job ERROR with the provider's error text
        - TIMEOUT → job TIMEOUT
        - correlation id without a terminal status → CREATED, polling starts
        - Anything else → job ERROR with UnexpectedResponse

        Must be called from within a running event loop.
        """
        loop = asyncio.get_running_loop()
        job = Job(
            kind=kind,
            submitted_at=self._clock.monotonic(),
            correlation_id=response.correlation_id,
        )
        self._jobs[job.id] = job

        if response.is_terminal:
            outcome = self._finish_from_response(job, response)
            future = loop.create_future()
            future.set_result(outcome)
            self._outcomes[job.id] = future
            return job

        if response.correlation_id is None:
            outcome = self._finish(
                job,
                JobState.ERROR,
                error=UnexpectedResponse(
                    "{} response had neither a result nor a correlation id".format(kind.label)
                ),
            )
            future = loop.create_future()
            future.set_result(outcome)
            self._outcomes[job.id] = future
            return job

        logger.info(
            "%s job %s created (correlation id %s), polling every %ss",
            kind.label, job.id, job.correlation_id, self.settings.interval_seconds,
        )
        if on_status:
            on_status("Task created, waiting for completion...")
        self._outcomes[job.id] = asyncio.ensure_future(self._poll_loop(job, on_status))
        return job

    async def wait(self, job_id: str) -> JobOutcome:
        """Await the terminal outcome of a job, then forget the job.

        Raises KeyError for unknown (or already reported) job ids.
        """
        future = self._outcomes[job_id]
        outcome = await asyncio.shield(future)
        self._outcomes.pop(job_id, None)
        self._jobs.pop(job_id, None)
        return outcome

    async def run(
        self,
        kind: JobKind,
        response: TaskResponse,
        on_status: Optional[StatusCallback] = None,
    ) -> JobOutcome:
        """start() then wait(): the whole lifecycle in one call."""
        job = self.start(kind, response, on_status)
        return await self.wait(job.id)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation of a job.

        Returns False when the job is unknown or already terminal.
        """
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            return False
        if job.cancel_requested:
            return True
        job.cancel_requested = True
        if job.timer is not None and not job.timer.done():
            job.timer.cancel()
        logger.info("%s job %s cancellation requested", job.kind.label, job.id)
        return True

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def active_jobs(self) -> List[Job]:
        return [job for job in self._jobs.values() if not job.is_terminal]

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _poll_loop(self, job: Job, on_status: Optional[StatusCallback]) -> JobOutcome:
        try:
            while True:
                if await self._wait_interval(job):
                    return self._cancelled(job)

                job.status_checks += 1
                try:
                    response = await self._session.wrap_authenticated(
                        lambda: self._client.check_status(job.kind, job.correlation_id)
                    )
                except ServiceError as exc:
                    if job.cancel_requested:
                        return self._cancelled(job)
                    logger.error(
                        "%s job %s status check failed (%s): %s",
                        job.kind.label, job.id, exc.category.value, exc.message,
                    )
                    return self._finish(job, JobState.ERROR, error=exc)
                except Exception as exc:
                    if job.cancel_requested:
                        return self._cancelled(job)
                    logger.exception(
                        "%s job %s status check raised unexpectedly", job.kind.label, job.id
                    )
                    return self._finish(
                        job,
                        JobState.ERROR,
                        error=UnexpectedResponse(
                            "{} status check failed: {}".format(job.kind.label, exc)
                        ),
                    )

                if job.cancel_requested:
                    logger.info("Discarding status result for cancelled job %s", job.id)
                    return self._cancelled(job)

                if response.is_terminal:
                    return self._finish_from_response(job, response)

                if response.status is RemoteStatus.PENDING:
                    job.advance(JobState.PENDING)

                elapsed = self._elapsed(job)
                if elapsed >= self.settings.timeout_seconds:
                    return self._finish(
                        job,
                        JobState.TIMEOUT,
                        error=JobTimeoutError(
                            "{} timed out after {:.0f}s (limit: {:.0f}s)".format(
                                job.kind.label, elapsed, self.settings.timeout_seconds
                            )
                        ),
                    )

                if on_status:
                    minutes, seconds = divmod(int(elapsed), 60)
                    on_status(
                        "{} in progress... (elapsed: {}m {:02d}s)".format(
                            job.kind.label, minutes, seconds
                        )
                    )
        except asyncio.CancelledError:
            job.cancel_requested = True
            if not job.is_terminal:
                self._cancelled(job)
            raise

    async def _wait_interval(self, job: Job) -> bool:
        """Sleep one interval on a cancellable timer; True if cancelled meanwhile."""
        if job.cancel_requested:
            return True
        remaining = self.settings.timeout_seconds - self._elapsed(job)
        delay = max(0.0, min(self.settings.interval_seconds, remaining))
        timer = asyncio.ensure_future(self._clock.sleep(delay))
        job.timer = timer
        try:
            await asyncio.wait({timer})
        finally:
            if not timer.done():
                timer.cancel()
            job.timer = None
        return job.cancel_requested

    def _elapsed(self, job: Job) -> float:
        return self._clock.monotonic() - job.submitted_at

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _finish_from_response(self, job: Job, response: TaskResponse) -> JobOutcome:
        if response.status is RemoteStatus.COMPLETED:
            return self._finish(job, JobState.COMPLETED, data=response.data or {})
        if response.status is RemoteStatus.TIMEOUT:
            return self._finish(
                job,
                JobState.TIMEOUT,
                error=JobTimeoutError(
                    response.error_text or "{} timed out on the server".format(job.kind.label)
                ),
            )
        return self._finish(
            job,
            JobState.ERROR,
            error=JobFailedError(response.error_text or "{} failed".format(job.kind.label)),
        )

    def _cancelled(self, job: Job) -> JobOutcome:
        return self._finish(
            job,
            JobState.CANCELLED,
            error=JobCancelledError("{} cancelled by user".format(job.kind.label)),
        )

    def _finish(
        self,
        job: Job,
        state: JobState,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[ServiceError] = None,
    ) -> JobOutcome:
        job.advance(state)
        job.result_payload = data
        job.last_error = error
        if job.timer is not None and not job.timer.done():
            job.timer.cancel()
        job.timer = None

        if state is JobState.COMPLETED:
            logger.info(
                "%s job %s completed after %d status checks",
                job.kind.label, job.id, job.status_checks,
            )
        else:
            logger.warning(
                "%s job %s ended %s: %s",
                job.kind.label, job.id, state.value, error.message if error else "",
            )

        return JobOutcome(
            job_id=job.id,
            kind=job.kind,
            state=job.state,
            correlation_id=job.correlation_id,
            data=data,
            error=error,
            status_checks=job.status_checks,
        )
