"""Tests for the job state machine and poll loop.

WHY: The poller decides how many requests a multi-hour job costs, when
a job is declared timed out, and whether a cancelled job really stops.
Off-by-one errors here either hammer the service or report results
for jobs the user already abandoned.

HOW: JobPoller runs against make_fake_client() and a FakeClock, so a
two-hour budget is simulated in microseconds. FakeClock.on_sleep lets
a test act between two polls (cancel, change the interval).

RULES:
- FakeClock.sleeps records every wait the poller asked for
- check_status.await_count is the number of remote status calls
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from opensubs_ai.api.models import JobKind
from opensubs_ai.config import PollingSettings
from opensubs_ai.core.errors import (
    AuthenticationError,
    ErrorCategory,
    JobCancelledError,
    JobFailedError,
    JobTimeoutError,
    ServerError,
    UnexpectedResponse,
)
from opensubs_ai.core.poller import InvalidTransitionError, Job, JobPoller, JobState
from opensubs_ai.core.session import Credentials, SessionManager, TokenCache

from tests.fakes import COMPLETED_TRANSLATION, task

PENDING = task({"status": "PENDING"})
CREATED = task({"correlation_id": "c-1"})
DONE = task({"status": "COMPLETED", "data": {"url": "https://example.test/out.srt"}})


def _poller(client, clock, tmp_path, interval=10.0, timeout=7200.0):
    session = SessionManager(
        client,
        token_cache=TokenCache(path=tmp_path / "token.txt"),
        credentials=Credentials("alice", "pw"),
    )
    settings = PollingSettings(interval_seconds=interval, timeout_seconds=timeout)
    return JobPoller(client, session, settings, clock)


# ---------------------------------------------------------------------------
# Job state machine
# ---------------------------------------------------------------------------


class TestJobStateMachine:

    def _job(self):
        return Job(kind=JobKind.TRANSCRIPTION, submitted_at=0.0, correlation_id="c-1")

    def test_forward_transitions(self):
        job = self._job()
        assert job.advance(JobState.PENDING)
        assert job.advance(JobState.COMPLETED)
        assert job.is_terminal

    def test_regression_is_ignored(self):
        job = self._job()
        job.advance(JobState.PENDING)
        assert not job.advance(JobState.CREATED)
        assert job.state is JobState.PENDING

    def test_created_can_jump_to_terminal(self):
        job = self._job()
        assert job.advance(JobState.CANCELLED)

    def test_leaving_terminal_state_raises(self):
        job = self._job()
        job.advance(JobState.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            job.advance(JobState.ERROR)

    def test_same_terminal_state_is_a_no_op(self):
        job = self._job()
        job.advance(JobState.TIMEOUT)
        assert not job.advance(JobState.TIMEOUT)

    def test_ids_are_unique(self):
        assert self._job().id != self._job().id


# ---------------------------------------------------------------------------
# Submission responses
# ---------------------------------------------------------------------------


class TestStartFromResponse:
    """Responses that finish the job without any polling."""

    def test_synchronous_result_completes_without_polling(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path)
        response = task({"data": {"content": "1\n00:00:01,000 --> 00:00:02,000\nHi\n"}})

        outcome = asyncio.run(poller.run(JobKind.TRANSLATION, response))

        assert outcome.state is JobState.COMPLETED
        assert outcome.data["content"].startswith("1\n")
        assert outcome.status_checks == 0
        fake_client.check_status.assert_not_awaited()
        assert fake_clock.sleeps == []

    def test_completed_status_with_payload(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path)

        outcome = asyncio.run(poller.run(JobKind.TRANSLATION, task(COMPLETED_TRANSLATION)))

        assert outcome.succeeded
        assert outcome.data["credits_left"] == 98
        assert outcome.message == "Translation completed successfully!"

    def test_error_response_fails_with_provider_text(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path)
        response = task({"status": "ERROR", "errors": ["Unsupported codec"]})

        outcome = asyncio.run(poller.run(JobKind.TRANSCRIPTION, response))

        assert outcome.state is JobState.ERROR
        assert isinstance(outcome.error, JobFailedError)
        assert outcome.error.category is ErrorCategory.JOB_FAILED
        assert outcome.message == "Transcription failed: Unsupported codec"

    def test_timeout_response(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path)

        outcome = asyncio.run(poller.run(JobKind.TRANSCRIPTION, task({"status": "TIMEOUT"})))

        assert outcome.state is JobState.TIMEOUT
        assert isinstance(outcome.error, JobTimeoutError)

    def test_response_without_result_or_id(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path)

        outcome = asyncio.run(poller.run(JobKind.TRANSCRIPTION, task({})))

        assert outcome.state is JobState.ERROR
        assert isinstance(outcome.error, UnexpectedResponse)
        fake_client.check_status.assert_not_awaited()


# ---------------------------------------------------------------------------
# Poll loop
# ---------------------------------------------------------------------------


class TestPollLoop:

    def test_polls_until_completed(self, fake_client, fake_clock, tmp_path):
        fake_client.check_status = AsyncMock(side_effect=[PENDING, PENDING, DONE])
        poller = _poller(fake_client, fake_clock, tmp_path)

        outcome = asyncio.run(poller.run(JobKind.TRANSCRIPTION, CREATED))

        assert outcome.state is JobState.COMPLETED
        assert outcome.data == {"url": "https://example.test/out.srt"}
        assert outcome.correlation_id == "c-1"
        assert outcome.status_checks == 3
        assert fake_client.check_status.await_count == 3
        fake_client.check_status.assert_awaited_with(JobKind.TRANSCRIPTION, "c-1")
        assert fake_clock.sleeps == [10.0, 10.0, 10.0]

    def test_first_check_waits_one_interval(self, fake_client, fake_clock, tmp_path):
        calls_at = []

        async def status(kind, correlation_id):
            calls_at.append(fake_clock.now)
            return DONE

        fake_client.check_status = AsyncMock(side_effect=status)
        poller = _poller(fake_client, fake_clock, tmp_path)

        asyncio.run(poller.run(JobKind.TRANSCRIPTION, CREATED))

        assert calls_at == [1010.0]

    def test_timeout_lands_on_budget(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path, interval=10, timeout=25)

        outcome = asyncio.run(poller.run(JobKind.TRANSCRIPTION, CREATED))

        assert outcome.state is JobState.TIMEOUT
        assert isinstance(outcome.error, JobTimeoutError)
        assert fake_clock.sleeps == [10, 10, 5]
        assert outcome.status_checks == 3
        assert fake_client.check_status.await_count == 3
        assert fake_clock.now - 1000 == 25

    def test_completion_on_last_check_beats_timeout(self, fake_client, fake_clock, tmp_path):
        fake_client.check_status = AsyncMock(side_effect=[PENDING, PENDING, DONE])
        poller = _poller(fake_client, fake_clock, tmp_path, interval=10, timeout=25)

        outcome = asyncio.run(poller.run(JobKind.TRANSCRIPTION, CREATED))

        assert outcome.state is JobState.COMPLETED

    def test_remote_error_mid_poll(self, fake_client, fake_clock, tmp_path):
        fake_client.check_status = AsyncMock(
            side_effect=[PENDING, task({"status": "ERROR", "errors": ["Audio too short"]})]
        )
        poller = _poller(fake_client, fake_clock, tmp_path)

        outcome = asyncio.run(poller.run(JobKind.TRANSCRIPTION, CREATED))

        assert outcome.state is JobState.ERROR
        assert outcome.message == "Transcription failed: Audio too short"
        assert fake_client.check_status.await_count == 2

    def test_remote_timeout_mid_poll(self, fake_client, fake_clock, tmp_path):
        fake_client.check_status = AsyncMock(side_effect=[task({"status": "TIMEOUT"})])
        poller = _poller(fake_client, fake_clock, tmp_path)

        outcome = asyncio.run(poller.run(JobKind.TRANSLATION, task({"correlation_id": "c-2"})))

        assert outcome.state is JobState.TIMEOUT

    def test_service_error_ends_job(self, fake_client, fake_clock, tmp_path):
        fake_client.check_status = AsyncMock(
            side_effect=[PENDING, ServerError("Bad gateway", status_code=502), DONE]
        )
        poller = _poller(fake_client, fake_clock, tmp_path)

        outcome = asyncio.run(poller.run(JobKind.TRANSCRIPTION, CREATED))

        assert outcome.state is JobState.ERROR
        assert isinstance(outcome.error, ServerError)
        assert fake_client.check_status.await_count == 2

    def test_unclassified_exception_ends_job(self, fake_client, fake_clock, tmp_path):
        fake_client.check_status = AsyncMock(
            side_effect=[PENDING, httpx.DecodingError("Error -3 while decompressing data"), DONE]
        )
        poller = _poller(fake_client, fake_clock, tmp_path)

        outcome = asyncio.run(poller.run(JobKind.TRANSCRIPTION, CREATED))

        assert outcome.state is JobState.ERROR
        assert isinstance(outcome.error, UnexpectedResponse)
        assert "decompressing" in outcome.error.message
        assert fake_client.check_status.await_count == 2

    def test_token_expiry_mid_poll_is_recovered(self, fake_client, fake_clock, tmp_path):
        fake_client.check_status = AsyncMock(
            side_effect=[PENDING, AuthenticationError("expired", status_code=401), DONE]
        )
        poller = _poller(fake_client, fake_clock, tmp_path)

        outcome = asyncio.run(poller.run(JobKind.TRANSCRIPTION, CREATED))

        assert outcome.state is JobState.COMPLETED
        assert outcome.status_checks == 2
        assert fake_client.check_status.await_count == 3
        fake_client.login.assert_awaited_once()

    def test_state_becomes_pending(self, fake_client, fake_clock, tmp_path):
        fake_client.check_status = AsyncMock(side_effect=[PENDING, DONE])
        poller = _poller(fake_client, fake_clock, tmp_path)
        seen = []

        async def scenario():
            job = poller.start(JobKind.TRANSCRIPTION, CREATED)
            seen.append(job.state)
            fake_clock.on_sleep = lambda n: seen.append(job.state)
            return await poller.wait(job.id)

        outcome = asyncio.run(scenario())

        assert seen == [JobState.CREATED, JobState.CREATED, JobState.PENDING]
        assert outcome.state is JobState.COMPLETED

    def test_interval_change_applies_to_running_job(self, fake_client, fake_clock, tmp_path):
        fake_client.check_status = AsyncMock(side_effect=[PENDING, PENDING, DONE])
        poller = _poller(fake_client, fake_clock, tmp_path)

        def change_interval(n):
            if n == 1:
                poller.settings.interval_seconds = 3.0

        fake_clock.on_sleep = change_interval
        asyncio.run(poller.run(JobKind.TRANSCRIPTION, CREATED))

        assert fake_clock.sleeps == [10.0, 3.0, 3.0]

    def test_progress_messages(self, fake_client, fake_clock, tmp_path):
        fake_client.check_status = AsyncMock(side_effect=[PENDING, PENDING, DONE])
        poller = _poller(fake_client, fake_clock, tmp_path, interval=40)
        messages = []

        asyncio.run(poller.run(JobKind.TRANSCRIPTION, CREATED, on_status=messages.append))

        assert messages == [
            "Task created, waiting for completion...",
            "Transcription in progress... (elapsed: 0m 40s)",
            "Transcription in progress... (elapsed: 1m 20s)",
        ]

    def test_jobs_poll_independently(self, fake_client, fake_clock, tmp_path):
        replies = {"a": [PENDING, DONE], "b": [task({"status": "ERROR", "errors": ["bad"]})]}

        async def status(kind, correlation_id):
            return replies[correlation_id].pop(0)

        fake_client.check_status = AsyncMock(side_effect=status)
        poller = _poller(fake_client, fake_clock, tmp_path)

        async def scenario():
            first = poller.start(JobKind.TRANSCRIPTION, task({"correlation_id": "a"}))
            second = poller.start(JobKind.TRANSLATION, task({"correlation_id": "b"}))
            assert len(poller.active_jobs()) == 2
            return await asyncio.gather(poller.wait(first.id), poller.wait(second.id))

        first, second = asyncio.run(scenario())

        assert first.state is JobState.COMPLETED
        assert second.state is JobState.ERROR
        assert fake_client.check_status.await_count == 3


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancel:

    def test_cancel_between_polls(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path)

        async def scenario():
            job = poller.start(JobKind.TRANSCRIPTION, CREATED)
            fake_clock.on_sleep = lambda n: poller.cancel(job.id) if n == 2 else None
            return await poller.wait(job.id)

        outcome = asyncio.run(scenario())

        assert outcome.state is JobState.CANCELLED
        assert isinstance(outcome.error, JobCancelledError)
        assert outcome.status_checks == 1
        assert fake_client.check_status.await_count == 1

    def test_cancel_before_first_poll(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path)

        async def scenario():
            job = poller.start(JobKind.TRANSCRIPTION, CREATED)
            assert poller.cancel(job.id)
            return await poller.wait(job.id)

        outcome = asyncio.run(scenario())

        assert outcome.state is JobState.CANCELLED
        fake_client.check_status.assert_not_awaited()
        assert fake_clock.sleeps == []

    def test_in_flight_result_is_discarded(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path)
        holder = {}

        def status(kind, correlation_id):
            poller.cancel(holder["job_id"])
            return DONE

        fake_client.check_status = AsyncMock(side_effect=status)

        async def scenario():
            job = poller.start(JobKind.TRANSCRIPTION, CREATED)
            holder["job_id"] = job.id
            return await poller.wait(job.id)

        outcome = asyncio.run(scenario())

        assert outcome.state is JobState.CANCELLED
        assert outcome.data is None

    def test_cancel_unknown_or_finished_job(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path)

        async def scenario():
            job = poller.start(JobKind.TRANSLATION, task(COMPLETED_TRANSLATION))
            return poller.cancel("missing"), poller.cancel(job.id)

        assert asyncio.run(scenario()) == (False, False)

    def test_cancel_is_idempotent(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path)

        async def scenario():
            job = poller.start(JobKind.TRANSCRIPTION, CREATED)
            results = (poller.cancel(job.id), poller.cancel(job.id))
            await poller.wait(job.id)
            return results

        assert asyncio.run(scenario()) == (True, True)


class TestWait:

    def test_wait_forgets_the_job(self, fake_client, fake_clock, tmp_path):
        fake_client.check_status = AsyncMock(return_value=DONE)
        poller = _poller(fake_client, fake_clock, tmp_path)

        async def scenario():
            job = poller.start(JobKind.TRANSCRIPTION, CREATED)
            await poller.wait(job.id)
            assert poller.get(job.id) is None
            with pytest.raises(KeyError):
                await poller.wait(job.id)

        asyncio.run(scenario())

    def test_job_visible_until_reported(self, fake_client, fake_clock, tmp_path):
        poller = _poller(fake_client, fake_clock, tmp_path)

        async def scenario():
            job = poller.start(JobKind.TRANSLATION, task(COMPLETED_TRANSLATION))
            return poller.get(job.id)

        job = asyncio.run(scenario())

        assert job.state is JobState.COMPLETED
