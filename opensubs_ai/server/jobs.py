"""In-memory record store for jobs submitted through the HTTP bridge.

WHY: The bridge answers POST /jobs immediately and lets the UI poll
GET /jobs/{id}. It needs a place to keep each job's visible state, the
uploaded file it wrote to disk, and the final outcome after the poller
has forgotten the job.

HOW: Two components:
  JobRecord  - dataclass holding the bridge-visible view of one job
  JobStore   - thread-safe dict-based store with create/update/get/list/
               delete, upload cleanup, and TTL expiry of finished records

RULES:
- All store mutations are protected by threading.Lock
- Each record gets a dedicated temp directory for the uploaded file
- The temp directory is removed as soon as the job is terminal, on
  submission failure, and on delete; removal never raises
- TTL expiry only removes terminal records, measured from completed_at
- Record ids are bridge ids; job_id is the poller id once submitted
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from opensubs_ai.core.poller import TERMINAL_STATES, JobOutcome, JobState

logger = logging.getLogger(__name__)

# Default time-to-live for finished records (seconds)
DEFAULT_TTL_SECONDS = 3600


@dataclass
class JobRecord:
    """Bridge-visible state of one submitted job.

    RULES:
    - state mirrors the poller's JobState
    - error is ServiceError.to_dict() for failed, timed-out, or cancelled jobs
    - result is the service's result payload for completed jobs
    - work_dir is None once the upload has been cleaned up
    """

    id: str
    kind: str
    filename: str
    work_dir: Optional[Path]
    created_at: float
    updated_at: float
    state: JobState = JobState.CREATED
    job_id: Optional[str] = None
    correlation_id: Optional[str] = None
    completed_at: Optional[float] = None
    message: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    progress: List[str] = field(default_factory=list)

    @property
    def upload_path(self) -> Optional[Path]:
        if self.work_dir is None:
            return None
        return self.work_dir / self.filename

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class JobStore:
    """Thread-safe in-memory store for bridge job records.

    RULES:
    - create_job() makes the temp dir; attach() links the record to the
      poller's job once submission succeeded
    - get_job() returns None for unknown ids (no exceptions)
    - finish_job() records the outcome and removes the upload
    - delete_job() removes the record and its temp directory
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_jobs: int = 100,
    ) -> None:
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()
        self._ttl_seconds = ttl_seconds
        self.max_jobs = max_jobs

    def create_job(self, filename: str, kind: str) -> JobRecord:
        """Create a record and a temp directory to hold the upload.

        Raises ValueError when max_jobs unfinished records already exist.
        """
        with self._lock:
            active = sum(1 for job in self._jobs.values() if not job.is_terminal)
            if active >= self.max_jobs:
                raise ValueError(
                    "Maximum number of concurrent jobs ({}) reached".format(self.max_jobs)
                )

            now = time.time()
            record = JobRecord(
                id=uuid.uuid4().hex,
                kind=kind,
                filename=filename,
                work_dir=Path(tempfile.mkdtemp(prefix="opensubs_job_")),
                created_at=now,
                updated_at=now,
            )
            self._jobs[record.id] = record

        logger.info("Created job record %s for file %s", record.id, filename)
        return record

    def attach(
        self,
        record_id: str,
        job_id: str,
        correlation_id: Optional[str],
        state: JobState,
    ) -> Optional[JobRecord]:
        """Link a record to the poller's job once submission succeeded."""
        with self._lock:
            record = self._jobs.get(record_id)
            if record is None:
                return None
            record.job_id = job_id
            record.correlation_id = correlation_id
            record.state = state
            record.updated_at = time.time()
            return record

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> List[JobRecord]:
        """All records, oldest first."""
        with self._lock:
            return sorted(self._jobs.values(), key=lambda j: j.created_at)

    def update_job(
        self,
        job_id: str,
        state: Optional[JobState] = None,
        progress: Optional[str] = None,
    ) -> Optional[JobRecord]:
        """Advance a record's state or append a progress line.

        State changes that would leave a terminal state are ignored.
        """
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return None
            if state is not None and not record.is_terminal:
                record.state = state
            if progress is not None:
                record.progress.append(progress)
            record.updated_at = time.time()
            return record

    def finish_job(self, job_id: str, outcome: JobOutcome) -> Optional[JobRecord]:
        """Store a terminal outcome and remove the uploaded file."""
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return None
            now = time.time()
            record.state = outcome.state
            record.message = outcome.message
            record.result = outcome.data
            record.error = outcome.error.to_dict() if outcome.error is not None else None
            record.updated_at = now
            record.completed_at = now
            work_dir, record.work_dir = record.work_dir, None

        self._cleanup_work_dir(work_dir)
        return record

    def release_upload(self, job_id: str) -> None:
        """Remove a record's uploaded file, keeping the record."""
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return
            work_dir, record.work_dir = record.work_dir, None
        self._cleanup_work_dir(work_dir)

    def delete_job(self, job_id: str) -> bool:
        """Delete a record and clean up its temp directory.

        Returns True if the record was found.
        """
        with self._lock:
            record = self._jobs.pop(job_id, None)

        if record is None:
            return False

        self._cleanup_work_dir(record.work_dir)
        logger.info("Deleted job record %s", job_id)
        return True

    def cleanup_expired(self) -> int:
        """Remove finished records older than the TTL; returns how many."""
        now = time.time()
        expired: List[JobRecord] = []

        with self._lock:
            for job_id, record in list(self._jobs.items()):
                if not record.is_terminal or record.completed_at is None:
                    continue
                if now - record.completed_at > self._ttl_seconds:
                    expired.append(self._jobs.pop(job_id))

        for record in expired:
            self._cleanup_work_dir(record.work_dir)
            logger.info("Expired job record %s", record.id)

        return len(expired)

    def clear(self) -> None:
        """Delete every record and temp directory (bridge shutdown)."""
        with self._lock:
            records = list(self._jobs.values())
            self._jobs.clear()
        for record in records:
            self._cleanup_work_dir(record.work_dir)

    @staticmethod
    def _cleanup_work_dir(work_dir: Optional[Path]) -> None:
        if work_dir is not None and work_dir.exists():
            try:
                shutil.rmtree(work_dir)
            except OSError:
                logger.warning("Failed to clean up temp dir: %s", work_dir)
