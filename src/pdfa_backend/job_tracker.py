"""
Conversion job lifecycle.

A job moves ``pending -> processing -> completed | failed``. Completion and
its quota consumption commit in the same transaction, so a unit is consumed
exactly once per job no matter how often ``complete`` is retried or raced.
Failures never touch the ledger.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from .database import Database, JobRepository
from .errors import InvalidState, NotFound, QuotaExceeded
from .models import JobStatus
from .quota_ledger import QuotaLedger
from .records import ConversionJob, Page
from .utils import Clock, clamp_page, utcnow

logger = logging.getLogger(__name__)

QUOTA_EXHAUSTED_MESSAGE = "Daily conversion quota exhausted before the conversion could be recorded."


class JobTracker:
    """
    State machine and persistence for ``ConversionJob`` records.

    Thread Safety:
        Every transition runs in its own ``BEGIN IMMEDIATE`` transaction, so
        concurrent calls for the same job observe each other's results.
    """

    def __init__(
        self,
        database: Database,
        ledger: QuotaLedger,
        clock: Clock = utcnow,
        repository: Optional[JobRepository] = None,
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._clock = clock
        self._repo = repository or JobRepository()

    def create(
        self,
        identity: str,
        original_name: str,
        original_size: int,
        user_agent: Optional[str] = None,
        status: JobStatus = JobStatus.PROCESSING,
    ) -> ConversionJob:
        """
        Register a job at upload acceptance.

        Args:
            status: Entry state; ``PENDING`` when a worker will pick the job up
                later, ``PROCESSING`` when conversion starts immediately.
        """
        if status.is_terminal:
            raise InvalidState(f"A job cannot be created in state '{status.value}'", current=status.value)
        now = self._clock()
        job = ConversionJob(
            id=uuid4().hex,
            identity=identity,
            original_name=original_name,
            original_size=original_size,
            status=status,
            created_at=now,
            updated_at=now,
            user_agent=user_agent,
        )
        with self._db.transaction() as conn:
            self._repo.insert(conn, job)
        logger.info(f"Job {job.id} created for {identity} ({original_name}, {original_size} bytes)")
        return job

    def start(self, job_id: str) -> ConversionJob:
        """Move a pending job to processing."""
        with self._db.transaction() as conn:
            job = self._require(conn, job_id)
            self._check_transition(job, JobStatus.PROCESSING)
            self._repo.set_status(conn, job_id, job.status, JobStatus.PROCESSING, self._clock())
            return self._repo.find(conn, job_id)

    def attach_original(self, job_id: str, key: str) -> None:
        with self._db.transaction() as conn:
            self._require(conn, job_id)
            self._repo.set_original_key(conn, job_id, key, self._clock())

    def complete(
        self,
        job_id: str,
        converted_name: str,
        converted_size: int,
        duration_ms: int,
        converted_key: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ConversionJob:
        """
        Mark a job completed and consume one quota unit for its identity.

        Raises:
            NotFound: Unknown job id
            InvalidState: The job already reached a terminal state
            QuotaExceeded: No unit left today; the job is recorded as failed
        """
        exhausted: Optional[Tuple[int, int, int]] = None
        with self._db.transaction() as conn:
            job = self._require(conn, job_id)
            self._check_transition(job, JobStatus.COMPLETED)
            now = self._clock()
            day = now.date()
            if self._ledger.try_consume_in(conn, job.identity, day, 1):
                self._repo.mark_completed(
                    conn,
                    job_id,
                    job.status,
                    converted_name,
                    converted_key,
                    converted_size,
                    duration_ms,
                    metadata or {},
                    now,
                )
            else:
                record = self._ledger.get_or_init_in(conn, job.identity, day)
                self._repo.mark_failed(conn, job_id, job.status, QUOTA_EXHAUSTED_MESSAGE, duration_ms, now)
                exhausted = (record.remaining, record.limit, record.consumed)
            updated = self._repo.find(conn, job_id)

        if exhausted is not None:
            remaining, limit, used = exhausted
            logger.warning(f"Job {job_id} failed: quota exhausted for {job.identity}")
            raise QuotaExceeded(remaining=remaining, limit=limit, used=used)

        logger.info(f"Job {job_id} completed in {duration_ms} ms ({converted_size} bytes)")
        return updated

    def fail(self, job_id: str, error_message: str, duration_ms: Optional[int] = None) -> ConversionJob:
        """
        Mark a job failed. No quota is consumed.

        Raises:
            NotFound: Unknown job id
            InvalidState: The job already reached a terminal state
        """
        with self._db.transaction() as conn:
            job = self._require(conn, job_id)
            self._check_transition(job, JobStatus.FAILED)
            self._repo.mark_failed(conn, job_id, job.status, error_message, duration_ms, self._clock())
            updated = self._repo.find(conn, job_id)
        logger.warning(f"Job {job_id} failed: {error_message}")
        return updated

    def get(self, job_id: str, identity: str) -> ConversionJob:
        """
        Fetch a job owned by ``identity``.

        Raises:
            NotFound: The job does not exist or belongs to another identity
        """
        with self._db.connection() as conn:
            job = self._repo.find(conn, job_id)
        if job is None or job.identity != identity:
            raise NotFound("Conversion not found.")
        return job

    def load(self, job_id: str) -> ConversionJob:
        """Fetch a job without the ownership check (internal callers only)."""
        with self._db.connection() as conn:
            return self._require(conn, job_id)

    def list_for(self, identity: str, page: int = 1, per_page: int = 15) -> Page[ConversionJob]:
        page, per_page = clamp_page(page, per_page)
        with self._db.connection() as conn:
            total = self._repo.count_for_identity(conn, identity)
            items = self._repo.list_for_identity(conn, identity, per_page, (page - 1) * per_page)
        return Page(items=items, page=page, per_page=per_page, total=total)

    def count_completed(self, identity: str, since: Optional[datetime] = None) -> int:
        with self._db.connection() as conn:
            return self._repo.count_completed(conn, identity, since)

    def key_in_use(self, key: str) -> bool:
        with self._db.connection() as conn:
            return self._repo.key_in_use(conn, key)

    def purge_older_than(self, cutoff: datetime) -> Tuple[List[ConversionJob], List[str]]:
        """
        Delete jobs created before ``cutoff``.

        Returns:
            The deleted jobs and the storage keys no remaining job references
        """
        with self._db.transaction() as conn:
            jobs = self._repo.created_before(conn, cutoff)
            self._repo.delete_many(conn, [job.id for job in jobs])
            keys = {key for job in jobs for key in (job.original_key, job.converted_key) if key}
            orphaned = sorted(key for key in keys if not self._repo.key_in_use(conn, key))
        if jobs:
            logger.info(f"Purged {len(jobs)} job(s) created before {cutoff.isoformat()}")
        return jobs, orphaned

    def _require(self, conn, job_id: str) -> ConversionJob:
        job = self._repo.find(conn, job_id)
        if job is None:
            raise NotFound("Conversion not found.")
        return job

    @staticmethod
    def _check_transition(job: ConversionJob, target: JobStatus) -> None:
        if not job.status.can_transition_to(target):
            raise InvalidState(
                f"Job {job.id} cannot move from '{job.status.value}' to '{target.value}'",
                current=job.status.value,
            )
