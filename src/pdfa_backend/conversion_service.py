"""
Conversion orchestration: admission control, per-file execution, history.

This module coordinates the quota ledger, the job tracker and the external
renderer for a batch of uploaded PDFs:

1. Admission: the batch is rejected as a whole (before any job exists) when
   it is larger than the identity's remaining conversions.
2. Execution: each file becomes its own job, rendered on a worker thread with
   a timeout. Completion consumes one quota unit; failure consumes none.
3. Reporting: per-file outcomes are collected so one bad file degrades the
   batch to partial success instead of aborting it.

The admission check is advisory under concurrency; the atomic consumption in
``JobTracker.complete`` is what actually bounds usage.
"""

from __future__ import annotations

import logging
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from omegaconf import DictConfig

from .errors import InvalidState, NotFound, QuotaExceeded, ValidationFailure
from .interfaces import Renderer, Storage
from .job_tracker import JobTracker
from .models import BatchResult, FileError, JobStatus, UsageCheck, UserStats
from .quota_ledger import QuotaLedger
from .records import ConversionJob, ConvertedFile, Page, UploadedPdf
from .utils import Clock, converted_filename, utcnow

logger = logging.getLogger(__name__)

# Extra time allowed beyond the render timeout for storage I/O
TIMEOUT_GRACE_SECONDS = 30
# How often a waiting batch re-checks its running jobs
WAIT_POLL_SECONDS = 0.1


def _elapsed_ms(started: float) -> int:
    return round((time.monotonic() - started) * 1000)


class ConversionService:
    """
    Entry point for conversions requested by one identity.

    Attributes:
        max_files: Largest accepted batch
        max_file_bytes: Largest accepted file
        timeout_seconds: Wall-clock budget for one file's conversion
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        jobs: JobTracker,
        renderer: Renderer,
        storage: Storage,
        settings: DictConfig,
        clock: Clock = utcnow,
    ) -> None:
        self._ledger = ledger
        self._jobs = jobs
        self._renderer = renderer
        self._storage = storage
        self._clock = clock
        self.max_files = settings.conversion.max_files_per_batch
        self.max_file_bytes = settings.conversion.max_file_size_kb * 1024
        self.timeout_seconds = settings.conversion.render_timeout_seconds
        self.retention_days = settings.conversion.file_retention_days
        self._executor = ThreadPoolExecutor(
            max_workers=settings.conversion.max_workers, thread_name_prefix="pdfa-render"
        )
        # job id -> monotonic time its worker picked it up
        self._started: Dict[str, float] = {}
        self._started_lock = threading.Lock()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def check_usage(self, identity: str, count: int = 1) -> UsageCheck:
        usage = self._ledger.info(identity)
        if count > usage.remaining_conversions:
            return UsageCheck(
                can_convert=False,
                message=f"Insufficient quota. You have {usage.remaining_conversions} conversion(s) left today.",
                usage_info=usage,
            )
        return UsageCheck(can_convert=True, message="Quota available", usage_info=usage)

    def convert(
        self, identity: str, files: Sequence[UploadedPdf], user_agent: Optional[str] = None
    ) -> BatchResult:
        """
        Convert a batch of PDFs for ``identity``.

        Raises:
            ValidationFailure: Empty batch or more than ``max_files`` files
            QuotaExceeded: The batch is larger than the remaining conversions;
                no job is created in that case
        """
        if not files:
            raise ValidationFailure("At least one PDF file is required.")
        if len(files) > self.max_files:
            raise ValidationFailure(f"At most {self.max_files} files can be converted at once.")

        record = self._ledger.get_or_init(identity)
        if len(files) > record.remaining:
            logger.warning(f"Batch of {len(files)} rejected for {identity}: {record.remaining} remaining")
            raise QuotaExceeded(remaining=record.remaining, limit=record.limit, used=record.consumed)

        jobs = [
            self._jobs.create(identity, upload.filename, upload.size, user_agent=user_agent, status=JobStatus.PENDING)
            for upload in files
        ]
        futures = [self._executor.submit(self._process, job.id, upload) for job, upload in zip(jobs, files)]

        self._await(dict(zip(futures, (job.id for job in jobs))))

        finished = [self._jobs.get(job.id, identity) for job in jobs]
        errors = [
            FileError(filename=job.original_name, message=job.error or "Conversion failed", job_id=job.id)
            for job in finished
            if job.status != JobStatus.COMPLETED
        ]
        completed = len(finished) - len(errors)
        logger.info(f"Batch for {identity}: {completed} completed, {len(errors)} failed")
        return BatchResult(
            success=completed > 0,
            completed_count=completed,
            failed_count=len(errors),
            jobs=[job.to_summary() for job in finished],
            errors=errors,
            usage=self._ledger.info(identity),
        )

    def _await(self, pending: Dict[Future, str]) -> None:
        """
        Wait for every job of a batch to finish.

        A job's deadline runs from the moment a worker picks it up, so jobs
        queued behind other batches are never failed while they wait. A job
        still running past ``timeout_seconds + TIMEOUT_GRACE_SECONDS`` is
        failed here and no longer waited for.
        """
        budget = self.timeout_seconds + TIMEOUT_GRACE_SECONDS
        while pending:
            done, _ = wait(list(pending), timeout=WAIT_POLL_SECONDS)
            for future in done:
                pending.pop(future)

            now = time.monotonic()
            with self._started_lock:
                overdue: List[Future] = [
                    future
                    for future, job_id in pending.items()
                    if job_id in self._started and now - self._started[job_id] > budget
                ]
            for future in overdue:
                job_id = pending.pop(future)
                logger.warning(f"Job {job_id} exceeded {budget}s, marking it failed")
                self._fail_quietly(job_id, f"Conversion timed out after {self.timeout_seconds}s")

    def _process(self, job_id: str, upload: UploadedPdf) -> ConversionJob:
        """
        Convert one file (runs in a worker thread).

        Every path out of this method leaves the job terminal: any exception
        while storing or rendering marks it failed.
        """
        started = time.monotonic()
        with self._started_lock:
            self._started[job_id] = started
        try:
            return self._run(job_id, upload, started)
        finally:
            with self._started_lock:
                self._started.pop(job_id, None)

    def _run(self, job_id: str, upload: UploadedPdf, started: float) -> ConversionJob:
        try:
            self._jobs.start(job_id)
            if upload.size > self.max_file_bytes:
                raise ValidationFailure(f"File too large. Maximum size: {self.max_file_bytes // 1024}KB")

            self._jobs.attach_original(job_id, self._storage.put(upload.content, "originals"))
            with tempfile.TemporaryDirectory(prefix="pdfa-") as workdir:
                input_path = Path(workdir) / "input.pdf"
                output_path = Path(workdir) / "output.pdf"
                input_path.write_bytes(upload.content)
                self._renderer.render(input_path, output_path)
                converted = output_path.read_bytes()
                metadata = self._renderer.inspect(input_path)
            converted_key = self._storage.put(converted, "converted")
        except InvalidState:
            # Already terminal, e.g. failed by the batch timeout.
            return self._jobs.load(job_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Conversion of job {job_id} failed: {exc}")
            return self._fail_quietly(job_id, str(exc) or exc.__class__.__name__, _elapsed_ms(started))

        try:
            return self._jobs.complete(
                job_id,
                converted_name=converted_filename(upload.filename),
                converted_size=len(converted),
                duration_ms=_elapsed_ms(started),
                converted_key=converted_key,
                metadata=metadata,
            )
        except (QuotaExceeded, InvalidState):
            # Output was never attributed; drop it unless another job shares the key.
            self._discard_unreferenced(converted_key)
            return self._jobs.load(job_id)

    def _discard_unreferenced(self, key: str) -> None:
        if not self._jobs.key_in_use(key):
            self._delete_stored(key)

    def _delete_stored(self, key: str) -> None:
        try:
            self._storage.delete(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Could not delete stored file {key}: {exc}")

    def _fail_quietly(self, job_id: str, message: str, duration_ms: Optional[int] = None) -> ConversionJob:
        try:
            return self._jobs.fail(job_id, message, duration_ms)
        except InvalidState:
            return self._jobs.load(job_id)

    def get_job(self, job_id: str, identity: str) -> ConversionJob:
        return self._jobs.get(job_id, identity)

    def list_jobs(self, identity: str, page: int = 1, per_page: int = 15) -> Page[ConversionJob]:
        return self._jobs.list_for(identity, page, per_page)

    def get_converted_file(self, job_id: str, identity: str) -> ConvertedFile:
        """
        Raises:
            NotFound: Unknown, foreign or unfinished job, or output no longer stored
        """
        job = self._jobs.get(job_id, identity)
        if job.status != JobStatus.COMPLETED or not job.converted_key:
            raise NotFound("Conversion not found.")
        if not self._storage.exists(job.converted_key):
            raise NotFound("Converted file no longer available.")
        content = self._storage.read(job.converted_key)
        return ConvertedFile(filename=job.converted_name or "document_pdfa.pdf", size=len(content), content=content)

    def stats(self, identity: str) -> UserStats:
        start_of_day = datetime.combine(self._clock().date(), datetime.min.time(), tzinfo=timezone.utc)
        return UserStats(
            daily_usage=self._ledger.info(identity),
            total_conversions=self._jobs.count_completed(identity),
            today_conversions=self._jobs.count_completed(identity, since=start_of_day),
        )

    def cleanup(self, retention_days: Optional[int] = None) -> int:
        """
        Delete jobs, stored files and quota rows older than the retention window.

        Returns:
            Number of jobs deleted
        """
        days = self.retention_days if retention_days is None else retention_days
        cutoff = self._clock() - timedelta(days=days)
        jobs, orphaned_keys = self._jobs.purge_older_than(cutoff)
        for key in orphaned_keys:
            self._delete_stored(key)
        self._ledger.purge_before(cutoff.date())
        return len(jobs)

