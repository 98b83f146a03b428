"""
Periodic maintenance: expansion expiry sweep, retention cleanup and pruning
of stale rate limit windows.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from .conversion_service import ConversionService
from .expansion_workflow import ExpansionWorkflow
from .middleware import RateLimiter
from .quota_ledger import QuotaLedger

logger = logging.getLogger(__name__)


class MaintenanceWorker:
    """Runs ``run_once`` every ``interval_seconds`` on a daemon thread."""

    def __init__(
        self,
        ledger: QuotaLedger,
        conversions: ConversionService,
        workflow: Optional[ExpansionWorkflow] = None,
        limiter: Optional[RateLimiter] = None,
        interval_seconds: float = 3600,
    ) -> None:
        self._ledger = ledger
        self._conversions = conversions
        self._workflow = workflow
        self._limiter = limiter
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Dict[str, int]:
        expired = self._ledger.sweep_expired()
        purged = self._conversions.cleanup()
        purged_requests = self._workflow.purge_closed() if self._workflow else 0
        stale_windows = self._limiter.cleanup() if self._limiter else 0
        logger.info(
            f"Maintenance run: {expired} expansion(s) expired, {purged} job(s) purged, "
            f"{purged_requests} request(s) purged, {stale_windows} rate limit window(s) dropped"
        )
        return {
            "expired_expansions": expired,
            "purged_jobs": purged,
            "purged_requests": purged_requests,
            "stale_rate_windows": stale_windows,
        }

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="pdfa-maintenance", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Maintenance run failed")
            self._stop.wait(self.interval_seconds)
