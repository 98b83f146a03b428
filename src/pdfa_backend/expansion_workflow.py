"""
Expansion request lifecycle.

A request starts ``pending`` and ends in exactly one of ``approved``,
``rejected`` (admin decisions) or ``cancelled`` (requester). Invariants:

- at most one pending request per identity (checked in the write
  transaction, backed by a partial unique index)
- an identity whose current quota record is expanded cannot submit
- approval mutates the quota record in the same transaction
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from omegaconf import DictConfig

from .database import Database, RequestRepository
from .errors import AlreadyExpanded, DuplicatePending, InvalidState, NotFound, ValidationFailure
from .interfaces import Notifier
from .models import ExpansionRequestIn, ExpansionStatus
from .quota_ledger import QuotaLedger
from .records import ExpansionRequest, Page
from .utils import Clock, clamp_page, utcnow

logger = logging.getLogger(__name__)

CANCELLED_NOTE = "Cancelled by the requester"


class ExpansionWorkflow:
    def __init__(
        self,
        database: Database,
        ledger: QuotaLedger,
        notifier: Notifier,
        settings: DictConfig,
        clock: Clock = utcnow,
        repository: Optional[RequestRepository] = None,
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._notifier = notifier
        self._clock = clock
        self._repo = repository or RequestRepository()
        self.min_justification = settings.expansion.min_justification_length
        self.max_justification = settings.expansion.max_justification_length
        self.max_requested_limit = settings.quota.max_requested_limit
        self.duration_days = settings.quota.expansion_duration_days
        self.retention_days = settings.expansion.request_retention_days

    @property
    def min_requested_limit(self) -> int:
        return self._ledger.default_limit + 1

    def validate(self, fields: ExpansionRequestIn) -> None:
        """
        Domain checks on a submission.

        Raises:
            ValidationFailure: Justification length or requested limit out of bounds
        """
        length = len(fields.justification.strip())
        if length < self.min_justification:
            raise ValidationFailure(
                f"Justification must be at least {self.min_justification} characters.",
                data={"field": "justification", "length": length},
            )
        if length > self.max_justification:
            raise ValidationFailure(
                f"Justification must be at most {self.max_justification} characters.",
                data={"field": "justification", "length": length},
            )
        if not self.min_requested_limit <= fields.requested_limit <= self.max_requested_limit:
            raise ValidationFailure(
                f"Requested limit must be between {self.min_requested_limit} and {self.max_requested_limit}.",
                data={"field": "requested_limit", "value": fields.requested_limit},
            )

    def submit(
        self, identity: str, fields: ExpansionRequestIn, user_agent: Optional[str] = None
    ) -> ExpansionRequest:
        """
        Create a pending request and alert the administrator.

        Raises:
            ValidationFailure: See ``validate``
            DuplicatePending: A pending request already exists for ``identity``
            AlreadyExpanded: ``identity`` already has an active expansion
        """
        self.validate(fields)
        now = self._clock()
        request = ExpansionRequest(
            id=uuid4().hex,
            identity=identity,
            contact_email=fields.contact_email,
            contact_name=fields.contact_name,
            organization=fields.organization,
            justification=fields.justification.strip(),
            requested_limit=fields.requested_limit,
            status=ExpansionStatus.PENDING,
            created_at=now,
            updated_at=now,
            user_agent=user_agent,
        )
        with self._db.transaction() as conn:
            if self._repo.find_pending(conn, identity) is not None:
                raise DuplicatePending("A pending expansion request already exists for this address.")
            record = self._ledger.get_or_init_in(conn, identity, now.date())
            if record.expanded:
                raise AlreadyExpanded("This address already has an active limit expansion.")
            try:
                self._repo.insert(conn, request)
            except sqlite3.IntegrityError as exc:
                raise DuplicatePending("A pending expansion request already exists for this address.") from exc

        logger.info(f"Expansion request {request.id} submitted by {identity} (limit {request.requested_limit})")
        self._notify(request)
        return request

    def cancel(self, identity: str) -> ExpansionRequest:
        """
        Cancel the requester's pending request.

        Raises:
            NotFound: ``identity`` has no pending request
        """
        with self._db.transaction() as conn:
            request = self._repo.find_pending(conn, identity)
            if request is None:
                raise NotFound("No pending expansion request found for this address.")
            self._repo.transition(
                conn, request.id, ExpansionStatus.PENDING, ExpansionStatus.CANCELLED, CANCELLED_NOTE, self._clock()
            )
            updated = self._repo.find(conn, request.id)
        logger.info(f"Expansion request {request.id} cancelled by {identity}")
        return updated

    def approve(self, request_id: str, notes: Optional[str] = None) -> ExpansionRequest:
        """
        Approve a pending request and expand the identity's limit for today onward.

        Raises:
            NotFound: Unknown request id
            InvalidState: The request is no longer pending
        """
        with self._db.transaction() as conn:
            request = self._decide(conn, request_id, ExpansionStatus.APPROVED, notes)
            self._ledger.apply_expansion_in(
                conn, request.identity, self._clock().date(), request.requested_limit, self.duration_days
            )
        logger.info(f"Expansion request {request_id} approved (limit {request.requested_limit})")
        return request

    def reject(self, request_id: str, notes: Optional[str] = None) -> ExpansionRequest:
        with self._db.transaction() as conn:
            request = self._decide(conn, request_id, ExpansionStatus.REJECTED, notes)
        logger.info(f"Expansion request {request_id} rejected")
        return request

    def get(self, request_id: str) -> ExpansionRequest:
        with self._db.connection() as conn:
            request = self._repo.find(conn, request_id)
        if request is None:
            raise NotFound("Expansion request not found.")
        return request

    def latest_for(self, identity: str) -> Optional[ExpansionRequest]:
        with self._db.connection() as conn:
            return self._repo.latest(conn, identity)

    def pending_for(self, identity: str) -> Optional[ExpansionRequest]:
        with self._db.connection() as conn:
            return self._repo.find_pending(conn, identity)

    def history(self, identity: str, page: int = 1, per_page: int = 10) -> Page[ExpansionRequest]:
        page, per_page = clamp_page(page, per_page)
        with self._db.connection() as conn:
            total = self._repo.count_for_identity(conn, identity)
            items = self._repo.list_for_identity(conn, identity, per_page, (page - 1) * per_page)
        return Page(items=items, page=page, per_page=per_page, total=total)

    def purge_closed(self, older_than_days: Optional[int] = None) -> int:
        """
        Delete rejected and cancelled requests not touched within the retention window.

        Approved and pending requests are always kept.

        Returns:
            Number of requests deleted
        """
        days = self.retention_days if older_than_days is None else older_than_days
        cutoff = self._clock() - timedelta(days=days)
        with self._db.transaction() as conn:
            deleted = self._repo.delete_closed_before(conn, cutoff)
        if deleted:
            logger.info(f"Purged {deleted} closed expansion request(s) last updated before {cutoff.isoformat()}")
        return deleted

    def _decide(
        self, conn: sqlite3.Connection, request_id: str, target: ExpansionStatus, notes: Optional[str]
    ) -> ExpansionRequest:
        request = self._repo.find(conn, request_id)
        if request is None:
            raise NotFound("Expansion request not found.")
        if not request.status.can_transition_to(target):
            raise InvalidState(
                f"Request {request_id} was already {request.status.value}.",
                current=request.status.value,
            )
        self._repo.transition(conn, request_id, request.status, target, notes, self._clock())
        return self._repo.find(conn, request_id)

    def _notify(self, request: ExpansionRequest) -> None:
        try:
            self._notifier.notify_expansion_request(request)
        except Exception:  # noqa: BLE001
            logger.exception(f"Admin notification for expansion request {request.id} failed")
