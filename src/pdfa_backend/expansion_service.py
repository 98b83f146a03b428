"""
Read-side and coordination facade over the expansion workflow.

Holds no state of its own: every answer is composed from the quota ledger and
the expansion workflow.
"""

from __future__ import annotations

from typing import Optional

from omegaconf import DictConfig

from .errors import NotFound
from .expansion_workflow import ExpansionWorkflow
from .models import (
    CancelResult,
    ExpansionHistory,
    ExpansionInfo,
    ExpansionRequestIn,
    ExpansionRequestView,
    ExpansionStatusView,
)
from .quota_ledger import QuotaLedger


class ExpansionService:
    def __init__(self, ledger: QuotaLedger, workflow: ExpansionWorkflow, settings: DictConfig) -> None:
        self._ledger = ledger
        self._workflow = workflow
        self.processing_time = settings.expansion.processing_time

    def submit(
        self, identity: str, fields: ExpansionRequestIn, user_agent: Optional[str] = None
    ) -> ExpansionRequestView:
        return self._workflow.submit(identity, fields, user_agent=user_agent).to_view()

    def cancel(self, identity: str) -> CancelResult:
        request = self._workflow.cancel(identity)
        return CancelResult(request_id=request.id, status=request.status)

    def get_status(self, identity: str) -> ExpansionStatusView:
        request = self._workflow.latest_for(identity)
        if request is None:
            raise NotFound("No expansion request found for this address.")
        return ExpansionStatusView(
            has_request=True,
            request=request.to_view(),
            current_usage=self._ledger.info(identity),
        )

    def list_history(self, identity: str, page: int = 1, per_page: int = 10) -> ExpansionHistory:
        result = self._workflow.history(identity, page, per_page)
        return ExpansionHistory(
            requests=[request.to_view() for request in result.items],
            pagination=result.pagination(),
            current_usage=self._ledger.info(identity),
        )

    def info(self, identity: str) -> ExpansionInfo:
        usage = self._ledger.info(identity)
        has_pending = self._workflow.pending_for(identity) is not None
        low = self._workflow.min_requested_limit
        high = self._workflow.max_requested_limit
        return ExpansionInfo(
            current_usage=usage,
            can_request=not has_pending and not usage.is_expanded,
            has_pending_request=has_pending,
            is_already_expanded=usage.is_expanded,
            min_requested_limit=low,
            max_requested_limit=high,
            min_justification_length=self._workflow.min_justification,
            processing_time=self.processing_time,
            requirements=[
                "A valid email address to receive the answer",
                "Full name",
                "Organization (optional)",
                f"Detailed justification (at least {self._workflow.min_justification} characters)",
                f"Requested limit between {low} and {high}",
            ],
        )

    def approve(self, request_id: str, notes: Optional[str] = None) -> ExpansionRequestView:
        return self._workflow.approve(request_id, notes).to_view()

    def reject(self, request_id: str, notes: Optional[str] = None) -> ExpansionRequestView:
        return self._workflow.reject(request_id, notes).to_view()
