"""
Tests for the expansion orchestrator.
"""

import logging

import pytest

from conftest import make_request_fields
from pdfa_backend.errors import NotFound
from pdfa_backend.models import ExpansionStatus
from pdfa_backend.notifier import LogNotifier, build_admin_message

IDENTITY = "203.0.113.7"


class TestStatus:
    """Tests for status and history views."""

    def test_status_without_request(self, expansions):
        with pytest.raises(NotFound):
            expansions.get_status(IDENTITY)

    def test_status_reports_latest_request(self, expansions):
        expansions.submit(IDENTITY, make_request_fields())
        status = expansions.get_status(IDENTITY)

        assert status.has_request is True
        assert status.request.status == ExpansionStatus.PENDING
        assert status.current_usage.daily_limit == 10

    def test_history(self, expansions, clock):
        expansions.submit(IDENTITY, make_request_fields())
        expansions.cancel(IDENTITY)
        clock.advance(minutes=1)
        expansions.submit(IDENTITY, make_request_fields())

        history = expansions.list_history(IDENTITY, page=1, per_page=1)
        assert history.pagination.total == 2
        assert history.pagination.last_page == 2
        assert len(history.requests) == 1
        assert history.requests[0].status == ExpansionStatus.PENDING


class TestInfo:
    """Tests for the eligibility overview."""

    def test_info_for_fresh_identity(self, expansions):
        info = expansions.info(IDENTITY)

        assert info.can_request is True
        assert info.has_pending_request is False
        assert info.is_already_expanded is False
        assert info.min_requested_limit == 11
        assert info.max_requested_limit == 10000
        assert info.min_justification_length == 50
        assert info.processing_time == "24 hours"
        assert any("between 11 and 10000" in line for line in info.requirements)

    def test_info_with_pending_request(self, expansions):
        expansions.submit(IDENTITY, make_request_fields())
        info = expansions.info(IDENTITY)
        assert info.can_request is False
        assert info.has_pending_request is True

    def test_info_after_approval(self, expansions):
        view = expansions.submit(IDENTITY, make_request_fields(requested_limit=500))
        approved = expansions.approve(view.id, "ok")

        info = expansions.info(IDENTITY)
        assert approved.status == ExpansionStatus.APPROVED
        assert info.is_already_expanded is True
        assert info.can_request is False
        assert info.current_usage.daily_limit == 500


class TestCancel:
    def test_cancel_returns_result(self, expansions):
        view = expansions.submit(IDENTITY, make_request_fields())
        result = expansions.cancel(IDENTITY)
        assert result.request_id == view.id
        assert result.status == ExpansionStatus.CANCELLED

    def test_reject(self, expansions):
        view = expansions.submit(IDENTITY, make_request_fields())
        rejected = expansions.reject(view.id, "Insufficient detail")
        assert rejected.status == ExpansionStatus.REJECTED
        assert rejected.admin_notes == "Insufficient detail"


class TestLogNotifier:
    """Tests for the log-based admin notification."""

    def test_notification_is_logged(self, workflow, caplog):
        request = workflow.submit(IDENTITY, make_request_fields(organization=None))
        with caplog.at_level(logging.INFO, logger="pdfa_backend.notifier"):
            LogNotifier("admin@example.com").notify_expansion_request(request)

        record = caplog.records[-1]
        assert "admin@example.com" in record.getMessage()
        assert record.request_id == request.id
        assert "Organization: Not provided" in build_admin_message(request)
        assert f"IP: {IDENTITY}" in record.notification
