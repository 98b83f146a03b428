"""
Admin notifications for new expansion requests.

Delivery is fire-and-forget: the expansion workflow logs and drops any
exception raised here.
"""

from __future__ import annotations

import logging

from .records import ExpansionRequest

logger = logging.getLogger(__name__)


def build_admin_message(request: ExpansionRequest) -> str:
    return (
        "New daily limit expansion request:\n\n"
        f"Request ID: {request.id}\n"
        f"Name: {request.contact_name}\n"
        f"Email: {request.contact_email}\n"
        f"Organization: {request.organization or 'Not provided'}\n"
        f"IP: {request.identity}\n"
        f"Requested limit: {request.requested_limit} conversions/day\n"
        f"Justification: {request.justification}\n\n"
        f"Submitted at: {request.created_at:%Y-%m-%d %H:%M:%S} UTC\n"
    )


class LogNotifier:
    """Delivers admin alerts as log records."""

    def __init__(self, admin_email: str) -> None:
        self.admin_email = admin_email

    def notify_expansion_request(self, request: ExpansionRequest) -> None:
        logger.info(
            f"Expansion request notification for {self.admin_email}",
            extra={
                "request_id": request.id,
                "contact_email": request.contact_email,
                "requested_limit": request.requested_limit,
                "notification": build_admin_message(request),
            },
        )
