"""
Plain data records returned by the repositories.

These dataclasses are the internal representation of persisted state. They
carry no persistence behaviour; every mutation goes through the quota ledger,
job tracker or expansion workflow.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Generic, List, Optional, TypeVar

from .models import (
    ExpansionRequestView,
    ExpansionStatus,
    JobDetail,
    JobStatus,
    JobSummary,
    Pagination,
    UsageInfo,
)
from .utils import last_page

T = TypeVar("T")

NEAR_LIMIT_PERCENTAGE = 80.0


@dataclass
class QuotaRecord:
    """
    Conversion counter for one identity on one UTC day.

    Attributes:
        identity: Client IP address
        usage_date: UTC calendar date the counter applies to
        consumed: Conversions used on that day
        limit: Maximum conversions for that day (default or expanded)
        expanded: Whether an approved expansion is in effect
        expanded_at: When the expansion was applied
        expires_at: When the expansion lapses; set iff ``expanded``
    """

    identity: str
    usage_date: date
    consumed: int
    limit: int
    expanded: bool = False
    expanded_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.consumed)

    def expansion_expired(self, now: datetime) -> bool:
        return self.expanded and self.expires_at is not None and self.expires_at < now

    def expansion_active(self, now: datetime) -> bool:
        return self.expanded and not self.expansion_expired(now)

    @property
    def usage_percentage(self) -> float:
        if self.limit <= 0:
            return 0.0
        return round(self.consumed / self.limit * 100, 2)

    def to_usage_info(self) -> UsageInfo:
        return UsageInfo(
            usage_date=self.usage_date,
            conversions_used_today=self.consumed,
            daily_limit=self.limit,
            remaining_conversions=self.remaining,
            is_expanded=self.expanded,
            expansion_expires_at=self.expires_at,
            usage_percentage=self.usage_percentage,
            at_limit=self.consumed >= self.limit,
            near_limit=self.usage_percentage >= NEAR_LIMIT_PERCENTAGE,
        )


@dataclass
class ConversionJob:
    """
    One file's conversion attempt.

    ``converted_name``/``converted_size`` are set iff the job completed and
    ``error`` is set iff it failed.
    """

    id: str
    identity: str
    original_name: str
    original_size: int
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    original_key: Optional[str] = None
    converted_name: Optional[str] = None
    converted_key: Optional[str] = None
    converted_size: Optional[int] = None
    error: Optional[str] = None
    processing_duration_ms: Optional[int] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    user_agent: Optional[str] = None

    def to_summary(self) -> JobSummary:
        return JobSummary(
            id=self.id,
            status=self.status,
            original_filename=self.original_name,
            original_size=self.original_size,
            converted_filename=self.converted_name,
            converted_size=self.converted_size,
            processing_time_ms=self.processing_duration_ms,
            error_message=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
            download_available=self.status == JobStatus.COMPLETED and bool(self.converted_key),
        )

    def to_detail(self) -> JobDetail:
        return JobDetail(**self.to_summary().model_dump(), metadata=self.metadata)


@dataclass
class ExpansionRequest:
    id: str
    identity: str
    contact_email: str
    contact_name: str
    justification: str
    requested_limit: int
    status: ExpansionStatus
    created_at: datetime
    updated_at: datetime
    organization: Optional[str] = None
    admin_notes: Optional[str] = None
    processed_at: Optional[datetime] = None
    user_agent: Optional[str] = None

    def to_view(self) -> ExpansionRequestView:
        return ExpansionRequestView(
            id=self.id,
            status=self.status,
            contact_email=self.contact_email,
            contact_name=self.contact_name,
            organization=self.organization,
            requested_limit=self.requested_limit,
            admin_notes=self.admin_notes,
            created_at=self.created_at,
            updated_at=self.updated_at,
            processed_at=self.processed_at,
        )


@dataclass
class Page(Generic[T]):
    items: List[T]
    page: int
    per_page: int
    total: int

    @property
    def last_page(self) -> int:
        return last_page(self.total, self.per_page)

    def pagination(self) -> Pagination:
        return Pagination(
            current_page=self.page,
            last_page=self.last_page,
            per_page=self.per_page,
            total=self.total,
        )


@dataclass
class UploadedPdf:
    """An uploaded file handed to the conversion service."""

    filename: str
    content: bytes
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class ConvertedFile:
    filename: str
    size: int
    content: bytes
