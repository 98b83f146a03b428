from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return not _JOB_TRANSITIONS[self]

    def can_transition_to(self, target: "JobStatus") -> bool:
        return target in _JOB_TRANSITIONS[self]


_JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class ExpansionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not _EXPANSION_TRANSITIONS[self]

    def can_transition_to(self, target: "ExpansionStatus") -> bool:
        return target in _EXPANSION_TRANSITIONS[self]


_EXPANSION_TRANSITIONS: Dict[ExpansionStatus, FrozenSet[ExpansionStatus]] = {
    ExpansionStatus.PENDING: frozenset(
        {ExpansionStatus.APPROVED, ExpansionStatus.REJECTED, ExpansionStatus.CANCELLED}
    ),
    ExpansionStatus.APPROVED: frozenset(),
    ExpansionStatus.REJECTED: frozenset(),
    ExpansionStatus.CANCELLED: frozenset(),
}


class UsageInfo(BaseModel):
    usage_date: date
    conversions_used_today: int
    daily_limit: int
    remaining_conversions: int
    is_expanded: bool
    expansion_expires_at: Optional[datetime] = None
    usage_percentage: float
    at_limit: bool
    near_limit: bool


class UsageCheck(BaseModel):
    can_convert: bool
    message: str
    usage_info: UsageInfo


class JobSummary(BaseModel):
    id: str
    status: JobStatus
    original_filename: str
    original_size: int
    converted_filename: Optional[str] = None
    converted_size: Optional[int] = None
    processing_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    download_available: bool = False


class JobDetail(JobSummary):
    metadata: Dict[str, str] = Field(default_factory=dict)


class FileError(BaseModel):
    filename: str
    message: str
    job_id: Optional[str] = None


class BatchResult(BaseModel):
    success: bool
    completed_count: int
    failed_count: int
    jobs: List[JobSummary]
    errors: List[FileError]
    usage: UsageInfo


class Pagination(BaseModel):
    current_page: int
    last_page: int
    per_page: int
    total: int


class JobHistory(BaseModel):
    conversions: List[JobSummary]
    pagination: Pagination


class UserStats(BaseModel):
    daily_usage: UsageInfo
    total_conversions: int
    today_conversions: int


class ExpansionRequestIn(BaseModel):
    contact_email: EmailStr
    contact_name: str = Field(min_length=1, max_length=255)
    organization: Optional[str] = Field(default=None, max_length=255)
    justification: str
    requested_limit: int

    @field_validator("contact_email", mode="before")
    @classmethod
    def _normalize_email(cls, value: object) -> object:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("contact_name", "justification", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @field_validator("organization", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


class ExpansionRequestView(BaseModel):
    id: str
    status: ExpansionStatus
    contact_email: str
    contact_name: str
    organization: Optional[str] = None
    requested_limit: int
    admin_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None


class ExpansionStatusView(BaseModel):
    has_request: bool
    request: ExpansionRequestView
    current_usage: UsageInfo


class ExpansionHistory(BaseModel):
    requests: List[ExpansionRequestView]
    pagination: Pagination
    current_usage: UsageInfo


class ExpansionInfo(BaseModel):
    current_usage: UsageInfo
    can_request: bool
    has_pending_request: bool
    is_already_expanded: bool
    min_requested_limit: int
    max_requested_limit: int
    min_justification_length: int
    processing_time: str
    requirements: List[str]


class CancelResult(BaseModel):
    request_id: str
    status: ExpansionStatus


class AdminDecision(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2000)


class ProcessingEstimate(BaseModel):
    estimated_time_ms: int
    estimated_time_human: str
    complexity: str
    factors: List[str]


class SupportedFormats(BaseModel):
    extensions: List[str]
    mime_types: List[str]
    max_file_size_kb: int
    max_files_per_batch: int
    output_format: str


class PdfValidation(BaseModel):
    is_valid: bool
    can_convert: bool
    is_pdf_a: bool
    pdf_version: Optional[str] = None
    issues: List[str]
    recommendations: List[str]
    estimated_time_ms: int


class PdfACompliance(BaseModel):
    is_pdf_a: bool
    pdf_a_level: Optional[str] = None
    compliance_score: int
    compliance_details: List[str]
    non_compliant_elements: List[str]
    recommendations: List[str]
