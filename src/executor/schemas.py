"""Executor-side schemas for generation requests, job records, and polling.

GenerationRequest is what a caller submits. JobRecord is what the result
store persists and the status reader returns. Credentials travel on the
request only and are excluded from every serialization.
"""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,128}$")

DEFAULT_BACKEND = "gemini"


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def new_request_id() -> str:
    return f"req-{uuid.uuid4().hex}"


def validate_request_id(request_id: str) -> str:
    """Reject identifiers that are unsafe as file names or table keys."""
    if not isinstance(request_id, str) or not REQUEST_ID_PATTERN.match(request_id):
        raise ValueError(
            "request_id must be 1-128 characters of letters, digits, '-' or '_'"
        )
    return request_id


class JobStatus(str, Enum):
    """Job lifecycle states."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class ProjectDetails(BaseModel):
    """Project description used to build the prompt. Opaque to the executor."""

    model_config = ConfigDict(extra="allow", frozen=True)

    project_name: str = Field(..., min_length=1)
    project_type: str = ""
    project_goal: str = ""
    features: str = ""
    tech_stack: str = ""


# Category key -> human title, in display order
DOCUMENT_CATEGORIES: dict[str, str] = {
    "requirements": "Requirements Document",
    "frontend_guidelines": "Frontend Guidelines",
    "backend_structure": "Backend Structure",
    "app_flow": "Application Flow",
    "tech_stack_doc": "Technology Stack",
    "system_prompts": "System Prompts",
    "file_structure": "File Structure",
}


class DocumentSelection(BaseModel):
    """Which documentation categories to generate."""

    model_config = ConfigDict(frozen=True)

    requirements: bool = False
    frontend_guidelines: bool = False
    backend_structure: bool = False
    app_flow: bool = False
    tech_stack_doc: bool = False
    system_prompts: bool = False
    file_structure: bool = False

    @model_validator(mode="after")
    def _at_least_one(self) -> "DocumentSelection":
        if not self.selected():
            raise ValueError("Select at least one document category")
        return self

    def selected(self) -> list[str]:
        """Selected category keys, in display order."""
        return [key for key in DOCUMENT_CATEGORIES if getattr(self, key)]


class GenerationRequest(BaseModel):
    """Immutable description of a generation job."""

    model_config = ConfigDict(frozen=True)

    project_details: ProjectDetails
    selected_docs: DocumentSelection
    backend: str = Field(default=DEFAULT_BACKEND, description="Backend hint")
    model: Optional[str] = Field(default=None, description="Model override")
    credentials: SecretStr = Field(..., exclude=True, repr=False)
    request_id: Optional[str] = Field(
        default=None,
        description="Caller-supplied identifier; generated when omitted",
    )

    @field_validator("request_id")
    @classmethod
    def _check_request_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return validate_request_id(value)

    @field_validator("backend")
    @classmethod
    def _normalize_backend(cls, value: str) -> str:
        return (value or DEFAULT_BACKEND).strip().lower()


class Section(BaseModel):
    """One titled section of the generated documentation."""

    title: str
    content: str


class TokenUsage(BaseModel):
    """Best-effort token accounting."""

    input: int = 0
    output: int = 0
    total: int = 0


class JobError(BaseModel):
    """Structured failure cause stored on a failed record."""

    kind: str
    message: str
    backend: Optional[str] = None
    model: Optional[str] = None
    attempts: int = 0


class JobProgress(BaseModel):
    """Intermediate status line while a job is processing."""

    message: str = ""
    attempt: int = 0
    backend: Optional[str] = None
    model: Optional[str] = None


class JobRecord(BaseModel):
    """Persisted job state. Created once, finalized once."""

    request_id: str
    status: JobStatus = JobStatus.PROCESSING
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    project_name: str = ""
    categories: list[str] = Field(default_factory=list)
    backend_used: Optional[str] = None
    model_used: Optional[str] = None
    raw_content: Optional[str] = None
    sections: Optional[list[Section]] = None
    error: Optional[JobError] = None
    tokens_used: Optional[TokenUsage] = None
    processing_time_ms: Optional[int] = None
    progress: Optional[JobProgress] = None
    attempts: int = 0

    @model_validator(mode="after")
    def _status_matches_payload(self) -> "JobRecord":
        has_result = self.raw_content is not None and self.sections is not None
        if self.status == JobStatus.COMPLETED:
            if not has_result or self.error is not None:
                raise ValueError("completed record needs raw_content and sections, and no error")
        elif self.status == JobStatus.FAILED:
            if self.error is None or self.raw_content is not None:
                raise ValueError("failed record needs an error and no result")
        else:
            if self.error is not None or self.raw_content is not None or self.sections is not None:
                raise ValueError("processing record carries neither result nor error")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SubmissionResponse(BaseModel):
    """Returned immediately by submit, before any backend call."""

    request_id: str
    status: JobStatus = JobStatus.PROCESSING
    message: str = ""
    estimated_time_seconds: int = 0
    status_check_url: str = ""


class StatusResponse(BaseModel):
    """Response for job status polling."""

    request_id: str
    status: JobStatus
    message: str
    progress: Optional[JobProgress] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[JobError] = None
    tokens_used: Optional[TokenUsage] = None
    processing_time_ms: Optional[int] = None
    backend_used: Optional[str] = None
    model_used: Optional[str] = None
    timestamp: str
