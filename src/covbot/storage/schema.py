"""Typed records persisted by the coverage store.

Repositories and coverage files are plain records with a small amount of
lifecycle behaviour.  Jobs are a tagged union: :class:`AnalysisJob` and
:class:`ImprovementJob` share the :class:`JobBase` envelope (status, progress,
timestamps) and each owns only its own completion transition.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from ..errors import InvalidTransitionError


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False, validate_assignment=False)


class JobStatus(str, Enum):
    """Lifecycle states shared by both job variants."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


_TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class JobType(str, Enum):
    ANALYSIS = "analysis"
    IMPROVEMENT = "improvement"


class AiProvider(str, Enum):
    """Code-generation agents the improvement pipeline can drive."""

    CLAUDE = "claude"
    OPENAI = "openai"


class CoverageFileStatus(str, Enum):
    """Per-file improvement lifecycle."""

    PENDING = "pending"
    IMPROVING = "improving"
    IMPROVED = "improved"


CANCELLED_MESSAGE = "Cancelled by user"

_GITHUB_URL_RE = re.compile(
    r"^(?:https?://(?:[^@/]+@)?github\.com/|git@github\.com:|ssh://git@github\.com/)"
    r"(?P<owner>[A-Za-z0-9_.-]+)/(?P<name>[A-Za-z0-9_.-]+?)(?:\.git)?/?$"
)


def parse_github_url(url: str) -> tuple[str, str]:
    """Return ``(owner, name)`` for a GitHub clone URL (https or ssh form)."""

    match = _GITHUB_URL_RE.match(url.strip())
    if not match:
        raise ValueError(f"Not a GitHub repository URL: {url}")
    return match.group("owner"), match.group("name")


def round_percentage(value: float) -> float:
    """Clamp to ``[0, 100]`` and keep one decimal of precision."""

    clamped = min(max(float(value), 0.0), 100.0)
    return round(clamped, 1)


class Repository(RecordModel):
    """A tracked repository/branch pair."""

    id: str = Field(default_factory=new_id)
    url: str
    owner: str
    name: str
    branch: str = "main"
    default_branch: str = "main"
    last_analyzed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_url(cls, url: str, branch: str | None = None) -> "Repository":
        owner, name = parse_github_url(url)
        branch_name = branch or "main"
        return cls(url=url, owner=owner, name=name, branch=branch_name, default_branch=branch_name)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def mark_analyzed(self) -> None:
        self.last_analyzed_at = utc_now()


class CoverageFile(RecordModel):
    """Coverage state for one source file of a repository."""

    id: str = Field(default_factory=new_id)
    repository_id: str
    path: str
    coverage_percentage: float = 0.0
    uncovered_lines: List[int] = Field(default_factory=list)
    status: CoverageFileStatus = CoverageFileStatus.PENDING
    project_dir: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("coverage_percentage")
    @classmethod
    def _round_percentage(cls, value: float) -> float:
        return round_percentage(value)

    def update_coverage(self, percentage: float, uncovered_lines: List[int]) -> None:
        self.coverage_percentage = round_percentage(percentage)
        self.uncovered_lines = list(uncovered_lines)
        self.updated_at = utc_now()

    def mark_improving(self) -> None:
        if self.status == CoverageFileStatus.IMPROVING:
            raise InvalidTransitionError(f"Coverage file {self.path} is already being improved")
        self.status = CoverageFileStatus.IMPROVING
        self.updated_at = utc_now()

    def mark_improved(self, percentage: float, uncovered_lines: List[int]) -> None:
        if self.status != CoverageFileStatus.IMPROVING:
            raise InvalidTransitionError(
                f"Cannot mark {self.path} improved from status {self.status.value}"
            )
        self.update_coverage(percentage, uncovered_lines)
        self.status = CoverageFileStatus.IMPROVED

    def reset_to_pending(self) -> None:
        self.status = CoverageFileStatus.PENDING
        self.updated_at = utc_now()


class JobBase(RecordModel):
    """Envelope shared by both job variants."""

    id: str = Field(default_factory=new_id)
    repository_id: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def start(self) -> None:
        self._transition_to(JobStatus.RUNNING)
        self.progress = 0

    def update_progress(self, progress: int) -> None:
        if self.status != JobStatus.RUNNING:
            raise InvalidTransitionError(
                f"Cannot update progress for job {self.id} in status {self.status.value}"
            )
        if progress < 0 or progress > 100:
            raise ValueError(f"Progress must be between 0 and 100, got {progress}")
        self.progress = progress
        self.updated_at = utc_now()

    def fail(self, message: str) -> None:
        self._transition_to(JobStatus.FAILED)
        self.error = message

    def cancel(self) -> None:
        """Cancellation is recorded as a failure with a fixed message."""
        self.fail(CANCELLED_MESSAGE)

    def _complete(self) -> None:
        self._transition_to(JobStatus.COMPLETED)
        self.progress = 100

    def _transition_to(self, new_status: JobStatus) -> None:
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Invalid status transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.updated_at = utc_now()


class AnalysisJob(JobBase):
    """Clone a repository, measure coverage, store per-file results."""

    type: Literal["analysis"] = "analysis"
    repository_url: str
    branch: str = "main"
    files_found: int = 0
    files_below_threshold: int = 0

    def complete_analysis(self, files_found: int, files_below_threshold: int) -> None:
        self._complete()
        self.files_found = files_found
        self.files_below_threshold = files_below_threshold


class ImprovementJob(JobBase):
    """Ask an agent for tests covering one or more files and open a PR."""

    type: Literal["improvement"] = "improvement"
    file_ids: List[str] = Field(min_length=1)
    file_paths: List[str] = Field(default_factory=list)
    ai_provider: AiProvider = AiProvider.CLAUDE
    pr_url: Optional[str] = None
    attempts: int = 0

    @property
    def file_count(self) -> int:
        return len(self.file_ids)

    def complete_improvement(self, pr_url: str) -> None:
        if not pr_url.startswith("https://"):
            raise ValueError(f"Pull request URL must be https, got {pr_url!r}")
        self._complete()
        self.pr_url = pr_url


Job = Annotated[Union[AnalysisJob, ImprovementJob], Field(discriminator="type")]

JOB_ADAPTER: TypeAdapter[AnalysisJob | ImprovementJob] = TypeAdapter(Job)


__all__ = [
    "AiProvider",
    "AnalysisJob",
    "CANCELLED_MESSAGE",
    "CoverageFile",
    "CoverageFileStatus",
    "ImprovementJob",
    "JOB_ADAPTER",
    "Job",
    "JobBase",
    "JobStatus",
    "JobType",
    "Repository",
    "parse_github_url",
    "round_percentage",
    "utc_now",
]
