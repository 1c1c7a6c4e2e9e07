"""Domain models for the analysis job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple


class AnalysisJobStatus(str, Enum):
    """Durable job lifecycle states, mirrored on the session's ``analysis_status``."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class AnalysisJobView:
    """Readable job view for services, CLI and worker logic."""

    job_id: str
    session_id: str
    org_id: str
    priority: int
    status: AnalysisJobStatus
    queued_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    locked_by: str | None
    lock_expires_at: datetime | None
    attempts: int
    last_error: str | None


@dataclass(slots=True)
class Scorecard:
    """Structured coaching result for one session."""

    overall_score: int
    categories: dict[str, dict[str, Any]] = field(default_factory=dict)
    strengths: list[Any] = field(default_factory=list)
    improvements: list[Any] = field(default_factory=list)
    key_moment: dict[str, Any] | None = None
    summary: str = ""
    next_steps: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AnalysisCacheView:
    """Result cache entry keyed by session."""

    session_id: str
    overall_score: int
    category_scores: dict[str, dict[str, Any]]
    summary: str
    strengths: list[Any]
    improvements: list[Any]
    key_moment: dict[str, Any] | None
    next_steps: list[str]
    model_used: str | None
    analysis_duration_ms: int
    cached_at: datetime


@dataclass(slots=True)
class SessionAnalysisView:
    """Analysis-related fields of one training session."""

    session_id: str
    org_id: str
    user_id: str | None
    scenario_id: str | None
    analysis_status: AnalysisJobStatus | None
    analysis_started_at: datetime | None
    analysis_completed_at: datetime | None
    analysis_error: str | None
    analysis_retry_count: int
    overall_score: int | None
    category_scores: dict[str, dict[str, Any]] | None
    strengths: list[Any] | None
    improvements: list[Any] | None


@dataclass(slots=True)
class SessionContext:
    """Everything the provider needs to score one session."""

    session_id: str
    org_id: str
    user_id: str | None
    scenario_id: str | None
    transcript: str
    duration_seconds: int | None
    organization: dict[str, Any] = field(default_factory=dict)
    scenario: dict[str, Any] | None = None


@dataclass(slots=True)
class AnalysisRequest:
    """Provider request payload."""

    transcript: str
    session_context: dict[str, Any]
    organization_context: dict[str, Any]
    scenario_context: dict[str, Any] | None


@dataclass(slots=True)
class ProviderResult:
    """Raw provider output before scorecard extraction."""

    text: str
    model: str


@dataclass(slots=True)
class AnalysisStatusView:
    """Polling view returned to the HTTP layer."""

    session_id: str
    status: AnalysisJobStatus | None
    started_at: datetime | None
    completed_at: datetime | None
    error: str | None
    queue_position: int | None = None
    results: AnalysisCacheView | None = None


class ReapSummary(NamedTuple):
    requeued: int
    failed: int


@dataclass(slots=True)
class QueueStats:
    """Operator snapshot of one organization's queue."""

    pending: int
    processing: int
    failed: int
    average_duration_ms: int | None


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    insufficient_data: int = 0
    lease_lost: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.insufficient_data += other.insufficient_data
        self.lease_lost += other.lease_lost
        self.idle_polls += other.idle_polls
