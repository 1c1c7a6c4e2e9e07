"""Queue worker that scores training sessions via the analysis provider."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from practice_analysis.queue.errors import PersistenceError
from practice_analysis.queue.models import (
    AnalysisJobView,
    AnalysisRequest,
    Scorecard,
    SessionContext,
    WorkerRunSummary,
)
from practice_analysis.queue.provider import AnalysisProvider
from practice_analysis.queue.repository import AnalysisQueueRepository
from practice_analysis.queue.scorecard import (
    extract_scorecard,
    insufficient_data_scorecard,
    is_insufficient_transcript,
)
from practice_analysis.queue.skill_gate import SkillProfileGate

logger = logging.getLogger(__name__)

DEFAULT_MIN_TRANSCRIPT_CHARS = 50


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    INSUFFICIENT_DATA = "insufficient_data"
    LEASE_LOST = "lease_lost"


class SessionContextLoader(Protocol):
    def load_session_context(self, *, session_id: str) -> SessionContext:
        """Load transcript and organization/scenario context for one session."""


class AnalysisWorker:
    """Claims pending analysis jobs and processes them one at a time.

    The drain loop is iterative: after each job the worker claims again until
    the queue is empty, then idles for ``poll_interval_seconds``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: AnalysisQueueRepository,
        provider: AnalysisProvider,
        worker_id: str,
        skill_gate: SkillProfileGate | None = None,
        context_loader: SessionContextLoader | None = None,
        min_transcript_chars: int = DEFAULT_MIN_TRANSCRIPT_CHARS,
        max_attempts: int = 3,
        reap_before_claim: bool = True,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.worker_id = worker_id
        self.skill_gate = skill_gate
        self.context_loader = context_loader or repository
        self.min_transcript_chars = min_transcript_chars
        self.max_attempts = max_attempts
        self.reap_before_claim = reap_before_claim
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = threading.Event()

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def process_next(self) -> JobOutcome | None:
        """Claim and process one job; ``None`` when nothing is pending.

        Job failures are recorded on the job and session, then re-raised.
        """

        job = self.claim()
        if job is None:
            return None
        return self.process_job(job)

    def claim(self) -> AnalysisJobView | None:
        with _persistence_guard("claim next job"):
            if self.reap_before_claim:
                self.repository.reap_expired_leases(max_attempts=self.max_attempts)
            return self.repository.claim_next(worker_id=self.worker_id)

    def process_job(self, job: AnalysisJobView) -> JobOutcome:
        logger.info(
            "Processing analysis job %s for session %s (attempt %d, worker %s)",
            job.job_id,
            job.session_id,
            job.attempts,
            self.worker_id,
        )
        started = time.monotonic()
        try:
            with _persistence_guard("mark session processing"):
                self.repository.mark_session_processing(
                    session_id=job.session_id,
                    job_id=job.job_id,
                    worker_id=self.worker_id,
                )
            with _persistence_guard("load session context"):
                context = self.context_loader.load_session_context(session_id=job.session_id)

            scorecard, model_used, outcome = self._score(context)
            duration_ms = int((time.monotonic() - started) * 1000)

            with _persistence_guard("write result cache"):
                self.repository.upsert_cache_entry(
                    session_id=job.session_id,
                    scorecard=scorecard,
                    model_used=model_used,
                    analysis_duration_ms=duration_ms,
                )
            with _persistence_guard("mark session completed"):
                self.repository.mark_session_completed(
                    session_id=job.session_id,
                    scorecard=scorecard,
                    job_id=job.job_id,
                    worker_id=self.worker_id,
                )
            with _persistence_guard("mark job completed"):
                completed = self.repository.complete_job(
                    job_id=job.job_id,
                    worker_id=self.worker_id,
                )
        except Exception as error:
            self._record_failure(job=job, error=error)
            raise

        if not completed:
            logger.warning(
                "Analysis job %s lost its lease before completion; skipping side effects",
                job.job_id,
            )
            return JobOutcome.LEASE_LOST

        logger.info(
            "Completed analysis job %s in %dms (%s)",
            job.job_id,
            duration_ms,
            outcome.value,
        )
        if self.skill_gate is not None:
            self.skill_gate.apply(
                session_id=context.session_id,
                user_id=context.user_id,
                org_id=context.org_id,
                scenario_id=context.scenario_id,
                categories=scorecard.categories,
            )
        return outcome

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job, logging instead of raising job failures."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        try:
            job = self.claim()
        except PersistenceError:
            logger.exception("Claim failed (worker_id=%s)", self.worker_id)
            summary.idle_polls = 1
            return summary
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            outcome = self.process_job(job)
        except Exception:
            logger.exception(
                "Analysis job %s failed for session %s",
                job.job_id,
                job.session_id,
            )
            summary.failed = 1
            return summary

        if outcome is JobOutcome.LEASE_LOST:
            summary.lease_lost = 1
        else:
            summary.succeeded = 1
            if outcome is JobOutcome.INSUFFICIENT_DATA:
                summary.insufficient_data = 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Drain the queue until idle, stopped, or ``max_jobs`` processed.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Consecutive empty polls before returning
                (None = keep polling until stopped).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        while not self.stop_requested:
            if max_jobs is not None and aggregate.processed >= max_jobs:
                break

            summary = self.run_once()
            aggregate.add(summary)
            if summary.processed:
                consecutive_idle = 0
                continue

            consecutive_idle += 1
            if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                break
            self._stop.wait(self.poll_interval_seconds)
        return aggregate

    def _score(self, context: SessionContext) -> tuple[Scorecard, str | None, JobOutcome]:
        if is_insufficient_transcript(context.transcript, min_chars=self.min_transcript_chars):
            logger.info(
                "Session %s transcript below %d chars; skipping provider",
                context.session_id,
                self.min_transcript_chars,
            )
            return insufficient_data_scorecard(), None, JobOutcome.INSUFFICIENT_DATA

        result = self.provider.analyze(
            AnalysisRequest(
                transcript=context.transcript,
                session_context={
                    "session_id": context.session_id,
                    "user_id": context.user_id,
                    "scenario_id": context.scenario_id,
                    "duration_seconds": context.duration_seconds,
                },
                organization_context=context.organization,
                scenario_context=context.scenario,
            ),
        )
        return extract_scorecard(result.text), result.model, JobOutcome.SUCCEEDED

    def _record_failure(self, *, job: AnalysisJobView, error: Exception) -> None:
        message = str(error) or type(error).__name__
        try:
            recorded = self.repository.fail_job(
                job_id=job.job_id,
                worker_id=self.worker_id,
                error=message,
            )
            if not recorded:
                logger.warning(
                    "Analysis job %s failed after losing its lease; job and session left untouched",
                    job.job_id,
                )
                return
            self.repository.mark_session_failed(session_id=job.session_id, error=message)
        except SQLAlchemyError:
            logger.exception("Could not record failure for analysis job %s", job.job_id)


@contextmanager
def _persistence_guard(step: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as error:
        raise PersistenceError(f"Store write failed during {step}: {error}") from error
