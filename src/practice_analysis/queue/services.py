"""Use-case services for the analysis queue."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from practice_analysis.queue.errors import AdmissionError, SessionNotFoundError
from practice_analysis.queue.models import (
    AnalysisJobStatus,
    AnalysisJobView,
    AnalysisStatusView,
    QueueStats,
    ReapSummary,
)
from practice_analysis.queue.pool import NullWaker, QueueWaker
from practice_analysis.queue.repository import AnalysisQueueRepository

logger = logging.getLogger(__name__)

RETRY_PRIORITY = 8


class AnalysisQueueService:
    """Admission, status polling and maintenance on top of the queue repository."""

    def __init__(
        self,
        *,
        repository: AnalysisQueueRepository,
        waker: QueueWaker | None = None,
        default_priority: int = 5,
    ) -> None:
        self.repository = repository
        self.waker = waker or NullWaker()
        self.default_priority = default_priority

    def queue_analysis(
        self,
        session_id: str,
        org_id: str,
        priority: int | None = None,
    ) -> AnalysisJobView:
        """Mark the session pending, insert a pending job and nudge the workers.

        Returns as soon as the job row is durable; processing happens later.
        Repeated admission for one session is accepted and yields another job.
        """

        effective_priority = self.default_priority if priority is None else priority
        if isinstance(effective_priority, bool) or not isinstance(effective_priority, int):
            raise AdmissionError(f"Priority must be an integer, got {effective_priority!r}.")
        try:
            found = self.repository.mark_session_pending(session_id=session_id)
            if not found:
                raise AdmissionError(f"Cannot queue analysis: session not found: {session_id}")
            job = self.repository.insert_job(
                session_id=session_id,
                org_id=org_id,
                priority=effective_priority,
            )
        except SQLAlchemyError as error:
            raise AdmissionError(f"Cannot queue analysis for {session_id}: {error}") from error

        logger.info(
            "Queued analysis job %s for session %s (priority=%d)",
            job.job_id,
            session_id,
            effective_priority,
        )
        self._wake()
        return job

    def get_status(self, session_id: str) -> AnalysisStatusView:
        """Polling view: queue position while pending, cached results once completed."""

        session = self.repository.get_session(session_id=session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        view = AnalysisStatusView(
            session_id=session.session_id,
            status=session.analysis_status,
            started_at=session.analysis_started_at,
            completed_at=session.analysis_completed_at,
            error=session.analysis_error,
        )
        if session.analysis_status is AnalysisJobStatus.PENDING:
            view.queue_position = self.repository.queue_position(session_id=session_id)
            if view.queue_position is None:
                # Claimed, but the worker has not marked the session yet.
                latest = self.repository.list_jobs(session_id=session_id, limit=1)
                if latest and latest[0].status is AnalysisJobStatus.PROCESSING:
                    view.status = AnalysisJobStatus.PROCESSING
                    view.started_at = latest[0].started_at
        elif session.analysis_status is AnalysisJobStatus.COMPLETED:
            view.results = self.repository.get_cache_entry(session_id=session_id)
        return view

    def list_jobs(
        self,
        *,
        status: AnalysisJobStatus | None = None,
        limit: int = 50,
    ) -> list[AnalysisJobView]:
        return self.repository.list_jobs(status=status, limit=limit)

    def queue_stats(self, org_id: str) -> QueueStats:
        return self.repository.queue_stats(org_id=org_id)

    def retry_session(
        self,
        session_id: str,
        org_id: str,
        priority: int = RETRY_PRIORITY,
    ) -> AnalysisJobView:
        """Re-run one session from scratch, ahead of default-priority work.

        Every earlier job row for the session is deleted first. A worker still
        holding one of those rows loses its lease and leaves the session alone.
        """

        try:
            found = self.repository.reset_session_for_retry(session_id=session_id)
        except SQLAlchemyError as error:
            raise AdmissionError(f"Cannot retry analysis for {session_id}: {error}") from error
        if not found:
            raise SessionNotFoundError(session_id)
        return self.queue_analysis(session_id, org_id, priority)

    def retry_failed_jobs(self, max_retries: int = 3) -> int:
        count = self.repository.retry_failed_jobs(max_retries=max_retries)
        logger.info("Reset %d failed analysis job(s) to pending", count)
        if count:
            self._wake()
        return count

    def cleanup_old_jobs(self, days_old: int = 7) -> int:
        count = self.repository.cleanup_old_jobs(days_old=days_old)
        logger.info("Deleted %d completed analysis job(s) older than %d days", count, days_old)
        return count

    def reap_expired_leases(self, max_attempts: int = 3) -> ReapSummary:
        summary = self.repository.reap_expired_leases(max_attempts=max_attempts)
        if summary.requeued or summary.failed:
            logger.info(
                "Lease reaper: requeued=%d failed=%d",
                summary.requeued,
                summary.failed,
            )
        if summary.requeued:
            self._wake()
        return summary

    def _wake(self) -> None:
        try:
            self.waker.wake()
        except Exception:  # noqa: BLE001
            logger.warning("Worker wake-up failed; jobs stay pending until the next poll", exc_info=True)
