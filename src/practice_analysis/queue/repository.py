"""Persistent job store, session store and result cache for the analysis queue."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, col, delete, select

from practice_analysis.queue.errors import SessionNotFoundError
from practice_analysis.queue.models import (
    AnalysisCacheView,
    AnalysisJobStatus,
    AnalysisJobView,
    QueueStats,
    ReapSummary,
    Scorecard,
    SessionAnalysisView,
    SessionContext,
)
from practice_analysis.storage.alembic_runner import upgrade_head
from practice_analysis.storage.common import (
    build_sqlite_engine,
    connect_sqlite_with_policy,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from practice_analysis.storage.sqlmodel_models import (
    AnalysisCacheEntry,
    AnalysisJob,
    Organization,
    TrainingSession,
)

logger = logging.getLogger(__name__)

DEFAULT_LEASE = timedelta(minutes=5)
LEASE_EXPIRED_ERROR = "Lease expired before the job finished (worker crashed or stalled)."

_PENDING = AnalysisJobStatus.PENDING.value
_PROCESSING = AnalysisJobStatus.PROCESSING.value
_COMPLETED = AnalysisJobStatus.COMPLETED.value
_FAILED = AnalysisJobStatus.FAILED.value


class AnalysisQueueRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every mutation is a single-row conditional write keyed by id. Nothing here
    wraps job, session and cache writes in one transaction; the worker orders
    those writes so that a crash between them leaves the job reclaimable.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        lease: timedelta = DEFAULT_LEASE,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.lease = lease
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._connection = connect_sqlite_with_policy(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self._connection.close()
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- organizations / sessions (owned outside the queue, seeded here) ----------

    def upsert_organization(
        self,
        *,
        org_id: str,
        name: str,
        industry: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            row = session.get(Organization, org_id)
            if row is None:
                row = Organization(org_id=org_id, name=name, created_at=utc_now())
            row.name = name
            row.industry = industry
            row.settings_json = dump_json(settings)
            session.add(row)
            session.commit()

    def create_training_session(  # noqa: PLR0913
        self,
        *,
        session_id: str,
        org_id: str,
        user_id: str | None = None,
        scenario_id: str | None = None,
        transcript: str | None = None,
        duration_seconds: int | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                TrainingSession(
                    session_id=session_id,
                    org_id=org_id,
                    user_id=user_id,
                    scenario_id=scenario_id,
                    transcript_raw=transcript,
                    duration_seconds=duration_seconds,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def get_session(self, *, session_id: str) -> SessionAnalysisView | None:
        with Session(self.engine) as session:
            row = session.get(TrainingSession, session_id)
            if row is None:
                return None
            return _to_session_view(row)

    def load_session_context(self, *, session_id: str) -> SessionContext:
        """Assemble transcript, organization and scenario context for the provider."""

        with Session(self.engine) as session:
            row = session.get(TrainingSession, session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            organization = session.get(Organization, row.org_id)

        organization_context: dict[str, Any] = {"org_id": row.org_id}
        if organization is not None:
            organization_context.update(
                name=organization.name,
                industry=organization.industry,
                settings=load_json(organization.settings_json, default={}),
            )
        scenario_context = None
        if row.scenario_id is not None:
            scenario_context = {
                "scenario_id": row.scenario_id,
                "name": row.scenario_id,
                "difficulty": "medium",
            }
        return SessionContext(
            session_id=row.session_id,
            org_id=row.org_id,
            user_id=row.user_id,
            scenario_id=row.scenario_id,
            transcript=row.transcript_raw or "",
            duration_seconds=row.duration_seconds,
            organization=organization_context,
            scenario=scenario_context,
        )

    def mark_session_pending(self, *, session_id: str) -> bool:
        return self._update_session(
            session_id,
            analysis_status=_PENDING,
            analysis_error=None,
        )

    def reset_session_for_retry(self, *, session_id: str) -> bool:
        """Put the session back to ``pending`` and drop every job row it owns."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TrainingSession)
                .where(col(TrainingSession.session_id) == session_id)
                .values(analysis_status=_PENDING, analysis_error=None)
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            deleted = session.exec(
                delete(AnalysisJob).where(col(AnalysisJob.session_id) == session_id),
            )
            session.commit()
        logger.info(
            "Session %s reset for retry; removed %d job row(s)",
            session_id,
            int(deleted.rowcount or 0),
        )
        return True

    def mark_session_processing(
        self,
        *,
        session_id: str,
        job_id: str | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """Mark the session processing; with ``job_id``/``worker_id`` only while that lock holds."""

        return self._update_session(
            session_id,
            _lock_held(job_id, worker_id),
            analysis_status=_PROCESSING,
            analysis_started_at=to_db_datetime(utc_now()),
        )

    def mark_session_completed(
        self,
        *,
        session_id: str,
        scorecard: Scorecard,
        job_id: str | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """Store the scorecard on the session; conditional on the job lock like processing."""

        return self._update_session(
            session_id,
            _lock_held(job_id, worker_id),
            analysis_status=_COMPLETED,
            analysis_completed_at=to_db_datetime(utc_now()),
            analysis_error=None,
            overall_score=scorecard.overall_score,
            category_scores_json=dump_json(scorecard.categories),
            strengths_json=dump_json(scorecard.strengths),
            improvements_json=dump_json(scorecard.improvements),
        )

    def mark_session_failed(self, *, session_id: str, error: str) -> bool:
        return self._update_session(
            session_id,
            analysis_status=_FAILED,
            analysis_error=error,
            analysis_retry_count=col(TrainingSession.analysis_retry_count) + 1,
        )

    def has_prior_completed_attempt(
        self,
        *,
        user_id: str,
        scenario_id: str,
        session_id: str,
    ) -> bool:
        """Whether another session of this (user, scenario) completed before this one.

        Completions are ordered by ``(analysis_completed_at, session_id)``, so of
        any set of completed attempts exactly one has no predecessor, however
        their gates interleave. A session that has not completed yet sorts last.
        """

        with Session(self.engine) as session:
            current = session.get(TrainingSession, session_id)
            completed_at = current.analysis_completed_at if current is not None else None
            statement = select(TrainingSession.session_id).where(
                TrainingSession.user_id == user_id,
                TrainingSession.scenario_id == scenario_id,
                TrainingSession.analysis_status == _COMPLETED,
                TrainingSession.session_id != session_id,
            )
            if completed_at is not None:
                statement = statement.where(
                    or_(
                        col(TrainingSession.analysis_completed_at) < completed_at,
                        and_(
                            col(TrainingSession.analysis_completed_at) == completed_at,
                            col(TrainingSession.session_id) < session_id,
                        ),
                    ),
                )
            prior = session.exec(statement.limit(1)).first()
        return prior is not None

    # -- job store ----------------------------------------------------------------

    def insert_job(self, *, session_id: str, org_id: str, priority: int) -> AnalysisJobView:
        """Create a pending job; repeated admission for one session is not rejected."""

        now = utc_now()
        with Session(self.engine) as session:
            row = AnalysisJob(
                job_id=str(uuid4()),
                session_id=session_id,
                org_id=org_id,
                priority=priority,
                status=_PENDING,
                queued_at=to_db_datetime(now),
                attempts=0,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next(self, *, worker_id: str) -> AnalysisJobView | None:
        """Atomically claim the highest-priority, oldest pending job.

        One ``UPDATE ... RETURNING`` statement selects and locks the row, so
        two workers can never observe and take the same pending job. A lost
        race returns ``None`` like an empty queue.
        """

        now = utc_now()
        next_pending = (
            select(AnalysisJob.job_id)
            .where(AnalysisJob.status == _PENDING)
            .order_by(
                col(AnalysisJob.priority).desc(),
                col(AnalysisJob.queued_at).asc(),
                col(AnalysisJob.job_id).asc(),
            )
            .limit(1)
            .correlate(None)
            .scalar_subquery()
        )
        with Session(self.engine) as session:
            claimed_id = session.exec(
                sa_update(AnalysisJob)
                .where(
                    col(AnalysisJob.job_id) == next_pending,
                    col(AnalysisJob.status) == _PENDING,
                )
                .values(
                    status=_PROCESSING,
                    locked_by=worker_id,
                    lock_expires_at=to_db_datetime(now + self.lease),
                    started_at=to_db_datetime(now),
                    completed_at=None,
                    attempts=col(AnalysisJob.attempts) + 1,
                )
                .returning(col(AnalysisJob.job_id))
                .execution_options(synchronize_session=False),
            ).scalar_one_or_none()
            if claimed_id is None:
                session.rollback()
                return None
            session.commit()
            claimed = session.get(AnalysisJob, claimed_id)
            if claimed is None:  # pragma: no cover - deleted between commit and read
                return None
            return _to_job_view(claimed)

    def complete_job(self, *, job_id: str, worker_id: str) -> bool:
        """Mark a job completed if this worker still holds its lock."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJob)
                .where(
                    col(AnalysisJob.job_id) == job_id,
                    col(AnalysisJob.status) == _PROCESSING,
                    col(AnalysisJob.locked_by) == worker_id,
                )
                .values(
                    status=_COMPLETED,
                    completed_at=to_db_datetime(now),
                    lock_expires_at=None,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail_job(self, *, job_id: str, worker_id: str, error: str) -> bool:
        """Mark a job failed if this worker still holds its lock."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJob)
                .where(
                    col(AnalysisJob.job_id) == job_id,
                    col(AnalysisJob.status) == _PROCESSING,
                    col(AnalysisJob.locked_by) == worker_id,
                )
                .values(
                    status=_FAILED,
                    last_error=error,
                    completed_at=to_db_datetime(now),
                    lock_expires_at=None,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get_job(self, *, job_id: str) -> AnalysisJobView | None:
        with Session(self.engine) as session:
            row = session.get(AnalysisJob, job_id)
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: AnalysisJobStatus | None = None,
        session_id: str | None = None,
        limit: int = 50,
    ) -> list[AnalysisJobView]:
        """List recent jobs, newest first."""

        with Session(self.engine) as session:
            statement = select(AnalysisJob)
            if status is not None:
                statement = statement.where(AnalysisJob.status == status.value)
            if session_id is not None:
                statement = statement.where(AnalysisJob.session_id == session_id)
            statement = statement.order_by(
                col(AnalysisJob.queued_at).desc(),
                col(AnalysisJob.job_id).desc(),
            ).limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def queue_position(self, *, session_id: str) -> int | None:
        """1-based rank of the session's pending job under the claim ordering."""

        with Session(self.engine) as session:
            pending = session.exec(
                select(AnalysisJob.session_id)
                .where(AnalysisJob.status == _PENDING)
                .order_by(
                    col(AnalysisJob.priority).desc(),
                    col(AnalysisJob.queued_at).asc(),
                    col(AnalysisJob.job_id).asc(),
                ),
            ).all()
        for index, pending_session_id in enumerate(pending, start=1):
            if pending_session_id == session_id:
                return index
        return None

    def queue_stats(self, *, org_id: str, recent: int = 10) -> QueueStats:
        """Per-organization job counts plus the mean duration of the newest cache entries.

        The duration window spans the whole cache, not just this organization.
        """

        with Session(self.engine) as session:
            counts = dict(
                session.exec(
                    select(AnalysisJob.status, func.count())
                    .where(
                        AnalysisJob.org_id == org_id,
                        col(AnalysisJob.status).in_([_PENDING, _PROCESSING, _FAILED]),
                    )
                    .group_by(AnalysisJob.status),
                ).all(),
            )
            durations = session.exec(
                select(AnalysisCacheEntry.analysis_duration_ms)
                .order_by(col(AnalysisCacheEntry.cached_at).desc())
                .limit(recent),
            ).all()
        average = round(sum(durations) / len(durations)) if durations else None
        return QueueStats(
            pending=counts.get(_PENDING, 0),
            processing=counts.get(_PROCESSING, 0),
            failed=counts.get(_FAILED, 0),
            average_duration_ms=average,
        )

    # -- retry / cleanup / reaper -------------------------------------------------

    def retry_failed_jobs(self, *, max_retries: int) -> int:
        """Reset failed jobs under the retry budget back to pending."""

        with Session(self.engine) as session:
            candidates = session.exec(
                select(AnalysisJob).where(
                    AnalysisJob.status == _FAILED,
                    AnalysisJob.attempts < max_retries,
                ),
            ).all()
            targets = [(row.job_id, row.session_id) for row in candidates]

        reset = 0
        for job_id, session_id in targets:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(AnalysisJob)
                    .where(
                        col(AnalysisJob.job_id) == job_id,
                        col(AnalysisJob.status) == _FAILED,
                        col(AnalysisJob.attempts) < max_retries,
                    )
                    .values(
                        status=_PENDING,
                        last_error=None,
                        locked_by=None,
                        lock_expires_at=None,
                        started_at=None,
                        completed_at=None,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
            self.mark_session_pending(session_id=session_id)
            reset += 1
        return reset

    def cleanup_old_jobs(self, *, days_old: int, now: datetime | None = None) -> int:
        """Delete completed jobs whose ``completed_at`` is older than the cutoff."""

        cutoff = (now or utc_now()) - timedelta(days=days_old)
        with Session(self.engine) as session:
            result = session.exec(
                delete(AnalysisJob).where(
                    col(AnalysisJob.status) == _COMPLETED,
                    col(AnalysisJob.completed_at) < to_db_datetime(cutoff),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def reap_expired_leases(
        self,
        *,
        max_attempts: int,
        now: datetime | None = None,
    ) -> ReapSummary:
        """Demote ``processing`` jobs whose lease has expired.

        Jobs with attempts left go back to ``pending``; exhausted ones are
        failed so they stop cycling. Each demotion re-checks the expired-lease
        predicate, so a worker that completes in the meantime wins.
        """

        db_now = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            expired = session.exec(
                select(AnalysisJob).where(
                    AnalysisJob.status == _PROCESSING,
                    col(AnalysisJob.lock_expires_at) < db_now,
                ),
            ).all()
            targets = [(row.job_id, row.session_id, row.attempts) for row in expired]

        requeued = 0
        failed = 0
        for job_id, session_id, attempts in targets:
            exhausted = attempts >= max_attempts
            values: dict[str, Any] = {"locked_by": None, "lock_expires_at": None}
            if exhausted:
                values.update(status=_FAILED, last_error=LEASE_EXPIRED_ERROR, completed_at=db_now)
            else:
                values.update(status=_PENDING, started_at=None)
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(AnalysisJob)
                    .where(
                        col(AnalysisJob.job_id) == job_id,
                        col(AnalysisJob.status) == _PROCESSING,
                        col(AnalysisJob.lock_expires_at) < db_now,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
            if exhausted:
                self.mark_session_failed(session_id=session_id, error=LEASE_EXPIRED_ERROR)
                failed += 1
            else:
                self.mark_session_pending(session_id=session_id)
                requeued += 1
            logger.warning(
                "Reaped expired lease: job_id=%s session_id=%s attempts=%d -> %s",
                job_id,
                session_id,
                attempts,
                _FAILED if exhausted else _PENDING,
            )
        return ReapSummary(requeued=requeued, failed=failed)

    # -- result cache -------------------------------------------------------------

    def upsert_cache_entry(
        self,
        *,
        session_id: str,
        scorecard: Scorecard,
        model_used: str | None,
        analysis_duration_ms: int,
    ) -> None:
        """Insert or overwrite the cached scorecard; last successful write wins."""

        values = {
            "session_id": session_id,
            "overall_score": scorecard.overall_score,
            "category_scores_json": dump_json(scorecard.categories),
            "summary": scorecard.summary,
            "strengths_json": dump_json(scorecard.strengths),
            "improvements_json": dump_json(scorecard.improvements),
            "key_moment_json": dump_json(scorecard.key_moment),
            "next_steps_json": dump_json(scorecard.next_steps),
            "model_used": model_used,
            "analysis_duration_ms": analysis_duration_ms,
            "cached_at": to_db_datetime(utc_now()),
        }
        statement = sqlite_insert(AnalysisCacheEntry).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=["session_id"],
            set_={key: value for key, value in values.items() if key != "session_id"},
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()

    def get_cache_entry(self, *, session_id: str) -> AnalysisCacheView | None:
        with Session(self.engine) as session:
            row = session.get(AnalysisCacheEntry, session_id)
            return _to_cache_view(row) if row is not None else None

    def _update_session(
        self,
        session_id: str,
        condition: ColumnElement[bool] | None = None,
        **values: Any,
    ) -> bool:
        with Session(self.engine) as session:
            statement = sa_update(TrainingSession).where(
                col(TrainingSession.session_id) == session_id,
            )
            if condition is not None:
                statement = statement.where(condition)
            result = session.exec(
                statement.values(**values)
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _lock_held(job_id: str | None, worker_id: str | None) -> ColumnElement[bool] | None:
    if job_id is None or worker_id is None:
        return None
    return (
        select(AnalysisJob.job_id)
        .where(
            AnalysisJob.job_id == job_id,
            AnalysisJob.status == _PROCESSING,
            AnalysisJob.locked_by == worker_id,
        )
        .exists()
    )


def _to_job_view(row: AnalysisJob) -> AnalysisJobView:
    return AnalysisJobView(
        job_id=row.job_id,
        session_id=row.session_id,
        org_id=row.org_id,
        priority=row.priority,
        status=AnalysisJobStatus(row.status),
        queued_at=to_utc_aware_datetime(row.queued_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        locked_by=row.locked_by,
        lock_expires_at=optional_utc(row.lock_expires_at),
        attempts=row.attempts,
        last_error=row.last_error,
    )


def _to_session_view(row: TrainingSession) -> SessionAnalysisView:
    return SessionAnalysisView(
        session_id=row.session_id,
        org_id=row.org_id,
        user_id=row.user_id,
        scenario_id=row.scenario_id,
        analysis_status=(
            AnalysisJobStatus(row.analysis_status) if row.analysis_status is not None else None
        ),
        analysis_started_at=optional_utc(row.analysis_started_at),
        analysis_completed_at=optional_utc(row.analysis_completed_at),
        analysis_error=row.analysis_error,
        analysis_retry_count=row.analysis_retry_count,
        overall_score=row.overall_score,
        category_scores=load_json(row.category_scores_json),  # type: ignore[arg-type]
        strengths=load_json(row.strengths_json),  # type: ignore[arg-type]
        improvements=load_json(row.improvements_json),  # type: ignore[arg-type]
    )


def _to_cache_view(row: AnalysisCacheEntry) -> AnalysisCacheView:
    return AnalysisCacheView(
        session_id=row.session_id,
        overall_score=row.overall_score,
        category_scores=load_json(row.category_scores_json, default={}),  # type: ignore[arg-type]
        summary=row.summary,
        strengths=load_json(row.strengths_json, default=[]),  # type: ignore[arg-type]
        improvements=load_json(row.improvements_json, default=[]),  # type: ignore[arg-type]
        key_moment=load_json(row.key_moment_json),  # type: ignore[arg-type]
        next_steps=load_json(row.next_steps_json, default=[]),  # type: ignore[arg-type]
        model_used=row.model_used,
        analysis_duration_ms=row.analysis_duration_ms,
        cached_at=to_utc_aware_datetime(row.cached_at),
    )
