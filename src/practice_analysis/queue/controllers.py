"""Controllers for analysis queue CLI commands."""

from __future__ import annotations

import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from practice_analysis.config import Settings
from practice_analysis.queue.models import AnalysisJobStatus, WorkerRunSummary
from practice_analysis.queue.pool import WorkerPool
from practice_analysis.queue.provider import AnalysisProvider, AnthropicAnalysisProvider
from practice_analysis.queue.repository import AnalysisQueueRepository
from practice_analysis.queue.services import AnalysisQueueService
from practice_analysis.queue.skill_gate import SkillProfileGate
from practice_analysis.queue.worker import AnalysisWorker
from practice_analysis.skills.aggregation import SqlSkillAggregationService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI input for admitting one session."""

    db_path: Path | None
    session_id: str
    org_id: str
    priority: int | None


@dataclass(slots=True)
class QueueStatusCommand:
    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueRetryCommand:
    db_path: Path | None
    max_retries: int | None


@dataclass(slots=True)
class QueueRetrySessionCommand:
    db_path: Path | None
    session_id: str
    org_id: str
    priority: int


@dataclass(slots=True)
class QueueStatsCommand:
    db_path: Path | None
    org_id: str


@dataclass(slots=True)
class QueueCleanupCommand:
    db_path: Path | None
    days: int | None


@dataclass(slots=True)
class QueueReapCommand:
    db_path: Path | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None
    pool: bool = False
    pool_size: int | None = None


class AnalysisQueueCliController:
    """Coordinates admission, inspection, maintenance and worker CLI operations."""

    def __init__(
        self,
        *,
        provider_factory: Callable[[Settings], AnalysisProvider] | None = None,
    ) -> None:
        self._provider_factory = provider_factory or _build_provider

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = AnalysisQueueService(
                repository=repository,
                default_priority=settings.queue.default_priority,
            )
            job = service.queue_analysis(command.session_id, command.org_id, command.priority)
            position = repository.queue_position(session_id=command.session_id)
        return [
            f"Job queued: job_id={job.job_id} session_id={job.session_id} "
            f"priority={job.priority} status={job.status.value}",
            f"Queue position: {position if position is not None else '-'}",
        ]

    def status(self, command: QueueStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            view = AnalysisQueueService(repository=repository).get_status(command.session_id)

        lines = [
            f"Session: {view.session_id}",
            f"Status: {view.status.value if view.status else '-'}",
            f"Started: {view.started_at.isoformat() if view.started_at else '-'}",
            f"Completed: {view.completed_at.isoformat() if view.completed_at else '-'}",
            f"Error: {view.error or '-'}",
        ]
        if view.queue_position is not None:
            lines.append(f"Queue position: {view.queue_position}")
        if view.results is not None:
            results = view.results
            lines.extend(
                [
                    f"Overall score: {results.overall_score}",
                    f"Summary: {results.summary or '-'}",
                    f"Model: {results.model_used or '-'}",
                ],
            )
            for name, category in sorted(results.category_scores.items()):
                lines.append(f"  {name}: {category.get('score', '-')}")
            for step in results.next_steps:
                lines.append(f"  next: {step}")
        return lines

    def list_jobs(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = AnalysisQueueService(repository=repository).list_jobs(
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} session={job.session_id} status={job.status.value} "
                f"priority={job.priority} attempts={job.attempts} "
                f"queued_at={job.queued_at.isoformat()} locked_by={job.locked_by or '-'}",
            )
            if job.last_error:
                lines.append(f"    error: {job.last_error}")
        return lines

    def retry_failed(self, command: QueueRetryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        max_retries = (
            command.max_retries if command.max_retries is not None else settings.queue.max_retries
        )
        with _repository(settings) as repository:
            count = AnalysisQueueService(repository=repository).retry_failed_jobs(max_retries)
        return [f"Failed jobs reset to pending: {count} (max_retries={max_retries})"]

    def retry_session(self, command: QueueRetrySessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = AnalysisQueueService(repository=repository).retry_session(
                command.session_id,
                command.org_id,
                command.priority,
            )
            position = repository.queue_position(session_id=command.session_id)
        return [
            f"Analysis re-queued: job_id={job.job_id} session_id={job.session_id} "
            f"priority={job.priority}",
            f"Queue position: {position if position is not None else '-'}",
        ]

    def stats(self, command: QueueStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = AnalysisQueueService(repository=repository).queue_stats(command.org_id)
        average = stats.average_duration_ms
        return [
            f"Organization: {command.org_id}",
            f"Pending: {stats.pending}",
            f"Processing: {stats.processing}",
            f"Failed: {stats.failed}",
            f"Average duration: {f'{average}ms' if average is not None else '-'}",
        ]

    def cleanup(self, command: QueueCleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        days = command.days if command.days is not None else settings.queue.cleanup_days
        with _repository(settings) as repository:
            count = AnalysisQueueService(repository=repository).cleanup_old_jobs(days)
        return [f"Completed jobs deleted: {count} (older than {days} days)"]

    def reap(self, command: QueueReapCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            summary = AnalysisQueueService(repository=repository).reap_expired_leases(
                settings.queue.max_retries,
            )
        return [f"Expired leases: requeued={summary.requeued} failed={summary.failed}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        settings.validate_for_provider()
        provider = self._provider_factory(settings)
        aggregator = SqlSkillAggregationService(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        try:
            with _repository(settings) as repository:
                gate = SkillProfileGate(repository=repository, aggregator=aggregator)

                def _worker(worker_id: str) -> AnalysisWorker:
                    return AnalysisWorker(
                        repository=repository,
                        provider=provider,
                        worker_id=worker_id,
                        skill_gate=gate,
                        min_transcript_chars=settings.queue.min_transcript_chars,
                        max_attempts=settings.queue.max_retries,
                        reap_before_claim=settings.worker.reap_before_claim,
                        poll_interval_seconds=settings.worker.poll_interval_seconds,
                    )

                if command.pool or command.pool_size is not None:
                    summary = self._run_pool(command, settings=settings, worker_factory=_worker)
                else:
                    worker = _worker(settings.worker.worker_id)
                    if command.once:
                        summary = worker.run_once()
                    else:
                        with _signal_handlers(worker.request_stop):
                            summary = worker.run_loop(
                                max_jobs=command.max_jobs,
                                max_idle_polls=(
                                    command.max_idle_polls
                                    if command.max_idle_polls is not None
                                    else settings.worker.max_idle_polls
                                ),
                            )
        finally:
            aggregator.close()
            close = getattr(provider, "close", None)
            if callable(close):
                close()

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} insufficient_data={summary.insufficient_data} "
            f"lease_lost={summary.lease_lost} idle_polls={summary.idle_polls}",
        ]

    @staticmethod
    def _run_pool(
        command: WorkerRunCommand,
        *,
        settings: Settings,
        worker_factory: Callable[[str], AnalysisWorker],
    ) -> WorkerRunSummary:
        pool = WorkerPool(
            worker_factory=worker_factory,
            size=command.pool_size or settings.worker.pool_size,
            worker_id_prefix=settings.worker.worker_id,
            poll_interval_seconds=settings.worker.poll_interval_seconds,
        )
        with _signal_handlers(pool.stop):
            pool.start()
            try:
                pool.join()
            finally:
                pool.stop()
        return pool.summary


def _parse_status(value: str | None) -> AnalysisJobStatus | None:
    if value is None:
        return None
    return AnalysisJobStatus(value.strip().lower())


def _build_provider(settings: Settings) -> AnalysisProvider:
    return AnthropicAnalysisProvider(
        api_key=settings.provider.api_key or "",
        model=settings.provider.model,
        base_url=settings.provider.base_url,
        max_tokens=settings.provider.max_tokens,
        timeout_seconds=settings.provider.timeout_seconds,
        max_retries=settings.provider.max_retries,
    )


@contextmanager
def _signal_handlers(on_stop: Callable[[], None]) -> Iterator[None]:
    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, stopping after the current job", name)
        on_stop()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        installed = True
    except ValueError:
        # Signal handlers can only be installed in main thread.
        installed = False
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


@contextmanager
def _repository(settings: Settings) -> Iterator[AnalysisQueueRepository]:
    repository = AnalysisQueueRepository(
        settings.db_path,
        lease=timedelta(seconds=settings.queue.lease_seconds),
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
