from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy.exc import OperationalError
from support import (
    LONG_TRANSCRIPT,
    ORG_ID,
    SCORECARD_PAYLOAD,
    RecordingAggregator,
    StubProvider,
)

from practice_analysis.queue.errors import PersistenceError, ProviderError
from practice_analysis.queue.models import AnalysisJobStatus, SessionContext
from practice_analysis.queue.repository import AnalysisQueueRepository
from practice_analysis.queue.scorecard import INSUFFICIENT_DATA_SUMMARY
from practice_analysis.queue.services import AnalysisQueueService
from practice_analysis.queue.skill_gate import SkillProfileGate
from practice_analysis.queue.worker import AnalysisWorker, JobOutcome

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Analysis Worker"),
]


def _worker(
    repository: AnalysisQueueRepository,
    provider: StubProvider,
    aggregator: RecordingAggregator | None = None,
    **overrides,
) -> AnalysisWorker:
    gate = SkillProfileGate(repository=repository, aggregator=aggregator or RecordingAggregator())
    return AnalysisWorker(
        repository=repository,
        provider=provider,
        worker_id=overrides.pop("worker_id", "worker-test"),
        skill_gate=gate,
        poll_interval_seconds=0.01,
        **overrides,
    )


def test_worker_completes_job_and_status_exposes_cached_results(repository, seed_session) -> None:
    seed_session("s1")
    service = AnalysisQueueService(repository=repository)
    job = service.queue_analysis("s1", ORG_ID)
    provider = StubProvider()
    aggregator = RecordingAggregator()

    summary = _worker(repository, provider, aggregator).run_loop()

    assert summary.processed == 1
    assert summary.succeeded == 1
    assert summary.failed == 0

    status = service.get_status("s1")
    assert status.status == AnalysisJobStatus.COMPLETED
    assert status.completed_at is not None
    assert status.queue_position is None
    assert status.results == repository.get_cache_entry(session_id="s1")
    assert status.results is not None
    assert status.results.overall_score == SCORECARD_PAYLOAD["overall_score"]
    assert status.results.category_scores == SCORECARD_PAYLOAD["categories"]
    assert status.results.model_used == "stub-model"

    stored_job = repository.get_job(job_id=job.job_id)
    assert stored_job is not None
    assert stored_job.status == AnalysisJobStatus.COMPLETED
    assert stored_job.attempts == 1

    session = repository.get_session(session_id="s1")
    assert session is not None
    assert session.overall_score == 78
    assert session.strengths == SCORECARD_PAYLOAD["strengths"]

    assert len(provider.requests) == 1
    request = provider.requests[0]
    assert request.transcript == LONG_TRANSCRIPT
    assert request.organization_context["name"] == "Acme Support"
    assert request.scenario_context is not None

    assert len(aggregator.calls) == 1
    user_id, org_id, payload = aggregator.calls[0]
    assert (user_id, org_id) == ("user-1", ORG_ID)
    assert payload == {"session_id": "s1", "categories": SCORECARD_PAYLOAD["categories"]}


def test_short_transcript_is_scored_without_provider_call(repository, seed_session) -> None:
    seed_session("short", transcript="Hi, bye!!!")
    AnalysisQueueService(repository=repository).queue_analysis("short", ORG_ID)
    provider = StubProvider()

    outcome = _worker(repository, provider).process_next()

    assert outcome is JobOutcome.INSUFFICIENT_DATA
    assert provider.requests == []
    entry = repository.get_cache_entry(session_id="short")
    assert entry is not None
    assert entry.overall_score == 0
    assert entry.category_scores == {}
    assert entry.summary == INSUFFICIENT_DATA_SUMMARY
    assert len(entry.next_steps) == 1
    assert entry.model_used is None
    session = repository.get_session(session_id="short")
    assert session is not None
    assert session.analysis_status == AnalysisJobStatus.COMPLETED


def test_missing_transcript_counts_as_insufficient(repository, seed_session) -> None:
    seed_session("empty", transcript=None)
    AnalysisQueueService(repository=repository).queue_analysis("empty", ORG_ID)

    summary = _worker(repository, StubProvider()).run_once()

    assert summary.succeeded == 1
    assert summary.insufficient_data == 1


def test_provider_failure_marks_job_and_session_failed_and_reraises(
    repository,
    seed_session,
) -> None:
    seed_session("s1")
    job = AnalysisQueueService(repository=repository).queue_analysis("s1", ORG_ID)
    aggregator = RecordingAggregator()
    worker = _worker(
        repository,
        StubProvider([ProviderError("Analysis provider returned HTTP 529: overloaded")]),
        aggregator,
    )

    with pytest.raises(ProviderError, match="529"):
        worker.process_next()

    stored = repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == AnalysisJobStatus.FAILED
    assert stored.last_error == "Analysis provider returned HTTP 529: overloaded"
    assert stored.completed_at is not None

    session = repository.get_session(session_id="s1")
    assert session is not None
    assert session.analysis_status == AnalysisJobStatus.FAILED
    assert session.analysis_error == "Analysis provider returned HTTP 529: overloaded"
    assert session.analysis_retry_count == 1
    assert repository.get_cache_entry(session_id="s1") is None
    assert aggregator.calls == []


def test_unparseable_provider_output_fails_job(repository, seed_session) -> None:
    seed_session("s1")
    job = AnalysisQueueService(repository=repository).queue_analysis("s1", ORG_ID)

    with pytest.raises(ProviderError):
        _worker(repository, StubProvider(["I cannot score this call."])).process_next()

    stored = repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == AnalysisJobStatus.FAILED


def test_store_failure_is_wrapped_as_persistence_error(repository, seed_session) -> None:
    seed_session("s1")
    job = AnalysisQueueService(repository=repository).queue_analysis("s1", ORG_ID)

    class _BrokenLoader:
        def load_session_context(self, *, session_id: str) -> SessionContext:
            raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    worker = _worker(repository, StubProvider(), context_loader=_BrokenLoader())

    with pytest.raises(PersistenceError, match="load session context"):
        worker.process_next()

    stored = repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == AnalysisJobStatus.FAILED


def test_loop_keeps_claiming_after_a_failed_job(repository, seed_session) -> None:
    service = AnalysisQueueService(repository=repository)
    seed_session("first", scenario_id="scenario-a")
    seed_session("second", scenario_id="scenario-b")
    service.queue_analysis("first", ORG_ID, priority=9)
    service.queue_analysis("second", ORG_ID, priority=1)

    summary = _worker(repository, StubProvider([ProviderError("timeout")])).run_loop()

    assert summary.processed == 2
    assert summary.failed == 1
    assert summary.succeeded == 1
    assert service.get_status("first").status == AnalysisJobStatus.FAILED
    assert service.get_status("second").status == AnalysisJobStatus.COMPLETED


def test_loop_respects_max_jobs(repository, seed_session) -> None:
    service = AnalysisQueueService(repository=repository)
    for index in range(3):
        seed_session(f"s-{index}")
        service.queue_analysis(f"s-{index}", ORG_ID)

    summary = _worker(repository, StubProvider()).run_loop(max_jobs=2)

    assert summary.processed == 2
    assert len(repository.list_jobs(status=AnalysisJobStatus.PENDING)) == 1


def test_lost_lease_skips_skill_profile_update(repository, seed_session) -> None:
    seed_session("s1")
    job = AnalysisQueueService(repository=repository).queue_analysis("s1", ORG_ID)

    class _StealingProvider(StubProvider):
        def analyze(self, request):
            repository._connection.execute(
                "UPDATE analysis_jobs SET locked_by = 'other-worker' WHERE job_id = ?",
                (job.job_id,),
            )
            repository._connection.commit()
            return super().analyze(request)

    aggregator = RecordingAggregator()
    summary = _worker(repository, _StealingProvider(), aggregator).run_once()

    assert summary.lease_lost == 1
    assert summary.succeeded == 0
    assert aggregator.calls == []
    stored = repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == AnalysisJobStatus.PROCESSING
    assert stored.locked_by == "other-worker"
    session = repository.get_session(session_id="s1")
    assert session is not None
    assert session.analysis_status == AnalysisJobStatus.PROCESSING
    assert session.overall_score is None


def test_stale_worker_failure_leaves_reclaimed_result_alone(repository, seed_session) -> None:
    seed_session("s1")
    job = AnalysisQueueService(repository=repository).queue_analysis("s1", ORG_ID)
    aggregator = RecordingAggregator()
    fresh = _worker(repository, StubProvider(), aggregator, worker_id="fresh")

    class _StalledProvider(StubProvider):
        def analyze(self, request):
            repository.reap_expired_leases(
                max_attempts=3,
                now=datetime.now(tz=UTC) + timedelta(minutes=6),
            )
            assert fresh.process_next() is JobOutcome.SUCCEEDED
            raise ProviderError("Analysis provider timed out")

    stale = _worker(repository, _StalledProvider(), aggregator, worker_id="stale")

    with pytest.raises(ProviderError):
        stale.process_next()

    stored = repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == AnalysisJobStatus.COMPLETED
    assert stored.locked_by == "fresh"
    session = repository.get_session(session_id="s1")
    assert session is not None
    assert session.analysis_status == AnalysisJobStatus.COMPLETED
    assert session.analysis_error is None
    assert session.analysis_retry_count == 0
    assert len(aggregator.calls) == 1


def test_skill_profile_failure_does_not_fail_job(repository, seed_session) -> None:
    seed_session("s1")
    job = AnalysisQueueService(repository=repository).queue_analysis("s1", ORG_ID)
    aggregator = RecordingAggregator(error=RuntimeError("profile store offline"))

    outcome = _worker(repository, StubProvider(), aggregator).process_next()

    assert outcome is JobOutcome.SUCCEEDED
    assert len(aggregator.calls) == 1
    stored = repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == AnalysisJobStatus.COMPLETED


def test_stopped_worker_does_not_claim(repository, seed_session) -> None:
    seed_session("s1")
    AnalysisQueueService(repository=repository).queue_analysis("s1", ORG_ID)
    worker = _worker(repository, StubProvider())
    worker.request_stop()

    summary = worker.run_loop()

    assert summary.processed == 0
    assert len(repository.list_jobs(status=AnalysisJobStatus.PENDING)) == 1


def test_idle_loop_polls_until_limit(repository) -> None:
    summary = _worker(repository, StubProvider()).run_loop(max_idle_polls=3)

    assert summary.processed == 0
    assert summary.idle_polls == 3
