from __future__ import annotations

import allure
import pytest
from support import ORG_ID, RecordingAggregator, StubProvider

from practice_analysis.queue.models import Scorecard
from practice_analysis.queue.services import AnalysisQueueService
from practice_analysis.queue.skill_gate import SkillProfileGate
from practice_analysis.queue.worker import AnalysisWorker

pytestmark = [
    allure.epic("Skill Profiles"),
    allure.feature("Skill Profile Gate"),
]


def test_repeated_attempts_of_one_scenario_update_profile_once(repository, seed_session) -> None:
    service = AnalysisQueueService(repository=repository)
    for index in range(5):
        seed_session(f"attempt-{index}", scenario_id="scenario-refund")
        # Distinct descending priorities make the earliest attempt run first.
        service.queue_analysis(f"attempt-{index}", ORG_ID, priority=10 - index)

    aggregator = RecordingAggregator()
    worker = AnalysisWorker(
        repository=repository,
        provider=StubProvider(),
        worker_id="worker-gate",
        skill_gate=SkillProfileGate(repository=repository, aggregator=aggregator),
    )

    summary = worker.run_loop()

    assert summary.succeeded == 5
    assert len(aggregator.calls) == 1
    assert aggregator.calls[0][2]["session_id"] == "attempt-0"


class _DeferredGate(SkillProfileGate):
    """Runs a callback once, just before the first gate decision."""

    def __init__(self, *, before_first_apply, **kwargs) -> None:
        super().__init__(**kwargs)
        self.before_first_apply = before_first_apply

    def apply(self, **kwargs) -> bool:
        callback, self.before_first_apply = self.before_first_apply, None
        if callback is not None:
            callback()
        return super().apply(**kwargs)


def test_interleaved_completions_of_one_scenario_update_profile_once(
    repository,
    seed_session,
) -> None:
    service = AnalysisQueueService(repository=repository)
    seed_session("first", scenario_id="scenario-refund")
    seed_session("second", scenario_id="scenario-refund")
    service.queue_analysis("first", ORG_ID, priority=9)
    service.queue_analysis("second", ORG_ID, priority=5)
    aggregator = RecordingAggregator()
    worker_b = AnalysisWorker(
        repository=repository,
        provider=StubProvider(),
        worker_id="worker-b",
        skill_gate=SkillProfileGate(repository=repository, aggregator=aggregator),
    )
    worker_a = AnalysisWorker(
        repository=repository,
        provider=StubProvider(),
        worker_id="worker-a",
        skill_gate=_DeferredGate(
            repository=repository,
            aggregator=aggregator,
            before_first_apply=worker_b.process_next,
        ),
    )

    worker_a.process_next()

    assert [call[2]["session_id"] for call in aggregator.calls] == ["first"]


def test_gate_runs_for_each_distinct_scenario(repository, seed_session) -> None:
    seed_session("a", scenario_id="scenario-1")
    seed_session("b", scenario_id="scenario-2")
    aggregator = RecordingAggregator()
    gate = SkillProfileGate(repository=repository, aggregator=aggregator)

    assert gate.apply(
        session_id="a",
        user_id="user-1",
        org_id=ORG_ID,
        scenario_id="scenario-1",
        categories={},
    )
    assert gate.apply(
        session_id="b",
        user_id="user-1",
        org_id=ORG_ID,
        scenario_id="scenario-2",
        categories={},
    )
    assert len(aggregator.calls) == 2


def test_gate_skips_sessions_without_user(repository) -> None:
    aggregator = RecordingAggregator()
    gate = SkillProfileGate(repository=repository, aggregator=aggregator)

    assert not gate.apply(
        session_id="anon",
        user_id=None,
        org_id=ORG_ID,
        scenario_id="scenario-1",
        categories={},
    )
    assert aggregator.calls == []


def test_gate_treats_missing_scenario_as_first_attempt(repository, seed_session) -> None:
    seed_session("earlier", scenario_id=None)
    repository.mark_session_completed(session_id="earlier", scorecard=Scorecard(overall_score=60))
    aggregator = RecordingAggregator()
    gate = SkillProfileGate(repository=repository, aggregator=aggregator)

    assert gate.apply(
        session_id="later",
        user_id="user-1",
        org_id=ORG_ID,
        scenario_id=None,
        categories={"communication": {"score": 80}},
    )
    assert aggregator.calls == [
        ("user-1", ORG_ID, {"session_id": "later", "categories": {"communication": {"score": 80}}}),
    ]


def test_gate_swallows_aggregation_errors(repository) -> None:
    gate = SkillProfileGate(
        repository=repository,
        aggregator=RecordingAggregator(error=ValueError("bad payload")),
    )

    assert not gate.apply(
        session_id="s1",
        user_id="user-1",
        org_id=ORG_ID,
        scenario_id="scenario-1",
        categories={},
    )
