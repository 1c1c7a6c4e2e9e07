"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from support import LONG_TRANSCRIPT, ORG_ID

from practice_analysis.queue.repository import AnalysisQueueRepository


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "analysis.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[AnalysisQueueRepository]:
    repo = AnalysisQueueRepository(db_path)
    repo.init_schema()
    repo.upsert_organization(org_id=ORG_ID, name="Acme Support", industry="telecom")
    yield repo
    repo.close()


@pytest.fixture()
def seed_session(repository: AnalysisQueueRepository) -> Callable[..., str]:
    """Create a training session; returns its id."""

    def _seed(
        session_id: str,
        *,
        user_id: str | None = "user-1",
        scenario_id: str | None = "scenario-billing",
        transcript: str | None = LONG_TRANSCRIPT,
    ) -> str:
        repository.create_training_session(
            session_id=session_id,
            org_id=ORG_ID,
            user_id=user_id,
            scenario_id=scenario_id,
            transcript=transcript,
            duration_seconds=240,
        )
        return session_id

    return _seed
