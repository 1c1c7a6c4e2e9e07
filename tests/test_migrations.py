from pathlib import Path

import allure
import pytest

from practice_analysis.queue.repository import AnalysisQueueRepository

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = AnalysisQueueRepository(tmp_path / "migrations.db")
    repository.init_schema()

    row = repository._connection.execute(
        "SELECT version_num FROM alembic_version LIMIT 1"
    ).fetchone()
    assert row is not None
    assert str(row["version_num"]) == "20261019_0001"

    tables = repository._connection.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type = 'table'
          AND name IN ('organizations', 'training_sessions', 'analysis_jobs',
                       'analysis_cache', 'skill_profiles', 'skill_history')
        ORDER BY name
        """
    ).fetchall()
    assert [str(row["name"]) for row in tables] == [
        "analysis_cache",
        "analysis_jobs",
        "organizations",
        "skill_history",
        "skill_profiles",
        "training_sessions",
    ]

    claim_index = repository._connection.execute(
        "SELECT name FROM sqlite_master WHERE type = 'index' AND name = 'idx_analysis_jobs_queue'"
    ).fetchone()
    assert claim_index is not None
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    for _ in range(2):
        repository = AnalysisQueueRepository(db_path)
        repository.init_schema()
        repository.close()

    repository = AnalysisQueueRepository(db_path)
    versions = repository._connection.execute("SELECT version_num FROM alembic_version").fetchall()
    repository.close()
    assert len(versions) == 1


def test_sqlite_policy_uses_wal_and_foreign_keys(tmp_path: Path) -> None:
    repository = AnalysisQueueRepository(tmp_path / "policy.db")
    repository.init_schema()

    journal_mode = repository._connection.execute("PRAGMA journal_mode").fetchone()[0]
    foreign_keys = repository._connection.execute("PRAGMA foreign_keys").fetchone()[0]
    repository.close()

    assert str(journal_mode).lower() == "wal"
    assert foreign_keys == 1
