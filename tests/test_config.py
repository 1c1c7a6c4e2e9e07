from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from practice_analysis.config import Settings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("PRACTICE_ANALYSIS_") or name == "ANTHROPIC_API_KEY":
            monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)

    settings = Settings.from_env()

    assert settings.db_path == Path(".practice_analysis.db")
    assert settings.queue.lease_seconds == 300
    assert settings.queue.default_priority == 5
    assert settings.queue.max_retries == 3
    assert settings.queue.cleanup_days == 7
    assert settings.queue.min_transcript_chars == 50
    assert settings.worker.worker_id.startswith("worker-")
    assert settings.worker.reap_before_claim is True
    assert settings.provider.api_key is None
    assert settings.provider.model == "claude-sonnet-4-20250514"
    settings.validate()


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("PRACTICE_ANALYSIS_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("PRACTICE_ANALYSIS_LEASE_SECONDS", "60")
    monkeypatch.setenv("PRACTICE_ANALYSIS_WORKER_ID", "worker-blue")
    monkeypatch.setenv("PRACTICE_ANALYSIS_WORKER_POOL_SIZE", "4")
    monkeypatch.setenv("PRACTICE_ANALYSIS_WORKER_REAP_BEFORE_CLAIM", "off")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-fallback")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.queue.lease_seconds == 60
    assert settings.worker.worker_id == "worker-blue"
    assert settings.worker.pool_size == 4
    assert settings.worker.reap_before_claim is False
    assert settings.provider.api_key == "sk-fallback"


def test_explicit_db_path_wins(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PRACTICE_ANALYSIS_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_prefixed_api_key_beats_anthropic_key(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("PRACTICE_ANALYSIS_API_KEY", "sk-primary")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-fallback")

    assert Settings.from_env().provider.api_key == "sk-primary"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PRACTICE_ANALYSIS_WORKER_REAP_BEFORE_CLAIM", "maybe")

    with pytest.raises(ValueError, match="REAP_BEFORE_CLAIM"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PRACTICE_ANALYSIS_LEASE_SECONDS", "0"),
        ("PRACTICE_ANALYSIS_MAX_RETRIES", "-1"),
        ("PRACTICE_ANALYSIS_WORKER_POOL_SIZE", "0"),
        ("PRACTICE_ANALYSIS_WORKER_POLL_INTERVAL_SECONDS", "0"),
    ],
)
def test_validate_rejects_out_of_range_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=name):
        Settings.from_env().validate()


def test_provider_validation_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    settings = Settings.from_env()

    with pytest.raises(ValueError, match="API key"):
        settings.validate_for_provider()

    monkeypatch.setenv("PRACTICE_ANALYSIS_API_KEY", "sk-test")
    monkeypatch.setenv("PRACTICE_ANALYSIS_PROVIDER_BASE_URL", "ftp://nope")
    with pytest.raises(ValueError, match="PROVIDER_BASE_URL"):
        Settings.from_env().validate_for_provider()
