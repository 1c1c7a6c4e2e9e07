"""Test doubles and sample data shared across test modules."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from practice_analysis.queue.models import AnalysisRequest, ProviderResult

ORG_ID = "org-acme"

LONG_TRANSCRIPT = (
    "Agent: Thank you for calling Acme support, how can I help you today?\n"
    "Customer: My internet keeps dropping every evening and I'm frustrated.\n"
    "Agent: I'm sorry to hear that, let me check the line diagnostics for you."
)

SCORECARD_PAYLOAD: dict[str, Any] = {
    "overall_score": 78,
    "categories": {
        "empathy_rapport": {"score": 82, "feedback": "Warm opening", "key_moments": []},
        "problem_resolution": {"score": 74, "feedback": "Ran diagnostics", "key_moments": []},
        "product_knowledge": {"score": 70, "feedback": "Accurate", "key_moments": []},
        "professionalism": {"score": 88, "feedback": "Polite", "key_moments": []},
        "communication": {"score": 76, "feedback": "Clear", "key_moments": []},
    },
    "strengths": [{"title": "Empathy", "description": "Acknowledged frustration", "quote": "I'm sorry"}],
    "improvements": [
        {
            "title": "Ownership",
            "issue": "No timeline given",
            "quote": "let me check",
            "alternative": "I'll have this fixed within the hour",
        },
    ],
    "key_moment": {
        "timestamp": "0:12",
        "description": "Apology",
        "impact": "De-escalated",
        "better_approach": "Offer a timeline",
    },
    "summary": "Solid empathetic call with room for clearer ownership.",
    "next_steps": ["Give timelines", "Summarize the fix", "Confirm resolution"],
}


def scorecard_text(payload: dict[str, Any] | None = None) -> str:
    return "Here is the scorecard:\n```json\n" + json.dumps(payload or SCORECARD_PAYLOAD) + "\n```"


def to_sqlite_text(value: datetime) -> str:
    """Format a naive UTC datetime the way SQLAlchemy stores it in SQLite."""

    return value.strftime("%Y-%m-%d %H:%M:%S.%f")


class StubProvider:
    """Provider double that replays queued responses (text or exception)."""

    model = "stub-model"

    def __init__(self, responses: list[str | Exception] | None = None) -> None:
        self.responses = list(responses or [])
        self.requests: list[AnalysisRequest] = []

    def analyze(self, request: AnalysisRequest) -> ProviderResult:
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else scorecard_text()
        if isinstance(response, Exception):
            raise response
        return ProviderResult(text=response, model=self.model)


class RecordingAggregator:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def update(self, user_id: str, org_id: str, payload: dict[str, Any]) -> None:
        self.calls.append((user_id, org_id, payload))
        if self.error is not None:
            raise self.error


