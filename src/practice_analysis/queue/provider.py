"""Analysis provider interface and the Anthropic Messages API client."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx

from practice_analysis.queue.errors import ProviderError
from practice_analysis.queue.models import AnalysisRequest, ProviderResult

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_MODEL = "claude-sonnet-4-20250514"
ANTHROPIC_VERSION = "2023-06-01"

SYSTEM_PROMPT = (
    "You are an expert CSR coach specializing in customer service training.\n"
    "Provide detailed, constructive feedback on call performance.\n"
    "Always respond with valid JSON matching the exact schema provided."
)

SCORECARD_SCHEMA = """{
  "overall_score": 0-100,
  "categories": {
    "empathy_rapport": { "score": 0-100, "feedback": "Specific feedback", "key_moments": [] },
    "problem_resolution": { "score": 0-100, "feedback": "Specific feedback", "key_moments": [] },
    "product_knowledge": { "score": 0-100, "feedback": "Product accuracy", "key_moments": [] },
    "professionalism": { "score": 0-100, "feedback": "Specific feedback", "key_moments": [] },
    "communication": { "score": 0-100, "feedback": "Specific feedback", "key_moments": [] }
  },
  "strengths": [{ "title": "Strength", "description": "Why effective", "quote": "Quote" }],
  "improvements": [{ "title": "Area", "issue": "What went wrong", "quote": "What they said",
                     "alternative": "Better response" }],
  "key_moment": { "timestamp": "When", "description": "What happened", "impact": "Effect",
                  "better_approach": "Alternative" },
  "summary": "2-3 sentence assessment",
  "next_steps": ["Action 1", "Action 2", "Action 3"]
}"""


class AnalysisProvider(Protocol):
    """Scores one transcript and returns the raw model output."""

    model: str

    def analyze(self, request: AnalysisRequest) -> ProviderResult:
        """Run the analysis; raise ``ProviderError`` on any failure."""


def build_user_prompt(request: AnalysisRequest) -> str:
    organization = request.organization_context
    session = request.session_context
    lines = [
        "Analyze this CSR training call and provide a comprehensive coaching scorecard.",
        "",
        "## Call Context",
        f"- Company: {organization.get('name') or 'Training Company'}",
        f"- Call Duration: {session.get('duration_seconds') or 'Unknown'} seconds",
    ]
    if organization.get("industry"):
        lines.append(f"- Industry: {organization['industry']}")
    if request.scenario_context is not None:
        scenario = request.scenario_context
        lines.append(
            f"- Scenario: {scenario.get('name')} (difficulty: {scenario.get('difficulty')})",
        )
    lines.extend(
        [
            "",
            "## Transcript",
            request.transcript,
            "",
            "Respond with JSON:",
            SCORECARD_SCHEMA,
        ],
    )
    return "\n".join(lines)


class AnthropicAnalysisProvider:
    """Calls the Anthropic Messages API over ``httpx``.

    Constructed once at worker startup and injected; it owns one pooled
    ``httpx.Client`` and must be closed by its owner.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        max_tokens: int = 4096,
        timeout_seconds: float = 120.0,
        max_retries: int = 2,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def analyze(self, request: AnalysisRequest) -> ProviderResult:
        body = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": build_user_prompt(request)}],
        }
        logger.debug("Requesting scorecard from provider model=%s", self.model)
        try:
            response = self._client.post("/v1/messages", json=body)
        except httpx.TimeoutException as error:
            raise ProviderError(f"Analysis provider timed out: {error}") from error
        except httpx.HTTPError as error:
            raise ProviderError(f"Analysis provider request failed: {error}") from error

        if not response.is_success:
            raise ProviderError(
                f"Analysis provider returned HTTP {response.status_code}: "
                f"{_error_message(response)}",
            )
        try:
            payload = response.json()
        except json.JSONDecodeError as error:
            raise ProviderError("Analysis provider returned a non-JSON response body.") from error

        text = _first_text_block(payload)
        if text is None:
            raise ProviderError("Analysis provider response has no text content.")
        return ProviderResult(text=text, model=str(payload.get("model") or self.model))

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> AnthropicAnalysisProvider:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _first_text_block(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    content = payload.get("content")
    if not isinstance(content, list):
        return None
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str):
                return text
    return None


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except json.JSONDecodeError:
        return response.text[:200]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return response.text[:200]
