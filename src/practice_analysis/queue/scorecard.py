"""Scorecard extraction from free-form provider output."""

from __future__ import annotations

import json
import re
from typing import Any

from practice_analysis.queue.errors import ProviderError
from practice_analysis.queue.models import Scorecard

INSUFFICIENT_DATA_SUMMARY = "Insufficient transcript data for analysis."
INSUFFICIENT_DATA_NEXT_STEP = "Complete a full training session for detailed feedback."

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_DECODER = json.JSONDecoder()

# camelCase keys the provider sometimes echoes back from older prompt revisions
_KEY_ALIASES = {
    "overall_score": "overallScore",
    "key_moment": "keyMoment",
    "next_steps": "nextSteps",
}


def insufficient_data_scorecard() -> Scorecard:
    """Degenerate result for sessions whose transcript is too short to score."""

    return Scorecard(
        overall_score=0,
        categories={},
        strengths=[],
        improvements=[],
        key_moment=None,
        summary=INSUFFICIENT_DATA_SUMMARY,
        next_steps=[INSUFFICIENT_DATA_NEXT_STEP],
    )


def is_insufficient_transcript(transcript: str | None, *, min_chars: int) -> bool:
    return not transcript or len(transcript.strip()) < min_chars


def extract_scorecard(text: str) -> Scorecard:
    """Parse the first well-formed JSON object in ``text`` into a scorecard.

    Raises:
        ProviderError: no JSON object was found or its fields are invalid.
    """

    payload = extract_first_json_object(text)
    if payload is None:
        raise ProviderError("Analysis provider returned no parseable JSON scorecard.")
    return scorecard_from_payload(payload)


def extract_first_json_object(text: str) -> dict[str, Any] | None:
    stripped = text.strip()
    if not stripped:
        return None

    for match in _FENCED_BLOCK.finditer(stripped):
        payload = _first_object_in(match.group(1))
        if payload is not None:
            return payload
    return _first_object_in(stripped)


def scorecard_from_payload(payload: dict[str, Any]) -> Scorecard:
    overall = _get(payload, "overall_score")
    if isinstance(overall, bool) or not isinstance(overall, int | float):
        raise ProviderError(f"Scorecard overall_score must be a number, got {overall!r}.")
    if not 0 <= overall <= 100:
        raise ProviderError(f"Scorecard overall_score out of range 0-100: {overall!r}.")

    categories = _get(payload, "categories") or {}
    if not isinstance(categories, dict):
        raise ProviderError("Scorecard categories must be an object.")
    normalized_categories: dict[str, dict[str, Any]] = {}
    for name, raw in categories.items():
        if not isinstance(raw, dict):
            raise ProviderError(f"Scorecard category {name!r} must be an object.")
        normalized_categories[str(name)] = _normalize_category(name, raw)

    key_moment = _get(payload, "key_moment")
    if key_moment is not None and not isinstance(key_moment, dict):
        key_moment = {"description": str(key_moment)}

    return Scorecard(
        overall_score=round(overall),
        categories=normalized_categories,
        strengths=_as_list(_get(payload, "strengths")),
        improvements=_as_list(_get(payload, "improvements")),
        key_moment=key_moment,
        summary=str(_get(payload, "summary") or ""),
        next_steps=[str(step) for step in _as_list(_get(payload, "next_steps"))],
    )


def _first_object_in(text: str) -> dict[str, Any] | None:
    index = text.find("{")
    while index != -1:
        try:
            parsed, _ = _DECODER.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(parsed, dict):
            return parsed
        index = text.find("{", index + 1)
    return None


def _normalize_category(name: object, raw: dict[str, Any]) -> dict[str, Any]:
    score = raw.get("score")
    if isinstance(score, bool) or not isinstance(score, int | float) or not 0 <= score <= 100:
        raise ProviderError(f"Scorecard category {name!r} has invalid score {score!r}.")
    normalized = dict(raw)
    normalized["score"] = round(score)
    normalized["feedback"] = str(raw.get("feedback") or "")
    key_moments = raw.get("key_moments", raw.get("keyMoments"))
    normalized.pop("keyMoments", None)
    normalized["key_moments"] = _as_list(key_moments)
    return normalized


def _get(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]
    alias = _KEY_ALIASES.get(key)
    if alias is not None:
        return payload.get(alias)
    return None


def _as_list(value: object) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]
