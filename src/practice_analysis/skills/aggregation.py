"""Skill-profile aggregation: rolling per-user skill scores from analyzed sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from sqlmodel import Session, select

from practice_analysis.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_db_datetime,
    utc_now,
)
from practice_analysis.storage.sqlmodel_models import SkillHistory, SkillProfile

logger = logging.getLogger(__name__)

SKILL_CATEGORIES = (
    "empathy",
    "problem_solving",
    "product_knowledge",
    "communication",
    "objection_handling",
    "closing",
    "time_management",
)

CATEGORY_TO_SKILL = {
    "empathyRapport": "empathy",
    "empathy_rapport": "empathy",
    "problemResolution": "problem_solving",
    "problem_resolution": "problem_solving",
    "productKnowledge": "product_knowledge",
    "product_knowledge": "product_knowledge",
    "professionalism": "communication",
    "communication": "communication",
}

MAX_RECENT_WEIGHT = 0.3
RANKED_SKILLS = 3


@dataclass(slots=True)
class SkillProfileView:
    user_id: str
    org_id: str
    category_scores: dict[str, int]
    strongest_skills: list[str]
    weakest_skills: list[str]
    total_sessions_analyzed: int


class SkillAggregationService(Protocol):
    """Consumed contract for skill-profile recalibration."""

    def update(self, user_id: str, org_id: str, payload: dict[str, Any]) -> object:
        """Blend one session's ``categories`` into the user's profile."""


def extract_session_skills(categories: dict[str, Any]) -> dict[str, int]:
    """Map scorecard categories onto profile skills.

    ``professionalism`` wins over ``communication`` when both are present.
    """

    skills: dict[str, int] = {}
    for key, data in categories.items():
        skill = CATEGORY_TO_SKILL.get(key)
        if skill is None or not isinstance(data, dict):
            continue
        score = data.get("score")
        if isinstance(score, bool) or not isinstance(score, int | float):
            continue
        if skill in skills and key != "professionalism":
            continue
        skills[skill] = round(score)
    return skills


def blend_scores(
    current: dict[str, int],
    session_skills: dict[str, int],
    sessions_count: int,
) -> dict[str, int]:
    """Weighted average favouring recent sessions, capped at ``MAX_RECENT_WEIGHT``."""

    weight = min(MAX_RECENT_WEIGHT, 1 / sessions_count)
    blended = dict(current)
    for skill, new_score in session_skills.items():
        previous = current.get(skill)
        if previous is None:
            blended[skill] = new_score
        else:
            blended[skill] = round(previous * (1 - weight) + new_score * weight)
    return blended


def rank_skills(scores: dict[str, int]) -> tuple[list[str], list[str]]:
    ordered = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    strongest = [skill for skill, _ in ordered[:RANKED_SKILLS]]
    weakest = [skill for skill, _ in reversed(ordered[-RANKED_SKILLS:])]
    return strongest, weakest


class SqlSkillAggregationService:
    """Default aggregation backed by the ``skill_profiles`` tables.

    Updates are read-modify-write on one profile row; transactions begin
    immediately so pool threads blending into the same user serialize.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
            immediate_transactions=True,
        )

    def close(self) -> None:
        self.engine.dispose()

    def update(self, user_id: str, org_id: str, payload: dict[str, Any]) -> SkillProfileView:
        session_id = str(payload.get("session_id") or "")
        session_skills = extract_session_skills(payload.get("categories") or {})
        now = to_db_datetime(utc_now())

        with Session(self.engine) as session:
            profile = session.get(SkillProfile, user_id)
            if profile is None:
                profile = SkillProfile(
                    user_id=user_id,
                    org_id=org_id,
                    category_scores_json="{}",
                    strongest_skills_json="[]",
                    weakest_skills_json="[]",
                    total_sessions_analyzed=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(profile)
                session.flush()

            sessions_count = profile.total_sessions_analyzed + 1
            current = load_json(profile.category_scores_json, default={})
            scores = blend_scores(current, session_skills, sessions_count)  # type: ignore[arg-type]
            strongest, weakest = rank_skills(scores)

            for skill, score in session_skills.items():
                session.add(
                    SkillHistory(
                        user_id=user_id,
                        skill_category=skill,
                        score=score,
                        session_id=session_id,
                        recorded_at=now,
                    ),
                )
            profile.category_scores_json = dump_json(scores) or "{}"
            profile.strongest_skills_json = dump_json(strongest) or "[]"
            profile.weakest_skills_json = dump_json(weakest) or "[]"
            profile.total_sessions_analyzed = sessions_count
            profile.last_analyzed_at = now
            profile.updated_at = now
            session.add(profile)
            session.commit()

        logger.info(
            "Skill profile updated: user_id=%s session_id=%s sessions=%d",
            user_id,
            session_id,
            sessions_count,
        )
        return SkillProfileView(
            user_id=user_id,
            org_id=org_id,
            category_scores=scores,
            strongest_skills=strongest,
            weakest_skills=weakest,
            total_sessions_analyzed=sessions_count,
        )

    def get_profile(self, *, user_id: str) -> SkillProfileView | None:
        with Session(self.engine) as session:
            profile = session.get(SkillProfile, user_id)
            if profile is None:
                return None
            return SkillProfileView(
                user_id=profile.user_id,
                org_id=profile.org_id,
                category_scores=load_json(profile.category_scores_json, default={}),  # type: ignore[arg-type]
                strongest_skills=load_json(profile.strongest_skills_json, default=[]),  # type: ignore[arg-type]
                weakest_skills=load_json(profile.weakest_skills_json, default=[]),  # type: ignore[arg-type]
                total_sessions_analyzed=profile.total_sessions_analyzed,
            )

    def count_history(self, *, user_id: str) -> int:
        with Session(self.engine) as session:
            rows = session.exec(select(SkillHistory.id).where(SkillHistory.user_id == user_id)).all()
        return len(rows)
