"""Skill-profile aggregation consumed by the analysis queue."""

from practice_analysis.skills.aggregation import (
    SkillAggregationService,
    SkillProfileView,
    SqlSkillAggregationService,
)

__all__ = [
    "SkillAggregationService",
    "SkillProfileView",
    "SqlSkillAggregationService",
]
