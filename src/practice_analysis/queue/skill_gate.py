"""First-attempt gate in front of the non-idempotent skill-profile update."""

from __future__ import annotations

import logging
from typing import Any

from practice_analysis.queue.repository import AnalysisQueueRepository
from practice_analysis.skills.aggregation import SkillAggregationService

logger = logging.getLogger(__name__)


class SkillProfileGate:
    """Feeds only the first completed attempt of a scenario into the skill profile.

    The aggregation is a weighted blend; replaying it for every retry of the
    same exercise would skew the profile toward the most-retried scenario.
    """

    def __init__(
        self,
        *,
        repository: AnalysisQueueRepository,
        aggregator: SkillAggregationService,
    ) -> None:
        self.repository = repository
        self.aggregator = aggregator

    def apply(  # noqa: PLR0913
        self,
        *,
        session_id: str,
        user_id: str | None,
        org_id: str,
        scenario_id: str | None,
        categories: dict[str, Any],
    ) -> bool:
        """Invoke the aggregation when this is the first attempt; return whether it ran.

        Never raises: aggregation failures are logged and swallowed so they
        cannot fail the job that triggered them.
        """

        if user_id is None:
            logger.debug("Skill profile skipped for session %s: no user", session_id)
            return False
        try:
            if scenario_id is not None and self.repository.has_prior_completed_attempt(
                user_id=user_id,
                scenario_id=scenario_id,
                session_id=session_id,
            ):
                logger.info(
                    "Skill profile skipped for session %s: repeat attempt of scenario %s",
                    session_id,
                    scenario_id,
                )
                return False
            self.aggregator.update(
                user_id,
                org_id,
                {"session_id": session_id, "categories": categories},
            )
        except Exception:  # noqa: BLE001
            logger.warning(
                "Skill profile update failed for session %s (user %s)",
                session_id,
                user_id,
                exc_info=True,
            )
            return False
        return True
