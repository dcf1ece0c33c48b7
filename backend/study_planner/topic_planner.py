from __future__ import annotations

from typing import Dict, Literal, Optional

from .errors import PlanValidationError
from .models import ALLOWED_RATINGS, EXCLUDED_RATING, NOT_YET_LEARNED_RATING, SessionPlan

Disposition = Literal["schedule", "excluded", "not_yet_learned"]

_POLICIES: Dict[int, SessionPlan] = {
    1: SessionPlan(
        rating=1,
        session_total=3,
        gap_days_sequence=(2, 3),
        first_session_weekdays=(0, 1),
        session_type="revision",
    ),
    2: SessionPlan(rating=2, session_total=2, gap_days_sequence=(2,), session_type="revision"),
    3: SessionPlan(rating=3, session_total=1, session_type="revision"),
    4: SessionPlan(rating=4, session_total=1, session_type="exam"),
    5: SessionPlan(rating=5, session_total=1, session_type="exam"),
}


class TopicSessionPlanner:
    """Maps a confidence rating to its spaced-repetition session plan."""

    def __init__(self, policies: Optional[Dict[int, SessionPlan]] = None) -> None:
        self._policies = dict(policies or _POLICIES)

    def _validate(self, rating: int) -> None:
        if rating not in ALLOWED_RATINGS:
            allowed = ", ".join(str(value) for value in sorted(ALLOWED_RATINGS))
            raise PlanValidationError(f"Rating {rating!r} is not one of {allowed}.")

    def disposition(self, rating: int) -> Disposition:
        self._validate(rating)
        if rating == EXCLUDED_RATING:
            return "excluded"
        if rating == NOT_YET_LEARNED_RATING:
            return "not_yet_learned"
        return "schedule"

    def plan_for(self, rating: int) -> Optional[SessionPlan]:
        """Session plan for ``rating``, or ``None`` when the topic is not scheduled."""
        if self.disposition(rating) != "schedule":
            return None
        return self._policies[rating]

    def sessions_required(self, rating: int) -> int:
        plan = self.plan_for(rating)
        return plan.session_total if plan else 0


planner = TopicSessionPlanner()

__all__ = ["Disposition", "TopicSessionPlanner", "planner"]
