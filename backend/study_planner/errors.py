"""Exception taxonomy shared by the scheduling engine, stores, and routes."""

from __future__ import annotations


class PlannerError(Exception):
    """Base class for planner failures."""


class PlanValidationError(PlannerError, ValueError):
    """Malformed ratings, availability, or time bounds. Raised before scheduling starts."""


class InfeasibleScheduleError(PlannerError):
    """Topics needed sessions but the available time could not hold any of them."""

    def __init__(self, message: str, *, deferred_topics: list[str] | None = None) -> None:
        super().__init__(message)
        self.deferred_topics = list(deferred_topics or [])


class PersistenceError(PlannerError):
    """I/O failure while reading or replacing a user's sessions."""

    retryable = True


class NotFoundError(PlannerError, LookupError):
    """Referenced user or session is absent."""


class RegenerationTimeout(PlannerError):
    """A per-user regeneration exceeded its time budget and was abandoned."""


__all__ = [
    "InfeasibleScheduleError",
    "NotFoundError",
    "PersistenceError",
    "PlanValidationError",
    "PlannerError",
    "RegenerationTimeout",
]
