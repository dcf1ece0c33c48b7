"""In-memory caches shared across planner services."""

from .week_cache import WeekPlanCache, week_cache

__all__ = ["WeekPlanCache", "week_cache"]
