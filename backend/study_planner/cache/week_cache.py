"""In-memory cache of persisted study weeks."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple

from ..models import StudySession


def _key(user_id: str, week_start: date) -> Tuple[str, date]:
    normalized = user_id.strip()
    if not normalized:
        raise ValueError("User id cannot be empty when caching study weeks.")
    return normalized, week_start


@dataclass
class _WeekEntry:
    sessions: List[StudySession]
    cached_at: datetime


class WeekPlanCache:
    """Process-local cache of a user's sessions per week, dropped on every write for that user."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, date], _WeekEntry] = {}

    def get(self, user_id: str, week_start: date) -> Optional[List[StudySession]]:
        with self._lock:
            entry = self._entries.get(_key(user_id, week_start))
        if entry is None:
            return None
        return [session.model_copy(deep=True) for session in entry.sessions]

    def set(self, user_id: str, week_start: date, sessions: List[StudySession]) -> None:
        entry = _WeekEntry(
            sessions=[session.model_copy(deep=True) for session in sessions],
            cached_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._entries[_key(user_id, week_start)] = entry

    def invalidate(self, user_id: str) -> None:
        normalized = user_id.strip()
        with self._lock:
            for key in [key for key in self._entries if key[0] == normalized]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


week_cache = WeekPlanCache()

__all__ = ["WeekPlanCache", "week_cache"]
