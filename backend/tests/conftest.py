from __future__ import annotations

import os

import pytest

os.environ.setdefault("STUDY_PLANNER_DATABASE_URL", "sqlite://")
os.environ.setdefault("STUDY_PLANNER_PERSISTENCE_MODE", "memory")

from study_planner.cache import week_cache  # noqa: E402
from study_planner.telemetry import clear_listeners  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_shared_state():
    yield
    clear_listeners()
    week_cache.clear()
