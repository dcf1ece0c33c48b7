"""Typed rationale parsing and cross-week sequence reconstruction."""

from __future__ import annotations

import json
from datetime import datetime, timezone

from study_planner.models import SessionRationale, StudySession
from study_planner.sequence_state import parse_rationale, reconstruct_sequence_states

CUTOFF = datetime(2024, 1, 15, tzinfo=timezone.utc)


def _rationale(rating: int, number: int, total: int) -> SessionRationale:
    return SessionRationale(
        rating=rating,
        session_number=number,
        session_total=total,
        label=f"Revision Block {number}/{total}",
        explanation=f"Confidence rating {rating}.",
    )


def _session(topic_id: str, day: int, rationale, *, status: str = "scheduled", hour: int = 8) -> StudySession:
    return StudySession(
        user_id="learner-1",
        topic_id=topic_id,
        scheduled_at=datetime(2024, 1, day, hour, tzinfo=timezone.utc),
        status=status,
        rationale=rationale,
    )


def test_parse_rationale_accepts_dicts_and_json() -> None:
    payload = _rationale(1, 2, 3).model_dump(mode="json")
    assert parse_rationale(payload).session_number == 2
    assert parse_rationale(json.dumps(payload)).session_total == 3
    assert parse_rationale(None) is None


def test_parse_rationale_rejects_malformed_payloads(caplog) -> None:
    assert parse_rationale("not json", session_id="s-1") is None
    assert parse_rationale({"session_number": 1}, session_id="s-2") is None
    assert parse_rationale({**_rationale(1, 1, 3).model_dump(), "format_version": "legacy"}) is None
    assert "s-1" in caplog.text


def test_reconstruct_returns_in_progress_sequences() -> None:
    history = [
        _session("algebra", 8, _rationale(1, 1, 3), status="done"),
        _session("algebra", 10, _rationale(1, 2, 3)),
        _session("stats", 9, _rationale(3, 1, 1), status="done"),
    ]

    states = reconstruct_sequence_states(history, {"algebra": 1, "stats": 3}, before=CUTOFF)

    assert list(states) == ["algebra"]
    state = states["algebra"]
    assert state.sessions_scheduled == 2
    assert state.sessions_required == 3
    assert state.last_session_date == datetime(2024, 1, 10, 8, tzinfo=timezone.utc)
    assert state.is_ongoing


def test_reconstruct_skips_rerated_missed_and_future_sessions() -> None:
    history = [
        _session("algebra", 10, _rationale(2, 1, 2)),
        _session("calculus", 11, _rationale(1, 1, 3), status="missed"),
        _session("geometry", 15, _rationale(1, 1, 3)),
        _session("optics", 12, None),
    ]

    states = reconstruct_sequence_states(
        history,
        {"algebra": 1, "calculus": 1, "geometry": 1, "optics": 1},
        before=CUTOFF,
    )

    assert states == {}


def test_latest_session_uses_highest_number_then_latest_time() -> None:
    history = [
        _session("algebra", 12, _rationale(1, 1, 3), hour=9),
        _session("algebra", 10, _rationale(1, 2, 3)),
        _session("algebra", 11, _rationale(1, 2, 3)),
    ]

    state = reconstruct_sequence_states(history, {"algebra": 1}, before=CUTOFF)["algebra"]

    assert state.sessions_scheduled == 2
    assert state.last_session_date.day == 11
