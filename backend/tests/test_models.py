"""Validation rules on the planner's domain records."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from study_planner.models import (
    BlockedInterval,
    GenerationRequest,
    RecurringCommitment,
    SessionRationale,
    StudySession,
    TimePreferences,
    TopicRating,
    parse_clock,
    week_start_for,
)


def test_parse_clock_accepts_hh_mm_and_seconds() -> None:
    assert parse_clock("08:00") == 480
    assert parse_clock("21:30:00") == 1290
    assert parse_clock("24:00") == 1440
    with pytest.raises(ValueError):
        parse_clock("25:00")
    with pytest.raises(ValueError):
        parse_clock("8am")


def test_topic_rating_rejects_values_outside_allowed_set() -> None:
    assert TopicRating(topic_id="algebra", rating=-2).rating == -2
    for bad in (-1, 6, 10):
        with pytest.raises(ValidationError):
            TopicRating(topic_id="algebra", rating=bad)


def test_time_preferences_default_window_and_weekend_override() -> None:
    prefs = TimePreferences()
    assert prefs.window_minutes(date(2024, 1, 20)) == (480, 1260)

    split = TimePreferences(
        weekend_earliest="10:00",
        weekend_latest="14:00",
        use_same_weekend_times=False,
    )
    assert split.window_minutes(date(2024, 1, 19)) == (480, 1260)
    assert split.window_minutes(date(2024, 1, 20)) == (600, 840)

    same = TimePreferences(weekend_earliest="10:00", weekend_latest="14:00")
    assert same.window_minutes(date(2024, 1, 20)) == (480, 1260)


def test_time_preferences_require_earliest_before_latest() -> None:
    with pytest.raises(ValidationError):
        TimePreferences(weekday_earliest="21:00", weekday_latest="08:00")
    with pytest.raises(ValidationError):
        TimePreferences(weekend_earliest="12:00", weekend_latest="12:00")


def test_recurring_commitment_date_range_is_inclusive() -> None:
    commitment = RecurringCommitment(
        start_time="09:00",
        end_time="10:00",
        days_of_week=[0, 2],
        start_date=date(2024, 1, 15),
        end_date=date(2024, 1, 17),
    )
    assert commitment.applies_on(date(2024, 1, 15))
    assert not commitment.applies_on(date(2024, 1, 16))
    assert commitment.applies_on(date(2024, 1, 17))
    assert not commitment.applies_on(date(2024, 1, 22))
    with pytest.raises(ValidationError):
        RecurringCommitment(start_time="09:00", end_time="10:00", days_of_week=[7])


def test_blocked_interval_normalises_to_utc_and_flags_invalid_ranges() -> None:
    naive = BlockedInterval(start=datetime(2024, 1, 15, 9), end=datetime(2024, 1, 15, 8))
    assert naive.start.tzinfo is timezone.utc
    assert not naive.is_valid


def test_session_rationale_position_is_bounded() -> None:
    with pytest.raises(ValidationError):
        SessionRationale(rating=1, session_number=4, session_total=3, label="x", explanation="y")
    with pytest.raises(ValidationError):
        SessionRationale(rating=1, session_number=0, session_total=3, label="x", explanation="y")
    with pytest.raises(ValidationError):
        SessionRationale.model_validate(
            {
                "format_version": "v0",
                "rating": 1,
                "session_number": 1,
                "session_total": 3,
                "label": "x",
                "explanation": "y",
            }
        )


def test_generation_request_validates_inputs_up_front() -> None:
    with pytest.raises(ValidationError):
        GenerationRequest(ratings={"algebra": 1}, target_week_start=date(2024, 1, 16))
    with pytest.raises(ValidationError):
        GenerationRequest(ratings={"algebra": 7}, target_week_start=date(2024, 1, 15))
    with pytest.raises(ValidationError):
        GenerationRequest(
            ratings={"algebra": 1},
            target_week_start=date(2024, 1, 15),
            session_duration_minutes=45,
        )
    with pytest.raises(ValidationError):
        GenerationRequest(
            ratings={"algebra": 1},
            target_week_start=date(2024, 1, 15),
            availability={"funday": 2},
        )


def test_generation_request_collapses_duplicate_ratings_first_wins() -> None:
    request = GenerationRequest(
        ratings=[
            {"topic_id": "algebra", "rating": 1},
            {"topic_id": "geometry", "rating": 4},
            {"topic_id": "algebra", "rating": 5},
        ],
        availability={"Monday": 2},
        target_week_start=date(2024, 1, 15),
    )
    assert request.ratings == {"algebra": 1, "geometry": 4}
    assert request.daily_hours == {"monday": 2.0}


def test_study_session_end_and_week_start_helpers() -> None:
    session = StudySession(
        user_id="u1",
        topic_id="algebra",
        scheduled_at=datetime(2024, 1, 17, 20, 30),
        duration_minutes=60,
    )
    assert session.end_at == datetime(2024, 1, 17, 21, 30, tzinfo=timezone.utc)
    assert week_start_for(session.scheduled_at) == date(2024, 1, 15)
    assert week_start_for(date(2024, 1, 21)) == date(2024, 1, 15)
