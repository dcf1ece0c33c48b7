"""Domain records for the study-revision planner."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import SLOT_GRANULARITY_MINUTES

logger = logging.getLogger(__name__)

ALLOWED_RATINGS = frozenset({-2, 0, 1, 2, 3, 4, 5})
EXCLUDED_RATING = -2
NOT_YET_LEARNED_RATING = 0
RATIONALE_FORMAT_VERSION = "spaced_repetition_v1"
RERATING_SCORES = frozenset({1, 2, 3, 4, 5})
DAY_NAMES: Tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)
DEFAULT_EARLIEST = "08:00"
DEFAULT_LATEST = "21:00"

SessionStatus = Literal["scheduled", "done", "missed"]
BlockedSource = Literal["explicit", "recurring"]
SessionType = Literal["revision", "exam"]
PlanStatus = Literal["complete", "partial", "insufficient_capacity", "nothing_to_schedule"]
OutcomeStatus = Literal["success", "failed", "skipped"]
NextActionType = Literal["reinforcement", "maintenance"]

_CLOCK_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_clock(value: str) -> int:
    """Return minutes after midnight for an ``HH:MM`` (or ``HH:MM:SS``) string."""
    match = _CLOCK_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f"Invalid time of day '{value}'; expected HH:MM.")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if minutes >= 60 or hours > 24 or (hours == 24 and minutes != 0):
        raise ValueError(f"Invalid time of day '{value}'.")
    return hours * 60 + minutes


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def at_minutes(day: date, minutes: int) -> datetime:
    return day_start(day) + timedelta(minutes=minutes)


def week_start_for(value: date | datetime) -> date:
    """Monday of the week containing ``value`` (UTC)."""
    if isinstance(value, datetime):
        value = ensure_utc(value).date()
    return value - timedelta(days=value.weekday())


def check_rating(value: int) -> int:
    if value not in ALLOWED_RATINGS:
        allowed = ", ".join(str(item) for item in sorted(ALLOWED_RATINGS))
        raise ValueError(f"Rating {value!r} is not one of {allowed}.")
    return value


def check_duration(value: int) -> int:
    if value <= 0 or value % SLOT_GRANULARITY_MINUTES != 0:
        raise ValueError(
            f"Session duration must be a positive multiple of {SLOT_GRANULARITY_MINUTES} minutes, got {value}."
        )
    return value


def check_ratings(value: Dict[str, int]) -> Dict[str, int]:
    for topic_id, rating in value.items():
        if not topic_id or not topic_id.strip():
            raise ValueError("Topic ids must be non-empty.")
        check_rating(rating)
    return value


def check_daily_hours(value: Dict[str, float]) -> Dict[str, float]:
    normalized: Dict[str, float] = {}
    for day_name, hours in value.items():
        key = day_name.strip().lower()
        if key not in DAY_NAMES:
            raise ValueError(f"Unknown day '{day_name}' in daily hours.")
        if hours < 0 or hours > 24:
            raise ValueError(f"Daily hours for {key} must be between 0 and 24.")
        normalized[key] = float(hours)
    return normalized


def ratings_map(entries: Any) -> Any:
    """Collapse ``[{topic_id, rating}]`` pairs into a map; the first occurrence of a topic wins."""
    if not isinstance(entries, (list, tuple)):
        return entries
    ratings: Dict[str, int] = {}
    for entry in entries:
        if isinstance(entry, TopicRating):
            topic_id, rating = entry.topic_id, entry.rating
        elif isinstance(entry, dict):
            topic_id, rating = entry.get("topic_id"), entry.get("rating")
        else:
            topic_id, rating = entry
        if topic_id in ratings:
            logger.warning("Ignoring duplicate rating for topic %s", topic_id)
            continue
        ratings[topic_id] = rating
    return ratings


class TimePreferences(BaseModel):
    """Earliest/latest study times, with an optional separate weekend window."""

    weekday_earliest: str = DEFAULT_EARLIEST
    weekday_latest: str = DEFAULT_LATEST
    weekend_earliest: Optional[str] = None
    weekend_latest: Optional[str] = None
    use_same_weekend_times: bool = True

    @field_validator("weekday_earliest", "weekday_latest", "weekend_earliest", "weekend_latest")
    @classmethod
    def _check_clock(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        parse_clock(value)
        return value.strip()

    @model_validator(mode="after")
    def _check_bounds(self) -> "TimePreferences":
        if parse_clock(self.weekday_earliest) >= parse_clock(self.weekday_latest):
            raise ValueError("Weekday earliest time must be before weekday latest time.")
        if self.weekend_earliest and self.weekend_latest:
            if parse_clock(self.weekend_earliest) >= parse_clock(self.weekend_latest):
                raise ValueError("Weekend earliest time must be before weekend latest time.")
        return self

    def uses_weekend_window(self) -> bool:
        return (
            not self.use_same_weekend_times
            and bool(self.weekend_earliest)
            and bool(self.weekend_latest)
        )

    def window_minutes(self, day: date) -> Tuple[int, int]:
        """Earliest/latest minutes-after-midnight for the day's type."""
        if day.weekday() >= 5 and self.uses_weekend_window():
            return parse_clock(self.weekend_earliest or DEFAULT_EARLIEST), parse_clock(
                self.weekend_latest or DEFAULT_LATEST
            )
        return parse_clock(self.weekday_earliest), parse_clock(self.weekday_latest)


class BlockedInterval(BaseModel):
    """A concrete time range unavailable for scheduling."""

    start: datetime
    end: datetime
    source: BlockedSource = "explicit"
    label: Optional[str] = None
    event_id: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_valid(self) -> bool:
        return self.end > self.start

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


class RecurringCommitment(BaseModel):
    """Weekly commitment expanded into concrete blocked intervals per target day.

    ``days_of_week`` uses Monday=0 through Sunday=6.
    """

    start_time: str
    end_time: str
    days_of_week: List[int] = Field(default_factory=list)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    label: Optional[str] = None
    event_id: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_clock(cls, value: str) -> str:
        parse_clock(value)
        return value.strip()

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, value: List[int]) -> List[int]:
        for day in value:
            if day < 0 or day > 6:
                raise ValueError(f"Day of week {day} is outside 0 (Monday) to 6 (Sunday).")
        return sorted(set(value))

    def applies_on(self, day: date) -> bool:
        if day.weekday() not in self.days_of_week:
            return False
        if self.start_date is not None and day < self.start_date:
            return False
        if self.end_date is not None and day > self.end_date:
            return False
        return True


class TopicRating(BaseModel):
    topic_id: str
    rating: int

    @field_validator("rating")
    @classmethod
    def _check_rating(cls, value: int) -> int:
        return check_rating(value)


class SessionPlan(BaseModel):
    """Derived, never persisted: how many sessions a rating needs and how far apart."""

    model_config = ConfigDict(frozen=True)

    rating: int
    session_total: int = Field(ge=1)
    gap_days_sequence: Tuple[int, ...] = ()
    first_session_weekdays: Optional[Tuple[int, ...]] = None
    session_type: SessionType = "revision"

    def gap_after(self, session_number: int) -> int:
        """Minimum calendar days between ``session_number`` and the session after it."""
        index = session_number - 1
        if 0 <= index < len(self.gap_days_sequence):
            return max(1, self.gap_days_sequence[index])
        return 1


class SequenceState(BaseModel):
    """Progress of one topic's spaced-repetition sequence carried across weeks."""

    topic_id: str
    rating: int
    sessions_scheduled: int = Field(ge=0)
    sessions_required: int = Field(ge=1)
    last_session_date: datetime

    @field_validator("last_session_date")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_ongoing(self) -> bool:
        return self.sessions_scheduled < self.sessions_required


class SessionRationale(BaseModel):
    """Typed rationale attached to every persisted study session."""

    format_version: Literal["spaced_repetition_v1"] = RATIONALE_FORMAT_VERSION
    rating: int
    session_number: int = Field(ge=1)
    session_total: int = Field(ge=1)
    session_type: SessionType = "revision"
    label: str
    explanation: str

    @model_validator(mode="after")
    def _check_position(self) -> "SessionRationale":
        if self.session_number > self.session_total:
            raise ValueError(
                f"Session number {self.session_number} exceeds session total {self.session_total}."
            )
        return self


class StudySession(BaseModel):
    """The persisted scheduling unit."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    topic_id: Optional[str] = None
    scheduled_at: datetime
    duration_minutes: int = SLOT_GRANULARITY_MINUTES
    status: SessionStatus = "scheduled"
    rationale: Optional[SessionRationale] = None
    week_start: Optional[date] = None
    rerating_score: Optional[int] = None
    completed_at: Optional[datetime] = None

    @field_validator("scheduled_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("completed_at")
    @classmethod
    def _utc_optional(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def end_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)

    @property
    def session_number(self) -> Optional[int]:
        return self.rationale.session_number if self.rationale else None

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end_at and end > self.scheduled_at


class GeneratedSession(BaseModel):
    """One entry of a generation response. Entries without a topic are filler."""

    topic_id: Optional[str] = None
    scheduled_at: datetime
    duration_minutes: int
    rationale: Optional[SessionRationale] = None

    @field_validator("scheduled_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_schedulable(self) -> bool:
        return bool(self.topic_id)

    @property
    def end_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)

    def to_session(self, user_id: str, week_start: date) -> StudySession:
        if not self.is_schedulable:
            raise ValueError("Filler entries cannot be persisted as study sessions.")
        return StudySession(
            user_id=user_id,
            topic_id=self.topic_id,
            scheduled_at=self.scheduled_at,
            duration_minutes=self.duration_minutes,
            status="scheduled",
            rationale=self.rationale,
            week_start=week_start,
        )


class GenerationRequest(BaseModel):
    """Everything the weekly builder needs for one user and one target week."""

    subjects: List[str] = Field(default_factory=list)
    topic_subjects: Dict[str, str] = Field(default_factory=dict)
    ratings: Dict[str, int] = Field(default_factory=dict)
    daily_hours: Dict[str, float] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("daily_hours", "availability"),
        description="Optional study-hours cap per weekday name. Empty means no cap.",
    )
    time_preferences: TimePreferences = Field(default_factory=TimePreferences)
    blocked_times: List[BlockedInterval] = Field(default_factory=list)
    recurring_commitments: List[RecurringCommitment] = Field(default_factory=list)
    session_duration_minutes: int = SLOT_GRANULARITY_MINUTES
    target_week_start: date
    ongoing_topics: Dict[str, SequenceState] = Field(default_factory=dict)
    priority_topic_ids: List[str] = Field(default_factory=list)
    topic_order: List[str] = Field(default_factory=list)
    not_before: Optional[datetime] = None

    @field_validator("ratings", mode="before")
    @classmethod
    def _collapse_ratings(cls, value: Any) -> Any:
        return ratings_map(value)

    @field_validator("ratings")
    @classmethod
    def _check_ratings(cls, value: Dict[str, int]) -> Dict[str, int]:
        return check_ratings(value)

    @field_validator("daily_hours")
    @classmethod
    def _check_daily_hours(cls, value: Dict[str, float]) -> Dict[str, float]:
        return check_daily_hours(value)

    @field_validator("session_duration_minutes")
    @classmethod
    def _check_duration(cls, value: int) -> int:
        return check_duration(value)

    @field_validator("target_week_start")
    @classmethod
    def _check_monday(cls, value: date) -> date:
        if value.weekday() != 0:
            raise ValueError(f"Target week start {value.isoformat()} is not a Monday.")
        return value

    @field_validator("not_before")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class WeeklyPlanResult(BaseModel):
    week_start: date
    status: PlanStatus
    sessions: List[GeneratedSession] = Field(default_factory=list)
    deferred_topics: Dict[str, int] = Field(default_factory=dict)
    excluded_topics: List[str] = Field(default_factory=list)
    not_yet_learned_topics: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.sessions

    def persistable(self) -> List[GeneratedSession]:
        return [entry for entry in self.sessions if entry.is_schedulable]


class RescheduleOutcome(BaseModel):
    session_id: str
    rescheduled: bool
    new_scheduled_at: Optional[datetime] = None
    delta_minutes: Optional[int] = None
    shifted_session_ids: List[str] = Field(default_factory=list)
    message: str = ""


class RerateOutcome(BaseModel):
    """Result of finishing a session with a fresh confidence rating."""

    session: StudySession
    topic_id: str
    previous_rating: Optional[int] = None
    rating: int
    next_action: NextActionType
    sessions_needed: Optional[int] = None
    days_until_review: Optional[int] = None
    message: str


class UserPlanningContext(BaseModel):
    """State loaded from the store for one user before planning."""

    user_id: str
    ratings: Dict[str, int] = Field(default_factory=dict)
    subjects: List[str] = Field(default_factory=list)
    topic_subjects: Dict[str, str] = Field(default_factory=dict)
    topic_order: List[str] = Field(default_factory=list)
    priority_topic_ids: List[str] = Field(default_factory=list)
    daily_hours: Dict[str, float] = Field(default_factory=dict)
    time_preferences: TimePreferences = Field(default_factory=TimePreferences)
    blocked_times: List[BlockedInterval] = Field(default_factory=list)
    recurring_commitments: List[RecurringCommitment] = Field(default_factory=list)
    session_duration_minutes: Optional[int] = None

    @field_validator("ratings", mode="before")
    @classmethod
    def _collapse_ratings(cls, value: Any) -> Any:
        return ratings_map(value)

    @field_validator("ratings")
    @classmethod
    def _check_ratings(cls, value: Dict[str, int]) -> Dict[str, int]:
        return check_ratings(value)

    @field_validator("daily_hours")
    @classmethod
    def _check_daily_hours(cls, value: Dict[str, float]) -> Dict[str, float]:
        return check_daily_hours(value)

    @field_validator("session_duration_minutes")
    @classmethod
    def _check_duration(cls, value: Optional[int]) -> Optional[int]:
        return check_duration(value) if value is not None else None


class RegenerationOutcome(BaseModel):
    user_id: str
    status: OutcomeStatus
    week_start: date
    sessions_written: int = 0
    plan_status: Optional[PlanStatus] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class RegenerationError(BaseModel):
    user_id: str
    error: str


class RegenerationSummary(BaseModel):
    target_week_start: date
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    errors: List[RegenerationError] = Field(default_factory=list)
    outcomes: List[RegenerationOutcome] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None


__all__ = [
    "ALLOWED_RATINGS",
    "BlockedInterval",
    "DAY_NAMES",
    "EXCLUDED_RATING",
    "GeneratedSession",
    "GenerationRequest",
    "NOT_YET_LEARNED_RATING",
    "RATIONALE_FORMAT_VERSION",
    "RecurringCommitment",
    "RegenerationError",
    "RegenerationOutcome",
    "RERATING_SCORES",
    "RegenerationSummary",
    "RerateOutcome",
    "RescheduleOutcome",
    "SequenceState",
    "SessionPlan",
    "SessionRationale",
    "StudySession",
    "TimePreferences",
    "TopicRating",
    "UserPlanningContext",
    "WeeklyPlanResult",
    "at_minutes",
    "day_start",
    "ensure_utc",
    "parse_clock",
    "week_start_for",
]
