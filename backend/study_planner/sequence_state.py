"""Reconstruction of in-progress spaced-repetition sequences from session history."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError

from .models import SequenceState, SessionRationale, StudySession, ensure_utc
from .topic_planner import TopicSessionPlanner, planner as default_planner

logger = logging.getLogger(__name__)


def parse_rationale(payload: Any, *, session_id: Optional[str] = None) -> Optional[SessionRationale]:
    """Validate a stored rationale. Returns ``None`` (and logs) when it is unusable."""
    if payload is None:
        return None
    if isinstance(payload, SessionRationale):
        return payload
    try:
        if isinstance(payload, (str, bytes)):
            payload = json.loads(payload)
        return SessionRationale.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        logger.warning("Ignoring malformed rationale on session %s: %s", session_id, exc)
        return None


def reconstruct_sequence_states(
    history: Iterable[StudySession],
    ratings: Dict[str, int],
    *,
    before: datetime,
    topic_planner: Optional[TopicSessionPlanner] = None,
) -> Dict[str, SequenceState]:
    """Return ongoing sequence state per topic from sessions earlier than ``before``.

    The latest session of a topic is the one with the highest session number,
    ties broken by the later start. Topics re-rated since that session start
    a fresh cycle and are left out.
    """
    topic_planner = topic_planner or default_planner
    cutoff = ensure_utc(before)
    latest: Dict[str, StudySession] = {}

    for session in history:
        if not session.topic_id or session.status not in ("scheduled", "done"):
            continue
        if session.scheduled_at >= cutoff:
            continue
        if session.rationale is None:
            continue
        current = latest.get(session.topic_id)
        if current is None or (
            session.rationale.session_number,
            session.scheduled_at,
        ) > (current.rationale.session_number, current.scheduled_at):
            latest[session.topic_id] = session

    states: Dict[str, SequenceState] = {}
    for topic_id in sorted(latest):
        session = latest[topic_id]
        rationale = session.rationale
        rating = ratings.get(topic_id)
        if rating is None or rationale.rating != rating:
            continue
        required = topic_planner.sessions_required(rating)
        if rationale.session_number >= required:
            continue
        states[topic_id] = SequenceState(
            topic_id=topic_id,
            rating=rating,
            sessions_scheduled=rationale.session_number,
            sessions_required=required,
            last_session_date=session.scheduled_at,
        )
    return states


__all__ = ["parse_rationale", "reconstruct_sequence_states"]
