"""Study-plan REST endpoints."""

from __future__ import annotations

import hmac
import logging
import threading
from datetime import date, datetime, timezone
from typing import Dict, List, NoReturn, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import (
    InfeasibleScheduleError,
    NotFoundError,
    PersistenceError,
    PlannerError,
    PlanValidationError,
)
from .models import (
    GeneratedSession,
    PlanStatus,
    RegenerationSummary,
    RerateOutcome,
    RescheduleOutcome,
    StudySession,
    week_start_for,
)
from .plan_service import PlanService
from .store import get_plan_store

router = APIRouter(prefix="/api/plan", tags=["plan"])
cron_router = APIRouter(prefix="/api/cron", tags=["cron"])
logger = logging.getLogger(__name__)

_service: Optional[PlanService] = None
_service_lock = threading.Lock()


def get_plan_service() -> PlanService:
    global _service
    with _service_lock:
        if _service is None:
            _service = PlanService(get_plan_store())
        return _service


def reset_plan_service() -> None:
    global _service
    with _service_lock:
        _service = None


class GenerateWeekRequest(BaseModel):
    week_start: Optional[date] = Field(
        default=None,
        description="Monday of the week to plan. Defaults to the current week.",
    )


class GeneratedWeekPayload(BaseModel):
    user_id: str
    week_start: date
    status: PlanStatus
    sessions: List[GeneratedSession] = Field(default_factory=list)
    deferred_topics: Dict[str, int] = Field(default_factory=dict)
    excluded_topics: List[str] = Field(default_factory=list)
    not_yet_learned_topics: List[str] = Field(default_factory=list)


class WeekSessionsPayload(BaseModel):
    user_id: str
    week_start: date
    sessions: List[StudySession] = Field(default_factory=list)


class RerateRequest(BaseModel):
    rating: int = Field(description="New confidence rating for the session's topic, 1 to 5.")


def _raise_http(exc: PlannerError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, InfeasibleScheduleError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": "insufficient_capacity",
                "message": str(exc),
                "deferred_topics": exc.deferred_topics,
            },
        ) from exc
    if isinstance(exc, PlanValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, PersistenceError):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Plan storage is temporarily unavailable; try again shortly.",
        ) from exc
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


@router.post(
    "/{user_id}/generate",
    response_model=GeneratedWeekPayload,
    status_code=status.HTTP_200_OK,
)
def generate_week(
    user_id: str,
    payload: Optional[GenerateWeekRequest] = None,
    service: PlanService = Depends(get_plan_service),
) -> GeneratedWeekPayload:
    week_start = payload.week_start if payload else None
    try:
        result = service.generate_week(user_id, week_start)
    except PlannerError as exc:
        _raise_http(exc)
    return GeneratedWeekPayload(
        user_id=user_id,
        week_start=result.week_start,
        status=result.status,
        sessions=result.persistable(),
        deferred_topics=result.deferred_topics,
        excluded_topics=result.excluded_topics,
        not_yet_learned_topics=result.not_yet_learned_topics,
    )


@router.get(
    "/{user_id}/week",
    response_model=WeekSessionsPayload,
    status_code=status.HTTP_200_OK,
)
def get_week(
    user_id: str,
    week_start: Optional[date] = Query(
        default=None,
        description="Monday of the week to read. Defaults to the current week.",
    ),
    service: PlanService = Depends(get_plan_service),
) -> WeekSessionsPayload:
    target = week_start or week_start_for(datetime.now(timezone.utc))
    try:
        sessions = service.week_sessions(user_id, target)
    except PlannerError as exc:
        _raise_http(exc)
    return WeekSessionsPayload(user_id=user_id, week_start=target, sessions=sessions)


@router.post(
    "/sessions/{session_id}/missed",
    response_model=RescheduleOutcome,
    status_code=status.HTTP_200_OK,
)
def mark_session_missed(
    session_id: str,
    service: PlanService = Depends(get_plan_service),
) -> RescheduleOutcome:
    try:
        return service.mark_missed(session_id)
    except PlannerError as exc:
        _raise_http(exc)


@router.post(
    "/sessions/{session_id}/done",
    response_model=StudySession,
    status_code=status.HTTP_200_OK,
)
def mark_session_done(
    session_id: str,
    service: PlanService = Depends(get_plan_service),
) -> StudySession:
    try:
        return service.mark_done(session_id)
    except PlannerError as exc:
        _raise_http(exc)


@router.post(
    "/sessions/{session_id}/scheduled",
    response_model=StudySession,
    status_code=status.HTTP_200_OK,
)
def mark_session_scheduled(
    session_id: str,
    service: PlanService = Depends(get_plan_service),
) -> StudySession:
    try:
        return service.mark_scheduled(session_id)
    except PlannerError as exc:
        _raise_http(exc)


@router.post(
    "/sessions/{session_id}/rerate",
    response_model=RerateOutcome,
    status_code=status.HTTP_200_OK,
)
def rerate_session(
    session_id: str,
    payload: RerateRequest,
    service: PlanService = Depends(get_plan_service),
) -> RerateOutcome:
    try:
        return service.rerate(session_id, payload.rating)
    except PlannerError as exc:
        _raise_http(exc)


def _require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    secret = settings.cron_secret
    if not secret:
        return
    expected = f"Bearer {secret}"
    if authorization is None or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized.")


@cron_router.post(
    "/weekly-regen",
    response_model=RegenerationSummary,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(_require_cron_secret)],
)
def run_weekly_regeneration(service: PlanService = Depends(get_plan_service)) -> RegenerationSummary:
    try:
        return service.orchestrator.run_cycle()
    except PlannerError as exc:
        logger.exception("Weekly regeneration cycle failed")
        _raise_http(exc)


__all__ = ["cron_router", "get_plan_service", "reset_plan_service", "router"]
