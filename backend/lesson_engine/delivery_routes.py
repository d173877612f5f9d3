"""REST endpoints for lesson delivery, pending production and learner feedback."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .config import Settings, get_settings
from .dedup import Deduplicator
from .embeddings import OpenAIEmbedder
from .errors import DeliveryError, Generating, NotAuthenticated
from .generator import DailyUsageGate, LessonGenerator
from .orchestrator import DEFAULT_BATCH, MAX_BATCH, DeliveryOrchestrator
from .store import delivery_store
from .telemetry import recent_events

router = APIRouter(prefix="/api/delivery", tags=["delivery"])
logger = logging.getLogger(__name__)

MAX_PREFETCH = 3

_orchestrator: Optional[DeliveryOrchestrator] = None


def build_orchestrator(settings: Optional[Settings] = None) -> DeliveryOrchestrator:
    settings = settings or get_settings()
    generator = LessonGenerator(
        settings,
        usage=DailyUsageGate(delivery_store, settings.daily_generation_limit),
    )
    dedup = Deduplicator(
        OpenAIEmbedder(settings), settings.similarity_threshold, timeout=settings.embedding_timeout_seconds
    )
    return DeliveryOrchestrator(delivery_store, generator, dedup, settings)


def get_orchestrator() -> DeliveryOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


def reset_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None


def current_user(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    if x_user_id is None or not x_user_id.strip():
        raise NotAuthenticated()
    return x_user_id.strip()


class GeneratePendingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str = Field(..., min_length=1)
    topic_label: Optional[str] = Field(default=None, validation_alias=AliasChoices("topicLabel", "topic_label"))
    count: int = 1


class FeedbackRequest(BaseModel):
    subject: str = Field(..., min_length=1)
    lesson_id: str = Field(..., min_length=1, validation_alias=AliasChoices("lesson_id", "lessonId"))
    action: Literal["like", "dislike", "save"]
    tone_tags: List[str] = Field(default_factory=list, validation_alias=AliasChoices("tone_tags", "toneTags"))


class CompleteRequest(BaseModel):
    subject: str = Field(..., min_length=1)
    lesson_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("lesson_id", "lessonId"))


class AttemptRequest(BaseModel):
    subject: Optional[str] = None
    lesson_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("lesson_id", "lessonId"))
    topic_label: Optional[str] = Field(default=None, validation_alias=AliasChoices("topic_label", "topicLabel"))
    correct_count: int = Field(..., ge=0, validation_alias=AliasChoices("correct_count", "correctCount"))
    total: int


@router.get("/lesson")
async def get_lesson(
    subject: Optional[str] = Query(default=None),
    prefetch: int = Query(default=0, ge=0, le=MAX_PREFETCH),
    user_id: str = Depends(current_user),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    result = await orchestrator.deliver(user_id, subject, prefetch=prefetch)
    return result.to_payload()


@router.get("/batch")
async def get_batch(
    subject: Optional[str] = Query(default=None),
    n: int = Query(default=DEFAULT_BATCH),
    user_id: str = Depends(current_user),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return await orchestrator.deliver_batch(user_id, subject, max(1, min(MAX_BATCH, n)))


@router.get("/cache")
def get_cached_lesson(
    subject: Optional[str] = Query(default=None),
    topic: Optional[str] = Query(default=None),
    lesson_id: Optional[str] = Query(default=None, alias="lessonId"),
    user_id: str = Depends(current_user),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    if not subject or not subject.strip() or not topic or not topic.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing subject or topic")
    return orchestrator.cached_lesson(user_id, subject.strip(), topic.strip(), lesson_id)


@router.post("/generate-pending")
async def generate_pending(
    request: GeneratePendingRequest,
    user_id: str = Depends(current_user),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return await orchestrator.generate_pending(
        user_id, request.subject.strip(), request.topic_label, request.count
    )


@router.post("/feedback")
def post_feedback(
    request: FeedbackRequest,
    user_id: str = Depends(current_user),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    preferences = orchestrator.record_feedback(
        user_id, request.subject.strip(), request.action, request.lesson_id, request.tone_tags
    )
    return {"ok": True, "preferences": preferences.model_dump(mode="json")}


@router.post("/complete")
def post_complete(
    request: CompleteRequest,
    user_id: str = Depends(current_user),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.complete_lesson(user_id, request.subject.strip(), request.lesson_id)


@router.get("/progress")
def get_progress(
    subject: Optional[str] = Query(default=None),
    user_id: str = Depends(current_user),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    resolved, _ = orchestrator.resolve(user_id, subject)
    return orchestrator.progress_summary(user_id, resolved)


@router.post("/attempts", status_code=status.HTTP_201_CREATED)
def post_attempt(
    request: AttemptRequest,
    user_id: str = Depends(current_user),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    if request.total <= 0 or request.correct_count > request.total:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid attempt score")
    attempt = orchestrator.record_attempt(
        user_id,
        request.subject,
        request.lesson_id,
        request.topic_label,
        request.correct_count,
        request.total,
    )
    return {"ok": True, "attempt": attempt.model_dump(mode="json")}


@router.get("/debug/events")
def debug_events(
    name: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    if not settings.debug_endpoints:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return {
        "events": [
            {"name": event.name, "payload": event.payload, "emitted_at": event.emitted_at.isoformat()}
            for event in recent_events(name, limit)
        ]
    }


async def _delivery_error_handler(request: Request, exc: DeliveryError) -> JSONResponse:
    if isinstance(exc, Generating):
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"status": "generating", "progress": exc.progress or {"reason": exc.reason}},
            headers={"Retry-After": str(exc.retry_after)},
        )
    if exc.status_code >= 500:
        logger.error("Delivery request failed: %s", exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DeliveryError, _delivery_error_handler)  # type: ignore[arg-type]


__all__ = [
    "build_orchestrator",
    "current_user",
    "get_orchestrator",
    "install_error_handlers",
    "reset_orchestrator",
    "router",
]
