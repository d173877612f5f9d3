"""Persona-tagged lesson cache keyed on (user, subject, topic, subtopic)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..context_assembler import Guardrails
from ..dedup import Deduplicator
from ..errors import InvalidCachePayload, LessonNotFound, StaleLesson
from ..lessons import Lesson
from ..path_state import FocusLabel
from ..telemetry import emit_event

if TYPE_CHECKING:  # pragma: no cover
    from ..store import DeliveryStore

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 5
DEFAULT_MAX_AGE_DAYS = 7
MAX_PREFETCH = 3

_DATETIME = TypeAdapter(datetime)


class CachedLesson(BaseModel):
    lesson: Lesson
    cached_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    persona_hash: str
    embedding: Optional[List[float]] = None
    next_topic_hint: Optional[str] = None

    @property
    def lesson_id(self) -> str:
        return self.lesson.id


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _lesson_id(row: Dict[str, Any]) -> Optional[str]:
    lesson = row.get("lesson")
    return lesson.get("id") if isinstance(lesson, dict) else None


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return _aware(_DATETIME.validate_python(value))
    except ValidationError:
        return None


def _evict(entries: List[CachedLesson], capacity: int, persona: str) -> List[CachedLesson]:
    """Trim to ``capacity``; stale-persona entries go first, oldest first. Index 0 is kept."""
    kept = list(entries)
    while len(kept) > capacity:
        stale = [index for index in range(1, len(kept)) if kept[index].persona_hash != persona]
        kept.pop(stale[-1] if stale else len(kept) - 1)
    return kept


class LessonCache:
    def __init__(
        self,
        store: "DeliveryStore",
        capacity: int = DEFAULT_CAPACITY,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
    ) -> None:
        self._store = store
        self.capacity = capacity
        self.max_age = timedelta(days=max_age_days)

    def _parse(self, rows: Iterable[Dict[str, Any]]) -> List[CachedLesson]:
        entries: List[CachedLesson] = []
        for row in rows:
            try:
                entries.append(CachedLesson.model_validate(row))
            except ValidationError:
                logger.debug("Dropping malformed cache entry %r", row.get("lesson", {}).get("id"))
        return entries

    def _fresh(self, entries: Iterable[CachedLesson], now: datetime) -> List[CachedLesson]:
        cutoff = now - self.max_age
        return [entry for entry in entries if _aware(entry.cached_at) >= cutoff]

    def _degraded(self, operation: str, user_id: str, subject: str, focus: FocusLabel, exc: Exception) -> None:
        logger.warning("Lesson cache %s failed (subject=%s focus=%s): %s", operation, subject, focus.label, exc)
        emit_event(
            "lesson_cache_degraded",
            user_id=user_id,
            subject=subject,
            focus=focus.label,
            operation=operation,
            error=str(exc),
        )

    def get(
        self, user_id: str, subject: str, focus: FocusLabel, now: Optional[datetime] = None
    ) -> List[CachedLesson]:
        """Most recent first, expired entries dropped, capped at ``capacity``."""
        now = now or datetime.now(timezone.utc)
        try:
            rows = self._store.get_lesson_cache(user_id, subject, focus)
        except Exception as exc:  # noqa: BLE001
            self._degraded("get", user_id, subject, focus, exc)
            return []
        return self._fresh(self._parse(rows), now)[: self.capacity]

    def put(
        self,
        user_id: str,
        subject: str,
        focus: FocusLabel,
        entry: CachedLesson,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        try:
            rows = self._store.get_lesson_cache(user_id, subject, focus)
            existing = [
                cached
                for cached in self._fresh(self._parse(rows), now)
                if cached.lesson_id != entry.lesson_id
            ]
            entries = _evict([entry] + existing, self.capacity, entry.persona_hash)
            self._store.upsert_lesson_cache(
                user_id, subject, focus, [cached.model_dump(mode="json") for cached in entries]
            )
        except Exception as exc:  # noqa: BLE001
            self._degraded("put", user_id, subject, focus, exc)

    def lookup(
        self,
        user_id: str,
        subject: str,
        focus: FocusLabel,
        lesson_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CachedLesson:
        """Entry by id, or the most recent one. Store failures propagate."""
        now = now or datetime.now(timezone.utc)
        rows = [row for row in self._store.get_lesson_cache(user_id, subject, focus) if isinstance(row, dict)]
        if lesson_id:
            row = next((row for row in rows if _lesson_id(row) == lesson_id), None)
        else:
            row = rows[0] if rows else None
        if row is None:
            raise LessonNotFound()
        cached_at = _timestamp(row.get("cached_at"))
        if cached_at is not None and cached_at < now - self.max_age:
            raise StaleLesson()
        try:
            return CachedLesson.model_validate(row)
        except ValidationError as exc:
            logger.warning("Invalid cache entry (subject=%s focus=%s): %s", subject, focus.label, exc)
            raise InvalidCachePayload() from exc

    def select_hit(
        self,
        entries: Sequence[CachedLesson],
        persona: str,
        guardrails: Guardrails,
        recent_embeddings: Sequence[Sequence[float]],
        dedup: Deduplicator,
    ) -> Optional[CachedLesson]:
        """First current-persona entry that is neither excluded nor a near-duplicate."""
        for entry in entries:
            if entry.persona_hash != persona:
                continue
            if guardrails.excludes(entry.lesson):
                continue
            if dedup.is_near_duplicate(entry.embedding, recent_embeddings):
                logger.debug("Skipping near-duplicate cache entry %s", entry.lesson_id)
                continue
            return entry
        return None

    def prefetch(
        self,
        entries: Sequence[CachedLesson],
        persona: str,
        guardrails: Guardrails,
        served_id: str,
        limit: int,
    ) -> List[Lesson]:
        limit = max(0, min(MAX_PREFETCH, limit))
        picked: List[Lesson] = []
        for entry in entries:
            if len(picked) >= limit:
                break
            if entry.persona_hash != persona or entry.lesson_id == served_id:
                continue
            if guardrails.excludes(entry.lesson):
                continue
            picked.append(entry.lesson)
        return picked


__all__ = ["CachedLesson", "DEFAULT_CAPACITY", "LessonCache", "MAX_PREFETCH"]
