"""Top-level lesson delivery flow.

ResolveSubject -> EnsurePath -> ComputeFocus -> TryCache -> TryPending ->
Generate -> Persist -> Respond. Only ``Generating`` is retryable; every other
``DeliveryError`` ends the request.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, Set, Tuple

from .cache import CachedLesson, LessonCache
from .config import Settings, get_settings
from .context_assembler import Guardrails, StructuredContext, assemble_context, persona_for
from .dedup import Deduplicator, is_near_duplicate
from .errors import (
    DeliveryError,
    Generating,
    GeneratorError,
    InvalidLessonFormat,
    LessonNotFound,
    NoSubject,
    NotReady,
    RETRY_AFTER_FORMAT_ERROR,
    RETRY_AFTER_TIMEOUT,
    ServerError,
    UsageLimitExceeded,
)
from .generator import LessonGenerator
from .lessons import Lesson
from .locks import GenerationLockManager
from .path_state import (
    FocusLabel,
    LearningPath,
    PathCursor,
    PathStateRecord,
    PathStateService,
    ProgressRow,
    advance_cursor,
    completion_percent,
    focus_for,
    next_incomplete_after,
    planned_mini,
)
from .pending_queue import PendingJob, PendingProducer, PendingQueue
from .preferences import FeedbackAction, PreferenceSet
from .progress_metrics import AttemptRecord, ProgressMetricsSnapshot, compute_metrics, refresh_metrics
from .progress_writer import ProgressPatch, ProgressWriter
from .store import DeliveryStore
from .subjects import resolve_subject
from .telemetry import emit_event

logger = logging.getLogger(__name__)

LessonSource = Literal["cache", "pending", "generated"]

DEFAULT_BATCH = 5
MAX_BATCH = 8


@dataclass
class DeliveryResult:
    topic: str
    lesson: Lesson
    next_topic_hint: Optional[str]
    source: LessonSource
    prefetch: List[Lesson] = field(default_factory=list)
    include_prefetch: bool = False

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "topic": self.topic,
            "lesson": self.lesson.model_dump(mode="json"),
            "nextTopicHint": self.next_topic_hint,
        }
        if self.include_prefetch:
            payload["prefetch"] = [lesson.model_dump(mode="json") for lesson in self.prefetch]
        return payload


@dataclass
class _Prepared:
    """Everything the source stages need, computed once per request."""

    subject: str
    record: PathStateRecord
    path: LearningPath
    progress: ProgressRow
    cursor: PathCursor
    focus: FocusLabel
    metrics: ProgressMetricsSnapshot
    metrics_recomputed: bool
    preferences: PreferenceSet
    context: StructuredContext
    guardrails: Guardrails
    persona: str
    next_hint: Optional[FocusLabel]


class DeliveryOrchestrator:
    def __init__(
        self,
        store: DeliveryStore,
        generator: LessonGenerator,
        dedup: Deduplicator,
        settings: Optional[Settings] = None,
        locks: Optional[GenerationLockManager] = None,
        cache: Optional[LessonCache] = None,
        queue: Optional[PendingQueue] = None,
        producer: Optional[PendingProducer] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._generator = generator
        self._dedup = dedup
        self._locks = locks or GenerationLockManager(store, self._settings.lock_ttl_seconds)
        self.paths = PathStateService(store, generator, self._locks)
        self.cache = cache or LessonCache(
            store, self._settings.cache_capacity, self._settings.cache_max_age_days
        )
        self.queue = queue or PendingQueue(store, self._settings.pending_max_depth)
        self.writer = ProgressWriter(store)
        self.producer = producer
        self._late: Set["asyncio.Future[Lesson]"] = set()

    # shared stages

    def resolve(self, user_id: str, subject: Optional[str]) -> Tuple[str, Optional[str]]:
        profile = self._store.get_learner_profile(user_id)
        recent = [] if subject and subject.strip() else self._store.recent_subjects(user_id)
        return resolve_subject(subject, recent, profile)

    def _attempts(self, user_id: str) -> List[AttemptRecord]:
        return self._store.get_attempts(user_id)

    def _recent_embeddings(self, user_id: str, subject: str) -> List[List[float]]:
        try:
            return self._store.recent_embeddings(user_id, subject, self._settings.dedup_window)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Recent embeddings unavailable; similarity unknown: %s", exc)
            return []

    async def _ensure_path(
        self,
        user_id: str,
        subject: str,
        course: Optional[str],
        attempts: Sequence[AttemptRecord],
    ) -> Tuple[PathStateRecord, ProgressRow]:
        record, progress = self.paths.load(user_id, subject)
        if record is not None and record.is_valid:
            return record, progress
        provisional = compute_metrics(attempts, subject)
        await self.paths.ensure(
            user_id,
            subject,
            course or (record.course if record is not None else None),
            mastery_estimate=provisional.accuracy_pct,
            pace_note=provisional.pace,
        )
        record, progress = self.paths.load(user_id, subject)
        if record is None or not record.is_valid:
            raise NotReady("Learning path is not available yet")
        return record, progress

    def _prepare(
        self,
        subject: str,
        record: PathStateRecord,
        progress: ProgressRow,
        attempts: Sequence[AttemptRecord],
        preferences: PreferenceSet,
        cursor: Optional[PathCursor] = None,
    ) -> _Prepared:
        path = record.path
        assert path is not None
        cursor = cursor or advance_cursor(path, progress.cursor, progress.completion)
        metrics, recomputed = refresh_metrics(progress.metrics, attempts, subject)
        context, guardrails = assemble_context(
            path,
            cursor,
            metrics,
            preferences,
            progress.deliveries,
            progress.completion,
            exclusion_window=self._settings.exclusion_window,
        )
        return _Prepared(
            subject=subject,
            record=record,
            path=path,
            progress=progress,
            cursor=cursor,
            focus=focus_for(path, cursor),
            metrics=metrics,
            metrics_recomputed=recomputed,
            preferences=preferences,
            context=context,
            guardrails=guardrails,
            persona=persona_for(metrics, preferences),
            next_hint=next_incomplete_after(path, cursor, progress.completion),
        )

    # delivery

    async def deliver(self, user_id: str, subject: Optional[str] = None, prefetch: int = 0) -> DeliveryResult:
        subject, course = self.resolve(user_id, subject)
        attempts = self._attempts(user_id)
        record, progress = await self._ensure_path(user_id, subject, course, attempts)
        preferences = self._store.get_preferences(user_id, subject)
        state = self._prepare(subject, record, progress, attempts, preferences)
        recent_vectors = self._recent_embeddings(user_id, subject)
        next_hint = state.next_hint.label if state.next_hint else None

        entries = self.cache.get(user_id, subject, state.focus)
        source: LessonSource
        hit = self.cache.select_hit(entries, state.persona, state.guardrails, recent_vectors, self._dedup)
        if hit is not None:
            source, lesson, embedding = "cache", hit.lesson, hit.embedding
            cached = hit.model_copy(update={"next_topic_hint": next_hint})
        else:
            pending = await self.queue.dequeue(
                user_id,
                subject,
                state.focus,
                state.persona,
                state.guardrails,
                recent_vectors,
                self._dedup,
            )
            if pending is not None:
                source, lesson, embedding = "pending", pending.lesson, pending.embedding
            else:
                lesson, embedding = await self._generate(user_id, state, recent_vectors, next_hint)
                source = "generated"
            cached = CachedLesson(
                lesson=lesson,
                persona_hash=state.persona,
                embedding=embedding,
                next_topic_hint=next_hint,
            )

        self._persist(user_id, state, lesson, embedding, cached, source)
        emit_event(
            "lesson_delivered",
            user_id=user_id,
            subject=subject,
            focus=state.focus.label,
            lesson_id=lesson.id,
            source=source,
        )
        logger.info("Delivered %s lesson %s (subject=%s focus=%s)", source, lesson.id, subject, state.focus.label)

        self._request_refill(user_id, subject)
        return DeliveryResult(
            topic=state.focus.label,
            lesson=lesson,
            next_topic_hint=next_hint,
            source=source,
            prefetch=self.cache.prefetch(entries, state.persona, state.guardrails, lesson.id, prefetch),
            include_prefetch=prefetch > 0,
        )

    async def deliver_batch(
        self, user_id: str, subject: Optional[str] = None, count: int = DEFAULT_BATCH
    ) -> Dict[str, Any]:
        """Up to ``count`` lessons in a row. A failure after the first lesson ends the batch early."""
        count = max(1, min(MAX_BATCH, count))
        subject, _ = self.resolve(user_id, subject)
        items: List[Dict[str, Any]] = []
        for _ in range(count):
            try:
                result = await self.deliver(user_id, subject)
            except DeliveryError as exc:
                if not items:
                    raise
                logger.info("Batch stopped after %d lessons (subject=%s): %s", len(items), subject, exc.detail)
                break
            items.append(
                {
                    "topic": result.topic,
                    "lesson": result.lesson.model_dump(mode="json"),
                    "nextTopicHint": result.next_topic_hint,
                }
            )
            if self._path_complete(user_id, subject):
                break
        emit_event("lesson_batch_delivered", user_id=user_id, subject=subject, count=len(items))
        return {"items": items}

    def _path_complete(self, user_id: str, subject: str) -> bool:
        record, progress = self.paths.load(user_id, subject)
        if record is None or record.path is None:
            return False
        return completion_percent(record.path, progress.completion) >= 100

    def cached_lesson(
        self, user_id: str, subject: str, topic_label: str, lesson_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Read one cached lesson without serving it."""
        focus = FocusLabel.parse(topic_label)
        if focus is None:
            raise LessonNotFound()
        try:
            entry = self.cache.lookup(user_id, subject, focus, lesson_id)
        except DeliveryError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Cache lookup failed (subject=%s focus=%s)", subject, focus.label)
            raise ServerError() from exc
        return {
            "lesson": entry.lesson.model_dump(mode="json"),
            "topic": focus.label,
            "nextTopicHint": entry.next_topic_hint,
        }

    async def _generate(
        self,
        user_id: str,
        state: _Prepared,
        recent_vectors: Sequence[Sequence[float]],
        next_hint: Optional[str],
    ) -> Tuple[Lesson, Optional[List[float]]]:
        task = asyncio.ensure_future(
            self._generator.generate_lesson(
                state.subject, state.focus, state.context, model_speed="fast", user_id=user_id
            )
        )
        try:
            lesson = await asyncio.wait_for(
                asyncio.shield(task), timeout=self._settings.generation_timeout_seconds
            )
        except asyncio.TimeoutError:
            self._cache_late_result(task, user_id, state, next_hint)
            self._generation_failed(user_id, state, "timeout")
            raise Generating(RETRY_AFTER_TIMEOUT, reason="generation_timeout")
        except asyncio.CancelledError:
            # caller went away; keep the work and cache it when it lands
            self._cache_late_result(task, user_id, state, next_hint)
            raise
        except InvalidLessonFormat as exc:
            self._generation_failed(user_id, state, "invalid_format", exc)
            raise Generating(RETRY_AFTER_FORMAT_ERROR, reason="invalid_format") from exc
        except UsageLimitExceeded:
            self._generation_failed(user_id, state, "usage_limit")
            raise
        except GeneratorError as exc:
            self._generation_failed(user_id, state, "generator_error", exc)
            raise ServerError() from exc

        embedding = await self._dedup.embed(lesson.embedding_text())
        score = self._dedup.score(embedding, recent_vectors)
        if score is not None and is_near_duplicate(score, self._dedup.threshold):
            # served anyway; regenerating would cost another call
            logger.info("Generated lesson %s is a near-duplicate (score=%.3f)", lesson.id, score)
            emit_event(
                "lesson_near_duplicate",
                user_id=user_id,
                subject=state.subject,
                focus=state.focus.label,
                lesson_id=lesson.id,
                score=round(score, 4),
            )
        if state.guardrails.excludes(lesson):
            logger.info("Generated lesson %s repeats a recent id or title", lesson.id)
        return lesson, embedding

    def _generation_failed(
        self, user_id: str, state: _Prepared, reason: str, exc: Optional[BaseException] = None
    ) -> None:
        logger.warning("Lesson generation failed (subject=%s reason=%s): %s", state.subject, reason, exc)
        emit_event(
            "lesson_generation_failed",
            user_id=user_id,
            subject=state.subject,
            focus=state.focus.label,
            reason=reason,
        )

    def _cache_late_result(
        self,
        task: "asyncio.Future[Lesson]",
        user_id: str,
        state: _Prepared,
        next_hint: Optional[str],
    ) -> None:
        def _store(done: "asyncio.Future[Lesson]") -> None:
            self._late.discard(done)
            if done.cancelled() or done.exception() is not None:
                return
            lesson = done.result()
            self.cache.put(
                user_id,
                state.subject,
                state.focus,
                CachedLesson(lesson=lesson, persona_hash=state.persona, next_topic_hint=next_hint),
            )
            logger.info("Cached late lesson %s (subject=%s)", lesson.id, state.subject)

        self._late.add(task)
        task.add_done_callback(_store)

    def _persist(
        self,
        user_id: str,
        state: _Prepared,
        lesson: Lesson,
        embedding: Optional[List[float]],
        cached: CachedLesson,
        source: LessonSource,
    ) -> None:
        """Record the delivery. A cache hit is logged but does not count toward the planned minis."""
        patch = ProgressPatch.for_delivery(
            state.focus,
            state.cursor,
            planned_mini(state.path, state.cursor),
            lesson.id,
            lesson.title,
            state.metrics if state.metrics_recomputed else None,
            state.next_hint,
            retention=self._settings.delivery_retention,
            read_cursor=state.progress.cursor,
            count_mini=source != "cache",
        )
        self.writer.apply(user_id, state.subject, patch)
        if embedding:
            try:
                self._store.add_lesson_embedding(user_id, state.subject, lesson.id, embedding)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to store lesson embedding %s: %s", lesson.id, exc)
        self.cache.put(user_id, state.subject, state.focus, cached)

    def _request_refill(self, user_id: str, subject: str) -> None:
        if self.producer is None:
            return
        self.producer.submit(PendingJob(user_id=user_id, subject=subject, count=self.queue.max_depth))

    # pending production

    async def generate_pending(
        self,
        user_id: str,
        subject: str,
        topic_label: Optional[str] = None,
        count: int = 1,
    ) -> Dict[str, Any]:
        max_depth = self.queue.max_depth
        count = min(max(1, count), max_depth)
        current = self.queue.depth(user_id, subject)
        if current >= max_depth:
            return {
                "success": True,
                "generated": 0,
                "reason": "Queue full",
                "currentCount": current,
                "maxCount": max_depth,
            }

        record, progress = self.paths.load(user_id, subject)
        if record is None or not record.is_valid:
            raise NotReady("Learning path is not available yet")
        attempts = self._attempts(user_id)
        preferences = self._store.get_preferences(user_id, subject)
        state = self._prepare(
            subject,
            record,
            progress,
            attempts,
            preferences,
            cursor=self._cursor_for_label(record, progress, topic_label),
        )

        lesson_ids: List[str] = []
        for _ in range(min(count, max_depth - current)):
            try:
                lesson = await self._generator.generate_lesson(
                    subject, state.focus, state.context, model_speed="slow", user_id=user_id
                )
            except (GeneratorError, InvalidLessonFormat, UsageLimitExceeded) as exc:
                self._generation_failed(user_id, state, "pending", exc)
                break
            if state.guardrails.excludes(lesson):
                logger.info("Pending candidate %s repeats a recent lesson; skipped", lesson.id)
                continue
            embedding = await self._dedup.embed(lesson.embedding_text())
            if not self.queue.enqueue(
                user_id, subject, state.focus, lesson, state.persona, embedding, model_speed="slow"
            ):
                break
            lesson_ids.append(lesson.id)

        emit_event(
            "pending_generated",
            user_id=user_id,
            subject=subject,
            focus=state.focus.label,
            generated=len(lesson_ids),
        )
        return {
            "success": True,
            "generated": len(lesson_ids),
            "lessonIds": lesson_ids,
            "currentCount": current + len(lesson_ids),
            "maxCount": max_depth,
        }

    async def handle_pending_job(self, job: PendingJob) -> Dict[str, Any]:
        return await self.generate_pending(job.user_id, job.subject, job.topic_label, job.count)

    def _cursor_for_label(
        self, record: PathStateRecord, progress: ProgressRow, topic_label: Optional[str]
    ) -> Optional[PathCursor]:
        """Cursor for an explicitly requested focus label, if it names a path position."""
        path = record.path
        assert path is not None
        target = FocusLabel.parse(topic_label) if topic_label else None
        if target is None:
            return None
        current = advance_cursor(path, progress.cursor, progress.completion)
        for ti, si in path.iter_positions():
            if path.label_at(ti, si) == target:
                if (ti, si) == (current.topic_index, current.subtopic_index):
                    return current
                return PathCursor(topic_index=ti, subtopic_index=si)
        logger.info("Requested focus %r is not on the learning path; using the cursor", topic_label)
        return None

    # supplementary operations

    def progress_summary(self, user_id: str, subject: str) -> Dict[str, Any]:
        record, progress = self.paths.load(user_id, subject)
        if record is None or not record.is_valid:
            raise NotReady("Learning path is not available yet")
        path = record.path
        assert path is not None
        cursor = advance_cursor(path, progress.cursor, progress.completion)
        metrics, _ = refresh_metrics(progress.metrics, self._attempts(user_id), subject)
        completion = progress.completion
        next_hint = next_incomplete_after(path, cursor, completion)
        topics = []
        for topic in path.topics:
            subtopics = [
                {
                    "name": sub.name,
                    "miniLessons": sub.mini_lessons,
                    "completed": completion.is_complete(FocusLabel(topic.name, sub.name)),
                }
                for sub in topic.subtopics
            ]
            topics.append(
                {
                    "name": topic.name,
                    "completed": all(item["completed"] for item in subtopics),
                    "subtopics": subtopics,
                }
            )
        return {
            "subject": record.subject,
            "course": record.course,
            "focus": focus_for(path, cursor).label,
            "topicIndex": cursor.topic_index,
            "subtopicIndex": cursor.subtopic_index,
            "deliveredMini": cursor.delivered_mini,
            "plannedMini": planned_mini(path, cursor),
            "completionPct": completion_percent(path, completion),
            "topics": topics,
            "metrics": metrics.model_dump(mode="json"),
            "nextTopicHint": next_hint.label if next_hint else None,
        }

    def record_feedback(
        self,
        user_id: str,
        subject: str,
        action: FeedbackAction,
        lesson_id: str,
        tone_tags: Sequence[str] = (),
    ) -> PreferenceSet:
        record = self._store.get_path_state(user_id, subject)
        if record is None:
            raise NoSubject("No learning path for subject")
        return self._store.apply_feedback(user_id, record.subject, action, lesson_id, tone_tags)

    def record_attempt(
        self,
        user_id: str,
        subject: Optional[str],
        lesson_id: Optional[str],
        topic_label: Optional[str],
        correct_count: int,
        total: int,
    ) -> AttemptRecord:
        return self._store.record_attempt(user_id, subject, lesson_id, topic_label, correct_count, total)

    def complete_lesson(self, user_id: str, subject: str, lesson_id: Optional[str]) -> Dict[str, Any]:
        removed, cleaned = self.queue.complete(
            user_id, subject, lesson_id, self._settings.pending_stale_days
        )
        return {
            "success": True,
            "removed": removed,
            "cleanedStale": cleaned,
            "remaining": self.queue.depth(user_id, subject),
        }


__all__ = ["DEFAULT_BATCH", "DeliveryOrchestrator", "DeliveryResult", "LessonSource", "MAX_BATCH"]
