"""Bounded per-(user, subject) queue of pre-generated lessons.

Lessons are produced ahead of demand by ``PendingProducer`` and consumed by
the orchestrator before it falls back to a live generation call. Every
consumed lesson is re-validated against the caller's current state; a
failing one is discarded, never requeued.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError

from .context_assembler import Guardrails
from .dedup import Deduplicator
from .lessons import Lesson
from .path_state import FocusLabel
from .telemetry import emit_event

if TYPE_CHECKING:  # pragma: no cover
    from .repositories import PendingRow
    from .store import DeliveryStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 2
JOB_BACKLOG = 100


@dataclass(frozen=True)
class PendingLesson:
    lesson: Lesson
    embedding: Optional[List[float]]
    persona_hash: str
    model_speed: str


class PendingQueue:
    def __init__(self, store: "DeliveryStore", max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self._store = store
        self.max_depth = max_depth

    def depth(self, user_id: str, subject: str) -> int:
        return self._store.pending_count(user_id, subject)

    def capacity_left(self, user_id: str, subject: str) -> int:
        return max(0, self.max_depth - self.depth(user_id, subject))

    def enqueue(
        self,
        user_id: str,
        subject: str,
        focus: FocusLabel,
        lesson: Lesson,
        persona_hash: str,
        embedding: Optional[Sequence[float]] = None,
        model_speed: str = "slow",
    ) -> bool:
        row = self._store.enqueue_pending(
            user_id,
            subject,
            focus,
            lesson.model_dump(mode="json"),
            persona_hash,
            embedding,
            model_speed,
            self.max_depth,
        )
        return row is not None

    def _reject(self, user_id: str, subject: str, row: "PendingRow", reason: str) -> None:
        logger.info("Discarding pending lesson %s (subject=%s reason=%s)", row.id, subject, reason)
        emit_event(
            "pending_rejected",
            user_id=user_id,
            subject=subject,
            focus=row.focus.label,
            reason=reason,
        )

    async def dequeue(
        self,
        user_id: str,
        subject: str,
        focus: FocusLabel,
        persona: str,
        guardrails: Guardrails,
        recent_embeddings: Sequence[Sequence[float]],
        dedup: Deduplicator,
    ) -> Optional[PendingLesson]:
        """Pop the head and return it only if it still fits the caller.

        Queue failures degrade to "no pending lesson".
        """
        try:
            row = self._store.pop_pending_head(user_id, subject)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Pending queue unavailable (subject=%s): %s", subject, exc)
            return None
        if row is None:
            return None

        if row.focus != focus:
            self._reject(user_id, subject, row, "focus_mismatch")
            return None
        if row.persona_hash != persona:
            self._reject(user_id, subject, row, "persona_mismatch")
            return None
        try:
            lesson = Lesson.model_validate(row.lesson)
        except ValidationError:
            self._reject(user_id, subject, row, "invalid_lesson")
            return None
        if guardrails.excludes(lesson):
            self._reject(user_id, subject, row, "excluded")
            return None

        embedding = row.embedding
        if embedding is None:
            embedding = await dedup.embed(lesson.embedding_text())
        if dedup.is_near_duplicate(embedding, recent_embeddings):
            self._reject(user_id, subject, row, "near_duplicate")
            return None
        return PendingLesson(
            lesson=lesson,
            embedding=embedding,
            persona_hash=row.persona_hash,
            model_speed=row.model_speed,
        )

    def complete(self, user_id: str, subject: str, lesson_id: Optional[str], stale_days: int) -> Tuple[bool, int]:
        """Drop the finished lesson (or the head) and expire stale rows."""
        removed = False
        rows = self._store.pending_list(user_id, subject)
        target = None
        if lesson_id:
            target = next((row for row in rows if row.lesson.get("id") == lesson_id), None)
        elif rows:
            target = rows[0]
        if target is not None:
            removed = self._store.remove_pending(user_id, subject, target.id)
        cleaned = self._store.cleanup_stale_pending(user_id, subject, stale_days)
        return removed, cleaned


@dataclass(frozen=True)
class PendingJob:
    user_id: str
    subject: str
    topic_label: Optional[str] = None
    count: int = DEFAULT_MAX_DEPTH


PendingHandler = Callable[[PendingJob], Awaitable[object]]


class PendingProducer:
    """Background worker that refills pending queues outside the request path."""

    def __init__(self, handler: PendingHandler, backlog: int = JOB_BACKLOG) -> None:
        self._handler = handler
        self._backlog = backlog
        self._jobs: Optional["asyncio.Queue[PendingJob]"] = None
        self._queued: Set[Tuple[str, str]] = set()
        self.is_running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Pending producer is already running")
            return
        self._jobs = asyncio.Queue(maxsize=self._backlog)
        self.is_running = True
        self.task = asyncio.create_task(self._run())
        logger.info("Pending producer started")

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.task = None
        self._jobs = None
        self._queued.clear()
        logger.info("Pending producer stopped")

    def submit(self, job: PendingJob) -> bool:
        """Queue a refill; a (user, subject) already waiting is not queued twice."""
        if not self.is_running or self._jobs is None:
            return False
        key = (job.user_id, job.subject.strip().lower())
        if key in self._queued:
            return False
        try:
            self._jobs.put_nowait(job)
        except asyncio.QueueFull:
            logger.warning("Pending producer backlog full; dropping job for %s", job.subject)
            return False
        self._queued.add(key)
        return True

    async def drain(self) -> None:
        if self._jobs is not None:
            await self._jobs.join()

    async def _run(self) -> None:
        assert self._jobs is not None
        jobs = self._jobs
        while self.is_running:
            job = await jobs.get()
            try:
                await self._handler(job)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("Pending production failed (subject=%s)", job.subject)
            finally:
                self._queued.discard((job.user_id, job.subject.strip().lower()))
                jobs.task_done()


__all__ = [
    "DEFAULT_MAX_DEPTH",
    "PendingJob",
    "PendingLesson",
    "PendingProducer",
    "PendingQueue",
]
