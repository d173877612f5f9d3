"""Transactional facade over the delivery repositories.

Each public method runs in its own ``session_scope`` so callers never hold a
session across an ``await``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from .db.session import session_scope
from .path_state import FocusLabel, LearningPath, PathStateRecord, ProgressRow
from .preferences import FeedbackAction, PreferenceSet
from .progress_metrics import AttemptRecord
from .progress_writer import ProgressPatch
from .repositories import (
    GenerationLockRepository,
    LearnerRepository,
    LearningPathRepository,
    LessonCacheRepository,
    LessonEmbeddingRepository,
    PendingLessonRepository,
    PendingRow,
    SubjectProgressRepository,
)
from .subjects import LearnerProfile

logger = logging.getLogger(__name__)


class DeliveryStore:
    def __init__(self) -> None:
        self._paths = LearningPathRepository()
        self._progress = SubjectProgressRepository()
        self._cache = LessonCacheRepository()
        self._pending = PendingLessonRepository()
        self._embeddings = LessonEmbeddingRepository()
        self._learners = LearnerRepository()
        self._locks = GenerationLockRepository()

    # learning path

    def get_path_state(self, user_id: str, subject: str) -> Optional[PathStateRecord]:
        with session_scope(commit=False) as session:
            return self._paths.get(session, user_id, subject)

    def upsert_path_state(self, user_id: str, subject: str, course: str, path: LearningPath) -> PathStateRecord:
        with session_scope() as session:
            return self._paths.upsert(session, user_id, subject, course, path)

    def recent_subjects(self, user_id: str) -> List[str]:
        with session_scope(commit=False) as session:
            return self._paths.recent_subjects(session, user_id)

    # progress

    def get_progress_row(self, user_id: str, subject: str) -> ProgressRow:
        with session_scope(commit=False) as session:
            return self._progress.get(session, user_id, subject)

    def apply_progress_patch(self, user_id: str, subject: str, patch: ProgressPatch) -> ProgressRow:
        """Cursor, delivery log, completion, metrics and next_topic in one transaction."""
        with session_scope() as session:
            record = self._paths.get(session, user_id, subject)
            seed = record.path if record is not None else None
            row, accepted = self._progress.apply_patch(session, user_id, subject, patch, seed=seed)
            if patch.update_next_topic and accepted:
                self._paths.set_next_topic(session, user_id, subject, patch.next_topic)
            return row

    # attempts

    def get_attempts(
        self,
        user_id: str,
        subject: Optional[str] = None,
        limit: int = 200,
    ) -> List[AttemptRecord]:
        """Newest first. ``subject`` narrows the result case-insensitively."""
        with session_scope(commit=False) as session:
            attempts = self._learners.list_attempts(session, user_id, limit=limit)
        if subject:
            wanted = subject.strip().lower()
            attempts = [a for a in attempts if (a.subject or "").strip().lower() == wanted]
        return attempts

    def record_attempt(
        self,
        user_id: str,
        subject: Optional[str],
        lesson_id: Optional[str],
        topic_label: Optional[str],
        correct_count: int,
        total: int,
    ) -> AttemptRecord:
        with session_scope() as session:
            return self._learners.add_attempt(
                session, user_id, subject, lesson_id, topic_label, correct_count, total
            )

    # lesson cache

    def get_lesson_cache(self, user_id: str, subject: str, focus: FocusLabel) -> List[Dict[str, Any]]:
        with session_scope(commit=False) as session:
            return self._cache.get(session, user_id, subject, focus)

    def upsert_lesson_cache(
        self, user_id: str, subject: str, focus: FocusLabel, lessons: List[Dict[str, Any]]
    ) -> None:
        with session_scope() as session:
            self._cache.put(session, user_id, subject, focus, lessons)

    # generation lock

    def acquire_lock(self, user_id: str, subject: str, owner: str, ttl_seconds: int) -> bool:
        with session_scope() as session:
            return self._locks.try_acquire(session, user_id, subject, owner, timedelta(seconds=ttl_seconds))

    def release_lock(self, user_id: str, subject: str, owner: str) -> bool:
        with session_scope() as session:
            return self._locks.release(session, user_id, subject, owner)

    # pending queue

    def pending_count(self, user_id: str, subject: str) -> int:
        with session_scope(commit=False) as session:
            return self._pending.count(session, user_id, subject)

    def pending_list(self, user_id: str, subject: str) -> List[PendingRow]:
        with session_scope(commit=False) as session:
            return self._pending.list(session, user_id, subject)

    def pop_pending_head(self, user_id: str, subject: str) -> Optional[PendingRow]:
        """Consume the head lesson; exactly one concurrent caller gets it."""
        with session_scope() as session:
            return self._pending.pop_head(session, user_id, subject)

    def enqueue_pending(
        self,
        user_id: str,
        subject: str,
        focus: FocusLabel,
        lesson: Dict[str, Any],
        persona_hash: str,
        embedding: Optional[Sequence[float]],
        model_speed: str,
        max_depth: int,
    ) -> Optional[PendingRow]:
        with session_scope() as session:
            return self._pending.enqueue(
                session,
                user_id,
                subject,
                focus,
                lesson,
                persona_hash,
                list(embedding) if embedding else None,
                model_speed,
                max_depth,
            )

    def remove_pending(self, user_id: str, subject: str, pending_id: str) -> bool:
        with session_scope() as session:
            return self._pending.remove(session, user_id, subject, pending_id)

    def cleanup_stale_pending(self, user_id: str, subject: str, max_age_days: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        with session_scope() as session:
            return self._pending.cleanup_stale(session, user_id, subject, cutoff)

    # preferences

    def get_preferences(self, user_id: str, subject: str) -> PreferenceSet:
        with session_scope(commit=False) as session:
            return self._learners.get_preferences(session, user_id, subject)

    def apply_feedback(
        self,
        user_id: str,
        subject: str,
        action: FeedbackAction,
        lesson_id: str,
        tone_tags: Sequence[str] = (),
    ) -> PreferenceSet:
        with session_scope() as session:
            current = self._learners.get_preferences(session, user_id, subject)
            updated = current.apply(action, lesson_id).with_tone_tags(tone_tags)
            return self._learners.save_preferences(session, user_id, subject, updated)

    # delivered embeddings

    def add_lesson_embedding(self, user_id: str, subject: str, lesson_id: str, vector: Sequence[float]) -> None:
        with session_scope() as session:
            self._embeddings.add(session, user_id, subject, lesson_id, list(vector))

    def recent_embeddings(self, user_id: str, subject: str, limit: int) -> List[List[float]]:
        with session_scope(commit=False) as session:
            return self._embeddings.recent(session, user_id, subject, limit)

    # learner profile

    def get_learner_profile(self, user_id: str) -> Optional[LearnerProfile]:
        with session_scope(commit=False) as session:
            return self._learners.get_profile(session, user_id)

    def upsert_learner_profile(self, profile: LearnerProfile) -> LearnerProfile:
        with session_scope() as session:
            return self._learners.upsert_profile(session, profile)

    # usage

    def generations_today(self, user_id: str) -> int:
        with session_scope(commit=False) as session:
            return self._learners.generations_on(session, user_id, datetime.now(timezone.utc).date())

    def record_generation(self, user_id: str) -> None:
        with session_scope() as session:
            self._learners.record_generation(session, user_id, datetime.now(timezone.utc).date())


delivery_store = DeliveryStore()

__all__ = ["DeliveryStore", "delivery_store"]
