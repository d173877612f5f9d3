"""Per-focus lesson cache rows, the pending queue and delivered embeddings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..db.base import utcnow
from ..db.models import LessonCacheModel, LessonEmbeddingModel, PendingLessonModel
from ..path_state import FocusLabel
from .paths import aware, normalize_subject, normalize_user_id

EMBEDDING_RETENTION = 50


class LessonCacheRepository:
    def _model(self, session: Session, user_id: str, subject: str, focus: FocusLabel) -> Optional[LessonCacheModel]:
        stmt = select(LessonCacheModel).where(
            LessonCacheModel.user_id == normalize_user_id(user_id),
            LessonCacheModel.subject == normalize_subject(subject),
            LessonCacheModel.topic == focus.topic,
            LessonCacheModel.subtopic == focus.subtopic,
        )
        return session.execute(stmt).scalar_one_or_none()

    def get(self, session: Session, user_id: str, subject: str, focus: FocusLabel) -> List[Dict[str, Any]]:
        model = self._model(session, user_id, subject, focus)
        if model is None:
            return []
        return [dict(item) for item in model.lessons or [] if isinstance(item, dict)]

    def put(
        self,
        session: Session,
        user_id: str,
        subject: str,
        focus: FocusLabel,
        lessons: List[Dict[str, Any]],
    ) -> None:
        model = self._model(session, user_id, subject, focus)
        if model is None:
            model = LessonCacheModel(
                user_id=normalize_user_id(user_id),
                subject=normalize_subject(subject),
                topic=focus.topic,
                subtopic=focus.subtopic,
            )
            session.add(model)
        model.lessons = lessons
        model.updated_at = utcnow()
        session.flush()


@dataclass
class PendingRow:
    id: str
    focus: FocusLabel
    lesson: Dict[str, Any]
    persona_hash: str
    embedding: Optional[List[float]]
    model_speed: str
    position: int
    created_at: datetime


class PendingLessonRepository:
    def _queue(self, session: Session, user_id: str, subject: str) -> List[PendingLessonModel]:
        stmt = (
            select(PendingLessonModel)
            .where(
                PendingLessonModel.user_id == normalize_user_id(user_id),
                PendingLessonModel.subject == normalize_subject(subject),
            )
            .order_by(PendingLessonModel.position, PendingLessonModel.created_at)
        )
        return list(session.execute(stmt).scalars())

    def _renumber(self, models: List[PendingLessonModel]) -> None:
        for index, model in enumerate(models):
            if model.position != index:
                model.position = index

    def count(self, session: Session, user_id: str, subject: str) -> int:
        stmt = select(func.count(PendingLessonModel.id)).where(
            PendingLessonModel.user_id == normalize_user_id(user_id),
            PendingLessonModel.subject == normalize_subject(subject),
        )
        return int(session.execute(stmt).scalar_one())

    def list(self, session: Session, user_id: str, subject: str) -> List[PendingRow]:
        return [self._to_domain(model) for model in self._queue(session, user_id, subject)]

    def pop_head(self, session: Session, user_id: str, subject: str) -> Optional[PendingRow]:
        """Lock, read and delete the head row. ``None`` if empty or taken by another consumer."""
        stmt = (
            select(PendingLessonModel)
            .where(
                PendingLessonModel.user_id == normalize_user_id(user_id),
                PendingLessonModel.subject == normalize_subject(subject),
            )
            .order_by(PendingLessonModel.position, PendingLessonModel.created_at)
            .limit(1)
            .with_for_update()
        )
        model = session.execute(stmt).scalar_one_or_none()
        if model is None:
            return None
        row = self._to_domain(model)
        result = session.execute(
            delete(PendingLessonModel)
            .where(PendingLessonModel.id == row.id)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return None
        session.expunge(model)
        self._renumber(self._queue(session, user_id, subject))
        session.flush()
        return row

    def enqueue(
        self,
        session: Session,
        user_id: str,
        subject: str,
        focus: FocusLabel,
        lesson: Dict[str, Any],
        persona_hash: str,
        embedding: Optional[List[float]],
        model_speed: str,
        max_depth: int,
    ) -> Optional[PendingRow]:
        queue = self._queue(session, user_id, subject)
        if len(queue) >= max_depth:
            return None
        self._renumber(queue)
        model = PendingLessonModel(
            user_id=normalize_user_id(user_id),
            subject=normalize_subject(subject),
            topic=focus.topic,
            subtopic=focus.subtopic,
            lesson=lesson,
            persona_hash=persona_hash,
            embedding=embedding,
            model_speed=model_speed,
            position=len(queue),
        )
        session.add(model)
        session.flush()
        return self._to_domain(model)

    def remove(self, session: Session, user_id: str, subject: str, pending_id: str) -> bool:
        queue = self._queue(session, user_id, subject)
        target = next((model for model in queue if model.id == pending_id), None)
        if target is None:
            return False
        session.delete(target)
        self._renumber([model for model in queue if model is not target])
        session.flush()
        return True

    def cleanup_stale(self, session: Session, user_id: str, subject: str, cutoff: datetime) -> int:
        queue = self._queue(session, user_id, subject)
        stale = [model for model in queue if aware(model.created_at) < cutoff]
        for model in stale:
            session.delete(model)
        self._renumber([model for model in queue if model not in stale])
        session.flush()
        return len(stale)

    def _to_domain(self, model: PendingLessonModel) -> PendingRow:
        return PendingRow(
            id=model.id,
            focus=FocusLabel(model.topic, model.subtopic),
            lesson=dict(model.lesson or {}),
            persona_hash=model.persona_hash,
            embedding=list(model.embedding) if model.embedding else None,
            model_speed=model.model_speed,
            position=model.position,
            created_at=aware(model.created_at) or utcnow(),
        )


class LessonEmbeddingRepository:
    def add(self, session: Session, user_id: str, subject: str, lesson_id: str, vector: List[float]) -> None:
        user_id, subject = normalize_user_id(user_id), normalize_subject(subject)
        session.add(
            LessonEmbeddingModel(
                user_id=user_id,
                subject=subject,
                lesson_id=lesson_id,
                vector=list(vector),
                norm=sum(value * value for value in vector) ** 0.5,
            )
        )
        session.flush()
        stale_ids = (
            select(LessonEmbeddingModel.id)
            .where(LessonEmbeddingModel.user_id == user_id, LessonEmbeddingModel.subject == subject)
            .order_by(LessonEmbeddingModel.created_at.desc(), LessonEmbeddingModel.id.desc())
            .offset(EMBEDDING_RETENTION)
        )
        doomed = list(session.execute(stale_ids).scalars())
        if doomed:
            session.execute(delete(LessonEmbeddingModel).where(LessonEmbeddingModel.id.in_(doomed)))

    def recent(self, session: Session, user_id: str, subject: str, limit: int) -> List[List[float]]:
        stmt = (
            select(LessonEmbeddingModel.vector)
            .where(
                LessonEmbeddingModel.user_id == normalize_user_id(user_id),
                LessonEmbeddingModel.subject == normalize_subject(subject),
            )
            .order_by(LessonEmbeddingModel.created_at.desc(), LessonEmbeddingModel.id.desc())
            .limit(limit)
        )
        return [list(vector) for vector in session.execute(stmt).scalars() if vector]


__all__ = [
    "EMBEDDING_RETENTION",
    "LessonCacheRepository",
    "LessonEmbeddingRepository",
    "PendingLessonRepository",
    "PendingRow",
]
