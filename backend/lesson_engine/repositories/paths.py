"""Learning path and subject progress persistence."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.base import utcnow
from ..db.models import LearningPathModel, SubjectProgressModel
from ..path_state import (
    CompletionMap,
    DeliveryLog,
    LearningPath,
    PathCursor,
    PathStateRecord,
    ProgressRow,
    parse_learning_path,
)
from ..progress_metrics import ProgressMetricsSnapshot
from ..progress_writer import ProgressPatch, apply_patch, superseded

logger = logging.getLogger(__name__)


def normalize_user_id(user_id: str) -> str:
    normalized = user_id.strip()
    if not normalized:
        raise ValueError("User id cannot be empty.")
    return normalized


def normalize_subject(subject: str) -> str:
    normalized = " ".join(subject.split())
    if not normalized:
        raise ValueError("Subject cannot be empty.")
    return normalized


def aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LearningPathRepository:
    def _model(self, session: Session, user_id: str, subject: str) -> Optional[LearningPathModel]:
        stmt = select(LearningPathModel).where(
            LearningPathModel.user_id == normalize_user_id(user_id),
            LearningPathModel.subject == normalize_subject(subject),
        )
        return session.execute(stmt).scalar_one_or_none()

    def get(self, session: Session, user_id: str, subject: str) -> Optional[PathStateRecord]:
        model = self._model(session, user_id, subject)
        if model is None:
            return None
        return self._to_domain(model)

    def upsert(
        self, session: Session, user_id: str, subject: str, course: str, path: LearningPath
    ) -> PathStateRecord:
        model = self._model(session, user_id, subject)
        if model is None:
            model = LearningPathModel(
                user_id=normalize_user_id(user_id),
                subject=normalize_subject(subject),
            )
            session.add(model)
        model.course = course
        model.path = path.model_dump(mode="json")
        model.updated_at = utcnow()
        session.flush()
        return self._to_domain(model)

    def set_next_topic(self, session: Session, user_id: str, subject: str, next_topic: Optional[str]) -> None:
        model = self._model(session, user_id, subject)
        if model is None:
            return
        model.next_topic = next_topic
        model.updated_at = utcnow()

    def recent_subjects(self, session: Session, user_id: str) -> List[str]:
        stmt = (
            select(LearningPathModel.subject)
            .where(LearningPathModel.user_id == normalize_user_id(user_id))
            .order_by(LearningPathModel.updated_at.desc())
        )
        return list(session.execute(stmt).scalars())

    def _to_domain(self, model: LearningPathModel) -> PathStateRecord:
        path = parse_learning_path(model.path, model.course)
        if path is None:
            logger.warning("Stored learning path is unusable (user=%s subject=%s)", model.user_id, model.subject)
        return PathStateRecord(
            user_id=model.user_id,
            subject=model.subject,
            course=model.course,
            path=path,
            next_topic=model.next_topic,
            updated_at=aware(model.updated_at),
        )


class SubjectProgressRepository:
    def _select(self, user_id: str, subject: str, *, for_update: bool = False):  # type: ignore[no-untyped-def]
        stmt = select(SubjectProgressModel).where(
            SubjectProgressModel.user_id == normalize_user_id(user_id),
            SubjectProgressModel.subject == normalize_subject(subject),
        )
        if for_update:
            stmt = stmt.with_for_update()
        return stmt

    def get(self, session: Session, user_id: str, subject: str) -> ProgressRow:
        model = session.execute(self._select(user_id, subject)).scalar_one_or_none()
        if model is None:
            return ProgressRow(
                user_id=normalize_user_id(user_id),
                subject=normalize_subject(subject),
                cursor=PathCursor(),
                deliveries=DeliveryLog(),
                completion=CompletionMap(),
                metrics=None,
                exists=False,
            )
        return self._to_domain(model)

    def _locked_row(
        self, session: Session, user_id: str, subject: str, seed: Optional[LearningPath]
    ) -> SubjectProgressModel:
        model = session.execute(self._select(user_id, subject, for_update=True)).scalar_one_or_none()
        if model is not None:
            return model
        model = SubjectProgressModel(
            user_id=normalize_user_id(user_id),
            subject=normalize_subject(subject),
            delivery_records=[],
            completed=CompletionMap.seed_from_path(seed).to_rows() if seed is not None else [],
            metrics={},
        )
        try:
            with session.begin_nested():
                session.add(model)
                session.flush()
        except IntegrityError:
            # another request created the row first
            return session.execute(self._select(user_id, subject, for_update=True)).scalar_one()
        return model

    def apply_patch(
        self,
        session: Session,
        user_id: str,
        subject: str,
        patch: ProgressPatch,
        seed: Optional[LearningPath] = None,
    ) -> Tuple[ProgressRow, bool]:
        """Merge ``patch`` under the row lock; the flag is False when it was superseded."""
        model = self._locked_row(session, user_id, subject, seed)
        current = self._to_domain(model)
        accepted = not superseded(current.cursor, patch)
        cursor, deliveries, completion, metrics = apply_patch(
            current.cursor, current.deliveries, current.completion, current.metrics, patch
        )
        model.topic_idx = cursor.topic_index
        model.subtopic_idx = cursor.subtopic_index
        model.delivered_mini = cursor.delivered_mini
        model.delivery_records = deliveries.model_dump(mode="json")["entries"]
        model.completed = completion.to_rows()
        model.metrics = metrics.model_dump(mode="json") if metrics is not None else {}
        model.updated_at = utcnow()
        session.flush()
        return self._to_domain(model), accepted

    def _to_domain(self, model: SubjectProgressModel) -> ProgressRow:
        try:
            deliveries = DeliveryLog.model_validate({"entries": model.delivery_records or []})
        except ValidationError:
            logger.warning("Discarding malformed delivery records (user=%s subject=%s)", model.user_id, model.subject)
            deliveries = DeliveryLog()
        metrics: Optional[ProgressMetricsSnapshot] = None
        if model.metrics:
            try:
                metrics = ProgressMetricsSnapshot.model_validate(model.metrics)
            except ValidationError:
                logger.warning("Discarding malformed metrics snapshot (user=%s subject=%s)", model.user_id, model.subject)
        return ProgressRow(
            user_id=model.user_id,
            subject=model.subject,
            cursor=PathCursor(
                topic_index=max(0, model.topic_idx),
                subtopic_index=max(0, model.subtopic_idx),
                delivered_mini=max(0, model.delivered_mini),
            ),
            deliveries=deliveries,
            completion=CompletionMap.from_rows(model.completed or []),
            metrics=metrics,
            exists=True,
        )


__all__ = [
    "LearningPathRepository",
    "SubjectProgressRepository",
    "aware",
    "normalize_subject",
    "normalize_user_id",
]
