"""Learner profile, preferences, attempt history, usage counters and locks."""

from __future__ import annotations

from datetime import date, timedelta
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.base import utcnow
from ..db.models import (
    GenerationLockModel,
    GenerationUsageModel,
    LearnerProfileModel,
    LessonAttemptModel,
    SubjectPreferenceModel,
)
from ..preferences import PreferenceSet, normalize_ids
from ..progress_metrics import AttemptRecord
from ..subjects import LearnerProfile
from .paths import aware, normalize_subject, normalize_user_id

ATTEMPT_HISTORY_LIMIT = 200


class LearnerRepository:
    def get_profile(self, session: Session, user_id: str) -> Optional[LearnerProfile]:
        model = session.get(LearnerProfileModel, normalize_user_id(user_id))
        if model is None:
            return None
        return LearnerProfile(
            user_id=model.user_id,
            interests=[value for value in model.interests or [] if isinstance(value, str)],
            level_map={
                str(key): str(value)
                for key, value in (model.level_map or {}).items()
                if isinstance(value, str)
            },
        )

    def upsert_profile(self, session: Session, profile: LearnerProfile) -> LearnerProfile:
        user_id = normalize_user_id(profile.user_id)
        model = session.get(LearnerProfileModel, user_id)
        if model is None:
            model = LearnerProfileModel(user_id=user_id)
            session.add(model)
        model.interests = list(profile.interests)
        model.level_map = dict(profile.level_map)
        model.updated_at = utcnow()
        session.flush()
        return profile.model_copy(update={"user_id": user_id})

    def _preference_model(self, session: Session, user_id: str, subject: str) -> Optional[SubjectPreferenceModel]:
        stmt = select(SubjectPreferenceModel).where(
            SubjectPreferenceModel.user_id == normalize_user_id(user_id),
            SubjectPreferenceModel.subject == normalize_subject(subject),
        )
        return session.execute(stmt).scalar_one_or_none()

    def get_preferences(self, session: Session, user_id: str, subject: str) -> PreferenceSet:
        model = self._preference_model(session, user_id, subject)
        if model is None:
            return PreferenceSet()
        return PreferenceSet(
            liked=normalize_ids(model.liked_ids),
            disliked=normalize_ids(model.disliked_ids),
            saved=normalize_ids(model.saved_ids),
            tone_tags=normalize_ids(model.tone_tags),
        )

    def save_preferences(
        self, session: Session, user_id: str, subject: str, preferences: PreferenceSet
    ) -> PreferenceSet:
        model = self._preference_model(session, user_id, subject)
        if model is None:
            model = SubjectPreferenceModel(
                user_id=normalize_user_id(user_id),
                subject=normalize_subject(subject),
            )
            session.add(model)
        model.liked_ids = list(preferences.liked)
        model.disliked_ids = list(preferences.disliked)
        model.saved_ids = list(preferences.saved)
        model.tone_tags = list(preferences.tone_tags)
        model.updated_at = utcnow()
        session.flush()
        return preferences

    def add_attempt(
        self,
        session: Session,
        user_id: str,
        subject: Optional[str],
        lesson_id: Optional[str],
        topic_label: Optional[str],
        correct_count: int,
        total: int,
    ) -> AttemptRecord:
        model = LessonAttemptModel(
            user_id=normalize_user_id(user_id),
            subject=normalize_subject(subject) if subject and subject.strip() else None,
            lesson_id=lesson_id,
            topic_label=topic_label,
            correct_count=correct_count,
            total=total,
            created_at=utcnow(),
        )
        session.add(model)
        session.flush()
        return self._attempt(model)

    def list_attempts(
        self, session: Session, user_id: str, limit: int = ATTEMPT_HISTORY_LIMIT
    ) -> List[AttemptRecord]:
        stmt = (
            select(LessonAttemptModel)
            .where(LessonAttemptModel.user_id == normalize_user_id(user_id))
            .order_by(LessonAttemptModel.created_at.desc())
            .limit(limit)
        )
        return [self._attempt(model) for model in session.execute(stmt).scalars()]

    def _attempt(self, model: LessonAttemptModel) -> AttemptRecord:
        return AttemptRecord(
            subject=model.subject,
            lesson_id=model.lesson_id,
            correct_count=model.correct_count,
            total=model.total,
            created_at=aware(model.created_at) or utcnow(),
        )

    def generations_on(self, session: Session, user_id: str, day: date) -> int:
        stmt = select(GenerationUsageModel.count).where(
            GenerationUsageModel.user_id == normalize_user_id(user_id),
            GenerationUsageModel.day == day,
        )
        return int(session.execute(stmt).scalar_one_or_none() or 0)

    def record_generation(self, session: Session, user_id: str, day: date) -> None:
        user_id = normalize_user_id(user_id)
        stmt = select(GenerationUsageModel).where(
            GenerationUsageModel.user_id == user_id,
            GenerationUsageModel.day == day,
        )
        model = session.execute(stmt).scalar_one_or_none()
        if model is None:
            session.add(GenerationUsageModel(user_id=user_id, day=day, count=1))
        else:
            model.count += 1
        session.flush()


class GenerationLockRepository:
    """Row-based lease on (user, subject); the unique constraint arbitrates."""

    def try_acquire(
        self, session: Session, user_id: str, subject: str, owner: str, ttl: timedelta
    ) -> bool:
        user_id, subject = normalize_user_id(user_id), normalize_subject(subject)
        now = utcnow()
        session.execute(
            delete(GenerationLockModel).where(
                GenerationLockModel.user_id == user_id,
                GenerationLockModel.subject == subject,
                GenerationLockModel.expires_at < now,
            )
        )
        try:
            with session.begin_nested():
                session.add(
                    GenerationLockModel(
                        user_id=user_id,
                        subject=subject,
                        owner=owner,
                        locked_at=now,
                        expires_at=now + ttl,
                    )
                )
                session.flush()
        except IntegrityError:
            return False
        return True

    def release(self, session: Session, user_id: str, subject: str, owner: str) -> bool:
        result = session.execute(
            delete(GenerationLockModel).where(
                GenerationLockModel.user_id == normalize_user_id(user_id),
                GenerationLockModel.subject == normalize_subject(subject),
                GenerationLockModel.owner == owner,
            )
        )
        return bool(result.rowcount)


__all__ = [
    "ATTEMPT_HISTORY_LIMIT",
    "GenerationLockRepository",
    "LearnerRepository",
]
