"""ORM models backing the lesson delivery store."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin, utcnow

JSONType = JSON


def _uuid() -> str:
    return str(uuid.uuid4())


class LearnerProfileModel(TimestampMixin, Base):
    __tablename__ = "learner_profiles"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    interests: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    level_map: Mapped[dict[str, str]] = mapped_column(JSONType, default=dict, nullable=False)


class LearningPathModel(TimestampMixin, Base):
    __tablename__ = "learning_paths"
    __table_args__ = (
        UniqueConstraint("user_id", "subject", name="uq_learning_paths_user_subject"),
        Index("ix_learning_paths_user_updated", "user_id", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(128), nullable=False)
    course: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    path: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    next_topic: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class SubjectProgressModel(TimestampMixin, Base):
    __tablename__ = "subject_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "subject", name="uq_subject_progress_user_subject"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(128), nullable=False)
    topic_idx: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    subtopic_idx: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    delivered_mini: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # [{"topic", "subtopic", "count", "ids", "titles"}]; composite keys, never "T > S" strings
    delivery_records: Mapped[list[dict]] = mapped_column(JSONType, default=list, nullable=False)
    # [{"topic", "subtopic"}] for every completed subtopic
    completed: Mapped[list[dict]] = mapped_column(JSONType, default=list, nullable=False)
    metrics: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)


class SubjectPreferenceModel(TimestampMixin, Base):
    __tablename__ = "subject_preferences"
    __table_args__ = (
        UniqueConstraint("user_id", "subject", name="uq_subject_preferences_user_subject"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(128), nullable=False)
    liked_ids: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    disliked_ids: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    saved_ids: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    tone_tags: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)


class LessonAttemptModel(Base):
    __tablename__ = "lesson_attempts"
    __table_args__ = (Index("ix_lesson_attempts_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    lesson_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    topic_label: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    correct_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class LessonCacheModel(TimestampMixin, Base):
    __tablename__ = "lesson_cache"
    __table_args__ = (
        UniqueConstraint("user_id", "subject", "topic", "subtopic", name="uq_lesson_cache_focus"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(128), nullable=False)
    topic: Mapped[str] = mapped_column(String(256), nullable=False)
    subtopic: Mapped[str] = mapped_column(String(256), nullable=False)
    lessons: Mapped[list[dict]] = mapped_column(JSONType, default=list, nullable=False)


class PendingLessonModel(TimestampMixin, Base):
    __tablename__ = "pending_lessons"
    __table_args__ = (
        Index("ix_pending_lessons_queue", "user_id", "subject", "position"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(128), nullable=False)
    topic: Mapped[str] = mapped_column(String(256), nullable=False)
    subtopic: Mapped[str] = mapped_column(String(256), nullable=False)
    lesson: Mapped[dict] = mapped_column(JSONType, nullable=False)
    persona_hash: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    embedding: Mapped[Optional[list[float]]] = mapped_column(JSONType, nullable=True)
    model_speed: Mapped[str] = mapped_column(String(8), nullable=False, default="slow")
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class GenerationLockModel(Base):
    __tablename__ = "generation_locks"
    __table_args__ = (
        UniqueConstraint("user_id", "subject", name="uq_generation_locks_user_subject"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(128), nullable=False)
    owner: Mapped[str] = mapped_column(String(36), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class LessonEmbeddingModel(Base):
    __tablename__ = "lesson_embeddings"
    __table_args__ = (
        Index("ix_lesson_embeddings_user_subject_created", "user_id", "subject", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(128), nullable=False)
    lesson_id: Mapped[str] = mapped_column(String(128), nullable=False)
    vector: Mapped[list[float]] = mapped_column(JSONType, nullable=False)
    norm: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class GenerationUsageModel(Base):
    __tablename__ = "generation_usage"
    __table_args__ = (UniqueConstraint("user_id", "day", name="uq_generation_usage_user_day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


__all__ = [
    "GenerationLockModel",
    "GenerationUsageModel",
    "LearnerProfileModel",
    "LearningPathModel",
    "LessonAttemptModel",
    "LessonCacheModel",
    "LessonEmbeddingModel",
    "PendingLessonModel",
    "SubjectPreferenceModel",
    "SubjectProgressModel",
]
