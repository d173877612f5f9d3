"""Lesson delivery schema."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20250124_01_lesson_delivery_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "learner_profiles",
        sa.Column("user_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("interests", sa.JSON(), nullable=False),
        sa.Column("level_map", sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "learning_paths",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=128), nullable=False),
        sa.Column("course", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("path", sa.JSON(), nullable=False),
        sa.Column("next_topic", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "subject", name="uq_learning_paths_user_subject"),
    )
    op.create_index("ix_learning_paths_user_updated", "learning_paths", ["user_id", "updated_at"])

    op.create_table(
        "subject_progress",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=128), nullable=False),
        sa.Column("topic_idx", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subtopic_idx", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivered_mini", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivery_records", sa.JSON(), nullable=False),
        sa.Column("completed", sa.JSON(), nullable=False),
        sa.Column("metrics", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "subject", name="uq_subject_progress_user_subject"),
    )

    op.create_table(
        "subject_preferences",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=128), nullable=False),
        sa.Column("liked_ids", sa.JSON(), nullable=False),
        sa.Column("disliked_ids", sa.JSON(), nullable=False),
        sa.Column("saved_ids", sa.JSON(), nullable=False),
        sa.Column("tone_tags", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "subject", name="uq_subject_preferences_user_subject"),
    )

    op.create_table(
        "lesson_attempts",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=128), nullable=True),
        sa.Column("lesson_id", sa.String(length=128), nullable=True),
        sa.Column("topic_label", sa.Text(), nullable=True),
        sa.Column("correct_count", sa.Integer(), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_lesson_attempts_user_created", "lesson_attempts", ["user_id", "created_at"])

    op.create_table(
        "lesson_cache",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=128), nullable=False),
        sa.Column("topic", sa.String(length=256), nullable=False),
        sa.Column("subtopic", sa.String(length=256), nullable=False),
        sa.Column("lessons", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "subject", "topic", "subtopic", name="uq_lesson_cache_focus"),
    )

    op.create_table(
        "pending_lessons",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=128), nullable=False),
        sa.Column("topic", sa.String(length=256), nullable=False),
        sa.Column("subtopic", sa.String(length=256), nullable=False),
        sa.Column("lesson", sa.JSON(), nullable=False),
        sa.Column("persona_hash", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("embedding", sa.JSON(), nullable=True),
        sa.Column("model_speed", sa.String(length=8), nullable=False, server_default="slow"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_pending_lessons_queue", "pending_lessons", ["user_id", "subject", "position"])

    op.create_table(
        "generation_locks",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=128), nullable=False),
        sa.Column("owner", sa.String(length=36), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "subject", name="uq_generation_locks_user_subject"),
    )

    op.create_table(
        "lesson_embeddings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=128), nullable=False),
        sa.Column("lesson_id", sa.String(length=128), nullable=False),
        sa.Column("vector", sa.JSON(), nullable=False),
        sa.Column("norm", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index(
        "ix_lesson_embeddings_user_subject_created",
        "lesson_embeddings",
        ["user_id", "subject", "created_at"],
    )

    op.create_table(
        "generation_usage",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("user_id", "day", name="uq_generation_usage_user_day"),
    )


def downgrade() -> None:
    op.drop_table("generation_usage")
    op.drop_index("ix_lesson_embeddings_user_subject_created", table_name="lesson_embeddings")
    op.drop_table("lesson_embeddings")
    op.drop_table("generation_locks")
    op.drop_index("ix_pending_lessons_queue", table_name="pending_lessons")
    op.drop_table("pending_lessons")
    op.drop_table("lesson_cache")
    op.drop_index("ix_lesson_attempts_user_created", table_name="lesson_attempts")
    op.drop_table("lesson_attempts")
    op.drop_table("subject_preferences")
    op.drop_table("subject_progress")
    op.drop_index("ix_learning_paths_user_updated", table_name="learning_paths")
    op.drop_table("learning_paths")
    op.drop_table("learner_profiles")
