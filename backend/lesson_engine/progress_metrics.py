"""Accuracy and pace rollup over a learner's attempt history."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

FAST_PACE_THRESHOLD = 8
PACE_WINDOW = timedelta(hours=72)

Pace = Literal["slow", "fast"]


class AttemptRecord(BaseModel):
    subject: Optional[str] = None
    lesson_id: Optional[str] = None
    correct_count: int = Field(ge=0)
    total: int = Field(ge=0)
    created_at: datetime


class ProgressMetricsSnapshot(BaseModel):
    accuracy_pct: Optional[int] = Field(default=None, ge=0, le=100)
    pace: Pace = "slow"
    computed_at: datetime
    sample_size: int = 0
    recent_sample: int = 0
    last_attempt_at: Optional[datetime] = None

    @property
    def accuracy_band(self) -> int:
        return accuracy_band(self.accuracy_pct)


def accuracy_band(accuracy_pct: Optional[int]) -> int:
    """0: <50, 1: 50-69, 2: 70-84, 3: >=85. Unknown accuracy is -1."""
    if accuracy_pct is None:
        return -1
    if accuracy_pct < 50:
        return 0
    if accuracy_pct < 70:
        return 1
    if accuracy_pct < 85:
        return 2
    return 3


def select_attempts(attempts: Sequence[AttemptRecord], subject: Optional[str]) -> List[AttemptRecord]:
    """Subject match first, then untagged attempts, then everything."""
    if subject:
        wanted = subject.strip().lower()
        matched = [a for a in attempts if a.subject and a.subject.strip().lower() == wanted]
        if matched:
            return matched
    untagged = [a for a in attempts if not a.subject]
    if untagged:
        return untagged
    return list(attempts)


def latest_attempt_at(attempts: Sequence[AttemptRecord]) -> Optional[datetime]:
    if not attempts:
        return None
    return max(_aware(a.created_at) for a in attempts)


def compute_metrics(
    attempts: Sequence[AttemptRecord],
    subject: Optional[str],
    now: Optional[datetime] = None,
) -> ProgressMetricsSnapshot:
    now = now or datetime.now(timezone.utc)
    selected = select_attempts(attempts, subject)
    correct = sum(a.correct_count for a in selected)
    total = sum(a.total for a in selected)
    accuracy = round(100 * correct / total) if total > 0 else None
    if accuracy is not None:
        accuracy = max(0, min(100, accuracy))
    cutoff = now - PACE_WINDOW
    recent = sum(1 for a in selected if _aware(a.created_at) >= cutoff)
    return ProgressMetricsSnapshot(
        accuracy_pct=accuracy,
        pace="fast" if recent > FAST_PACE_THRESHOLD else "slow",
        computed_at=now,
        sample_size=len(selected),
        recent_sample=recent,
        last_attempt_at=latest_attempt_at(attempts),
    )


def needs_refresh(snapshot: Optional[ProgressMetricsSnapshot], attempts: Sequence[AttemptRecord]) -> bool:
    if snapshot is None:
        return True
    latest = latest_attempt_at(attempts)
    if latest is None:
        return False
    if snapshot.last_attempt_at is None:
        return True
    return latest > _aware(snapshot.last_attempt_at)


def refresh_metrics(
    snapshot: Optional[ProgressMetricsSnapshot],
    attempts: Sequence[AttemptRecord],
    subject: Optional[str],
    now: Optional[datetime] = None,
) -> Tuple[ProgressMetricsSnapshot, bool]:
    """Recompute only when an attempt newer than the snapshot exists."""
    if snapshot is not None and not needs_refresh(snapshot, attempts):
        return snapshot, False
    return compute_metrics(attempts, subject, now=now), True


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = [
    "AttemptRecord",
    "FAST_PACE_THRESHOLD",
    "PACE_WINDOW",
    "ProgressMetricsSnapshot",
    "accuracy_band",
    "compute_metrics",
    "latest_attempt_at",
    "needs_refresh",
    "refresh_metrics",
    "select_attempts",
]
