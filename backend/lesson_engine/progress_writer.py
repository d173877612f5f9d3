"""Progress patches applied after a lesson is served.

A patch describes the change (cursor move, delivered id/title append, mini
counter increment, metrics refresh, completion marks). The store applies it
in one transaction with the progress row locked, so two concurrent requests
for the same subject cannot lose each other's updates.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

from pydantic import BaseModel, Field

from .path_state import CompletionMap, DeliveryLog, FocusLabel, PathCursor
from .progress_metrics import ProgressMetricsSnapshot
from .telemetry import emit_event

if TYPE_CHECKING:  # pragma: no cover
    from .path_state import ProgressRow
    from .store import DeliveryStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 50


class CompletionMark(BaseModel):
    topic: str
    subtopic: str


class ProgressPatch(BaseModel):
    topic: str
    subtopic: str
    cursor: Optional[PathCursor] = None
    read_cursor: Optional[PathCursor] = None
    delivered_mini_delta: int = Field(default=0, ge=0)
    planned_mini: Optional[int] = Field(default=None, ge=1)
    lesson_id: Optional[str] = None
    lesson_title: Optional[str] = None
    complete_when_planned: bool = True
    mark_complete: List[CompletionMark] = Field(default_factory=list)
    metrics: Optional[ProgressMetricsSnapshot] = None
    next_topic: Optional[str] = None
    update_next_topic: bool = False
    retention: int = Field(default=DEFAULT_RETENTION, ge=1)

    @property
    def focus(self) -> FocusLabel:
        return FocusLabel(self.topic, self.subtopic)

    @classmethod
    def for_delivery(
        cls,
        focus: FocusLabel,
        cursor: PathCursor,
        planned_mini: int,
        lesson_id: str,
        lesson_title: str,
        metrics: Optional[ProgressMetricsSnapshot],
        next_topic: Optional[FocusLabel],
        retention: int = DEFAULT_RETENTION,
        read_cursor: Optional[PathCursor] = None,
        count_mini: bool = True,
    ) -> "ProgressPatch":
        """Patch for one served lesson. Cache hits pass ``count_mini=False``."""
        return cls(
            topic=focus.topic,
            subtopic=focus.subtopic,
            cursor=cursor,
            read_cursor=read_cursor,
            delivered_mini_delta=1 if count_mini else 0,
            planned_mini=planned_mini,
            lesson_id=lesson_id,
            lesson_title=lesson_title,
            metrics=metrics,
            next_topic=next_topic.label if next_topic else None,
            update_next_topic=True,
            retention=retention,
        )


def _position(cursor: PathCursor) -> tuple[int, int]:
    return cursor.topic_index, cursor.subtopic_index


def superseded(stored: PathCursor, patch: ProgressPatch) -> bool:
    """True when another request moved the stored cursor after ``patch`` was computed.

    With ``read_cursor`` known, any move away from it that is not the patch's
    own target counts. Without it, only a stored cursor ahead of the target does.
    """
    if patch.cursor is None or _position(stored) == _position(patch.cursor):
        return False
    if patch.read_cursor is not None:
        return _position(stored) != _position(patch.read_cursor)
    return _position(stored) > _position(patch.cursor)


def apply_patch(
    cursor: PathCursor,
    deliveries: DeliveryLog,
    completion: CompletionMap,
    metrics: Optional[ProgressMetricsSnapshot],
    patch: ProgressPatch,
) -> tuple[PathCursor, DeliveryLog, CompletionMap, Optional[ProgressMetricsSnapshot]]:
    """Pure merge of a patch onto the current row state. Runs under the row lock.

    A superseded patch keeps the stored cursor and counter; only its delivery
    record, explicit marks and metrics land.
    """
    stale = superseded(cursor, patch)
    if stale or patch.cursor is None:
        updated_cursor = cursor.model_copy()
    else:
        updated_cursor = patch.cursor.model_copy()
        if _position(patch.cursor) == _position(cursor):
            # same position: concurrent deliveries have already advanced the counter
            updated_cursor.delivered_mini = max(cursor.delivered_mini, patch.cursor.delivered_mini)

    delta = 0 if stale else patch.delivered_mini_delta
    delivered = updated_cursor.delivered_mini + delta
    if patch.planned_mini is not None and not stale:
        delivered = min(delivered, patch.planned_mini)
    updated_cursor.delivered_mini = delivered

    log = deliveries.model_copy(deep=True)
    if patch.lesson_id or patch.lesson_title:
        log.record(patch.focus, patch.lesson_id, patch.lesson_title, patch.retention)

    marks = completion.copy()
    for mark in patch.mark_complete:
        marks.mark(FocusLabel(mark.topic, mark.subtopic))
    if (
        patch.complete_when_planned
        and patch.planned_mini is not None
        and delta > 0
        and delivered >= patch.planned_mini
    ):
        marks.mark(patch.focus)

    return updated_cursor, log, marks, patch.metrics or metrics


class ProgressWriter:
    def __init__(self, store: "DeliveryStore") -> None:
        self._store = store

    def apply(self, user_id: str, subject: str, patch: ProgressPatch) -> Optional["ProgressRow"]:
        """Apply ``patch``; failures are logged and reported, never raised."""
        try:
            return self._store.apply_progress_patch(user_id, subject, patch)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Progress patch failed (subject=%s focus=%s)", subject, patch.focus.label)
            emit_event(
                "progress_patch_failed",
                user_id=user_id,
                subject=subject,
                focus=patch.focus.label,
                error=str(exc),
            )
            return None


__all__ = [
    "CompletionMark",
    "ProgressPatch",
    "ProgressWriter",
    "apply_patch",
    "superseded",
]
