"""Learning path tree, curriculum cursor and the path synthesis service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import (
    Generating,
    GeneratorError,
    InvalidLessonFormat,
    NotReady,
    RETRY_AFTER_FORMAT_ERROR,
    RETRY_AFTER_LOCK_BUSY,
    ServerError,
)
from .progress_metrics import ProgressMetricsSnapshot
from .telemetry import emit_event

if TYPE_CHECKING:  # pragma: no cover
    from .generator import LessonGenerator
    from .locks import GenerationLockManager
    from .store import DeliveryStore

logger = logging.getLogger(__name__)

MAX_MINI_LESSONS = 12


class Subtopic(BaseModel):
    name: str = Field(..., min_length=1)
    mini_lessons: int = Field(default=1, ge=1, le=MAX_MINI_LESSONS)
    completed: bool = False
    applications: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("subtopic name cannot be blank")
        return stripped

    @field_validator("mini_lessons", mode="before")
    @classmethod
    def _clamp_mini(cls, value: Any) -> int:
        try:
            number = int(value)
        except (TypeError, ValueError):
            return 1
        return min(MAX_MINI_LESSONS, max(1, number))


class Topic(BaseModel):
    name: str = Field(..., min_length=1)
    completed: bool = False
    subtopics: List[Subtopic] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("topic name cannot be blank")
        return stripped


class LearningPath(BaseModel):
    course: str = ""
    starting_topic: Optional[str] = None
    topics: List[Topic] = Field(default_factory=list)

    def subtopic_at(self, topic_index: int, subtopic_index: int) -> Optional[Subtopic]:
        if not 0 <= topic_index < len(self.topics):
            return None
        subtopics = self.topics[topic_index].subtopics
        if not 0 <= subtopic_index < len(subtopics):
            return None
        return subtopics[subtopic_index]

    def iter_positions(self) -> Iterator[Tuple[int, int]]:
        for ti, topic in enumerate(self.topics):
            for si in range(len(topic.subtopics)):
                yield ti, si

    def label_at(self, topic_index: int, subtopic_index: int) -> Optional["FocusLabel"]:
        sub = self.subtopic_at(topic_index, subtopic_index)
        if sub is None:
            return None
        return FocusLabel(self.topics[topic_index].name, sub.name)


@dataclass(frozen=True, order=True)
class FocusLabel:
    """Composite (topic, subtopic) key. ``label`` is for display only."""

    topic: str
    subtopic: str

    @property
    def label(self) -> str:
        return f"{self.topic} > {self.subtopic}"

    def as_key(self) -> Dict[str, str]:
        return {"topic": self.topic, "subtopic": self.subtopic}

    @classmethod
    def from_key(cls, payload: Dict[str, Any]) -> Optional["FocusLabel"]:
        topic = payload.get("topic")
        subtopic = payload.get("subtopic")
        if isinstance(topic, str) and isinstance(subtopic, str) and topic and subtopic:
            return cls(topic, subtopic)
        return None

    @classmethod
    def parse(cls, label: str) -> Optional["FocusLabel"]:
        """Best-effort parse of a display label coming from a client."""
        topic, sep, subtopic = label.partition(">")
        if not sep:
            return None
        topic, subtopic = topic.strip(), subtopic.strip()
        if not topic or not subtopic:
            return None
        return cls(topic, subtopic)

    def __str__(self) -> str:
        return self.label


class PathCursor(BaseModel):
    topic_index: int = Field(default=0, ge=0)
    subtopic_index: int = Field(default=0, ge=0)
    delivered_mini: int = Field(default=0, ge=0)


class CompletionMap:
    """Set of completed subtopics. Entries are only ever added."""

    def __init__(self, completed: Iterable[FocusLabel] = ()) -> None:
        self._completed = set(completed)

    @classmethod
    def seed_from_path(cls, path: LearningPath) -> "CompletionMap":
        """One-time migration from the flags embedded in the path document."""
        seeded = cls()
        for topic in path.topics:
            for sub in topic.subtopics:
                if sub.completed or topic.completed:
                    seeded.mark(FocusLabel(topic.name, sub.name))
        return seeded

    @classmethod
    def from_rows(cls, rows: Iterable[Dict[str, Any]]) -> "CompletionMap":
        labels = (FocusLabel.from_key(row) for row in rows if isinstance(row, dict))
        return cls(label for label in labels if label is not None)

    def to_rows(self) -> List[Dict[str, str]]:
        return [label.as_key() for label in sorted(self._completed)]

    def copy(self) -> "CompletionMap":
        return CompletionMap(self._completed)

    def mark(self, label: FocusLabel) -> None:
        self._completed.add(label)

    def is_complete(self, label: Optional[FocusLabel]) -> bool:
        return label is not None and label in self._completed

    def __contains__(self, label: object) -> bool:
        return label in self._completed

    def __len__(self) -> int:
        return len(self._completed)


class DeliveryEntry(BaseModel):
    topic: str
    subtopic: str
    count: int = 0
    ids: List[str] = Field(default_factory=list)
    titles: List[str] = Field(default_factory=list)

    @property
    def focus(self) -> FocusLabel:
        return FocusLabel(self.topic, self.subtopic)


class DeliveryLog(BaseModel):
    """Delivered lesson ids and titles per focus label, oldest first."""

    entries: List[DeliveryEntry] = Field(default_factory=list)

    def _find(self, focus: FocusLabel) -> Optional[DeliveryEntry]:
        for entry in self.entries:
            if entry.topic == focus.topic and entry.subtopic == focus.subtopic:
                return entry
        return None

    def for_focus(self, focus: FocusLabel) -> DeliveryEntry:
        return self._find(focus) or DeliveryEntry(topic=focus.topic, subtopic=focus.subtopic)

    def record(self, focus: FocusLabel, lesson_id: Optional[str], title: Optional[str], retention: int) -> None:
        entry = self._find(focus)
        if entry is None:
            entry = DeliveryEntry(topic=focus.topic, subtopic=focus.subtopic)
            self.entries.append(entry)
        entry.count += 1
        if lesson_id:
            entry.ids = _append_recent(entry.ids, lesson_id, retention)
        if title:
            entry.titles = _append_recent(entry.titles, title, retention)

    def all_ids(self) -> List[str]:
        return [lesson_id for entry in self.entries for lesson_id in entry.ids]


def _append_recent(values: List[str], value: str, retention: int) -> List[str]:
    trimmed = value.strip()
    if not trimmed:
        return values
    updated = [item for item in values if item != trimmed]
    updated.append(trimmed)
    return updated[-retention:]


@dataclass
class PathStateRecord:
    user_id: str
    subject: str
    course: str
    path: Optional[LearningPath]
    next_topic: Optional[str]
    updated_at: Optional[datetime]

    @property
    def is_valid(self) -> bool:
        return self.path is not None and bool(self.path.topics)


@dataclass
class ProgressRow:
    user_id: str
    subject: str
    cursor: PathCursor
    deliveries: DeliveryLog
    completion: CompletionMap
    metrics: Optional[ProgressMetricsSnapshot]
    exists: bool = True


def parse_learning_path(raw: Any, course: str = "") -> Optional[LearningPath]:
    """Normalize a stored or generated path document. ``None`` means unusable."""
    if isinstance(raw, LearningPath):
        return raw if raw.topics else None
    if not isinstance(raw, dict):
        return None
    topics_raw = raw.get("topics")
    if not isinstance(topics_raw, list):
        return None
    topics: List[Topic] = []
    for item in topics_raw:
        if not isinstance(item, dict):
            continue
        subtopics: List[Subtopic] = []
        for sub in item.get("subtopics") or []:
            if not isinstance(sub, dict):
                continue
            try:
                subtopics.append(Subtopic.model_validate(sub))
            except ValidationError:
                logger.debug("Dropping malformed subtopic %r", sub)
        if not subtopics:
            continue
        try:
            topics.append(
                Topic(
                    name=str(item.get("name") or ""),
                    completed=bool(item.get("completed", False)),
                    subtopics=subtopics,
                )
            )
        except ValidationError:
            logger.debug("Dropping malformed topic %r", item.get("name"))
    if not topics:
        return None
    starting = raw.get("starting_topic")
    return LearningPath(
        course=str(raw.get("course") or course or ""),
        starting_topic=starting if isinstance(starting, str) else None,
        topics=topics,
    )


def clamp_cursor(path: LearningPath, cursor: PathCursor) -> PathCursor:
    """Reset a cursor that points outside the path, cap the mini counter."""
    sub = path.subtopic_at(cursor.topic_index, cursor.subtopic_index)
    if sub is None:
        return PathCursor()
    if cursor.delivered_mini > sub.mini_lessons:
        return cursor.model_copy(update={"delivered_mini": sub.mini_lessons})
    return cursor


def first_incomplete(path: LearningPath, completion: CompletionMap) -> Optional[Tuple[int, int]]:
    for ti, si in path.iter_positions():
        if not completion.is_complete(path.label_at(ti, si)):
            return ti, si
    return None


def advance_cursor(path: LearningPath, cursor: PathCursor, completion: CompletionMap) -> PathCursor:
    """Move the cursor off a completed subtopic.

    An incomplete current subtopic keeps the cursor where it is. A completed
    one resets the mini counter and jumps to the earliest incomplete subtopic
    in the whole path. When everything is complete the cursor is left alone.
    """
    cursor = clamp_cursor(path, cursor)
    if not completion.is_complete(path.label_at(cursor.topic_index, cursor.subtopic_index)):
        return cursor
    target = first_incomplete(path, completion)
    if target is None:
        return cursor
    return PathCursor(topic_index=target[0], subtopic_index=target[1], delivered_mini=0)


def next_incomplete_after(
    path: LearningPath, cursor: PathCursor, completion: CompletionMap
) -> Optional[FocusLabel]:
    """Next incomplete subtopic after the cursor, scanning forward then wrapping."""
    positions = list(path.iter_positions())
    current = (cursor.topic_index, cursor.subtopic_index)
    try:
        start = positions.index(current)
    except ValueError:
        start = -1
    ordered = positions[start + 1 :] + positions[: max(start, 0)]
    for ti, si in ordered:
        label = path.label_at(ti, si)
        if label is not None and not completion.is_complete(label):
            return label
    return None


def focus_for(path: LearningPath, cursor: PathCursor) -> FocusLabel:
    label = path.label_at(cursor.topic_index, cursor.subtopic_index)
    if label is None:
        raise NotReady("Learning path cursor is out of range")
    return label


def planned_mini(path: LearningPath, cursor: PathCursor) -> int:
    sub = path.subtopic_at(cursor.topic_index, cursor.subtopic_index)
    return sub.mini_lessons if sub is not None else 1


def completion_percent(path: LearningPath, completion: CompletionMap) -> int:
    labels = [path.label_at(ti, si) for ti, si in path.iter_positions()]
    if not labels:
        return 0
    done = sum(1 for label in labels if completion.is_complete(label))
    return round(100 * done / len(labels))


class PathStateService:
    """Load/Ensure of the per-(user, subject) learning path."""

    def __init__(
        self,
        store: "DeliveryStore",
        generator: "LessonGenerator",
        locks: "GenerationLockManager",
    ) -> None:
        self._store = store
        self._generator = generator
        self._locks = locks

    def load(self, user_id: str, subject: str) -> Tuple[Optional[PathStateRecord], ProgressRow]:
        record = self._store.get_path_state(user_id, subject)
        progress = self._store.get_progress_row(user_id, subject)
        if record is not None and record.path is not None and not progress.exists:
            progress.completion = CompletionMap.seed_from_path(record.path)
        return record, progress

    async def ensure(
        self,
        user_id: str,
        subject: str,
        course: Optional[str],
        mastery_estimate: Optional[int] = None,
        pace_note: Optional[str] = None,
    ) -> PathStateRecord:
        existing = self._store.get_path_state(user_id, subject)
        if existing is not None and existing.is_valid:
            return existing
        if not course:
            raise NotReady("No curriculum mapping for subject")

        with self._locks.hold(user_id, subject) as lock:
            if not lock.acquired:
                emit_event("lesson_generation_busy", user_id=user_id, subject=subject, stage="path")
                raise Generating(RETRY_AFTER_LOCK_BUSY, reason="path_generation_busy")

            existing = self._store.get_path_state(user_id, subject)
            if existing is not None and existing.is_valid:
                return existing

            try:
                raw = await self._generator.generate_learning_path(
                    subject, course, mastery_estimate=mastery_estimate, pace_note=pace_note
                )
            except InvalidLessonFormat as exc:
                logger.warning("Learning path output unusable (subject=%s): %s", subject, exc)
                raise Generating(RETRY_AFTER_FORMAT_ERROR, reason="path_invalid_format") from exc
            except GeneratorError as exc:
                logger.error("Learning path generation failed (subject=%s): %s", subject, exc)
                raise ServerError() from exc
            path = parse_learning_path(raw, course)
            if path is None:
                raise NotReady("Generated learning path has no topics")
            record = self._store.upsert_path_state(user_id, subject, course, path)
            emit_event(
                "learning_path_generated",
                user_id=user_id,
                subject=subject,
                topics=len(path.topics),
                lock_mode=lock.mode,
            )
            logger.info("Learning path generated (subject=%s topics=%s)", subject, len(path.topics))
            return record


__all__ = [
    "CompletionMap",
    "DeliveryEntry",
    "DeliveryLog",
    "FocusLabel",
    "LearningPath",
    "PathCursor",
    "PathStateRecord",
    "PathStateService",
    "ProgressRow",
    "Subtopic",
    "Topic",
    "advance_cursor",
    "clamp_cursor",
    "completion_percent",
    "first_incomplete",
    "focus_for",
    "next_incomplete_after",
    "parse_learning_path",
    "planned_mini",
]
