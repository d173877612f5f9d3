"""Compact generator context plus the local-only exclusion guardrails.

The structured context is the only learner data sent to the generator, so
every field is bounded. Exclusion lists never leave the process: they are
applied to candidates after the fact.
"""

from __future__ import annotations

import hashlib
import re
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, Field

from .lessons import Difficulty, Lesson, target_difficulty
from .path_state import (
    CompletionMap,
    DeliveryLog,
    FocusLabel,
    LearningPath,
    PathCursor,
    completion_percent,
    focus_for,
    planned_mini,
)
from .preferences import PreferenceSet
from .progress_metrics import Pace, ProgressMetricsSnapshot, accuracy_band

DEFINITION_BUDGET = 160
APPLICATION_BUDGET = 120
PREREQUISITE_BUDGET = 100
REMINDER_BUDGET = 120
MAX_STYLE_CUES = 3
MAX_RECENT_TITLES = 3
PERSONA_TONE_TAGS = 3
DEFAULT_EXCLUSION_WINDOW = 20

_TITLE_STRIP = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


class KnowledgeFragment(BaseModel):
    definition: str
    application: Optional[str] = None
    prerequisite: Optional[str] = None
    reminder: Optional[str] = None


class CurriculumPosition(BaseModel):
    topic: int
    topics: int
    subtopic: int
    subtopics: int
    mini: int
    planned: int
    completion_pct: int


class StructuredContext(BaseModel):
    focus: str
    position: CurriculumPosition
    pace: Pace
    accuracy_pct: Optional[int] = None
    difficulty: Difficulty
    knowledge: KnowledgeFragment
    style_cues: List[str] = Field(default_factory=list, max_length=MAX_STYLE_CUES)
    avoid_titles: List[str] = Field(default_factory=list, max_length=MAX_RECENT_TITLES)


class Guardrails(BaseModel):
    avoid_ids: Set[str] = Field(default_factory=set)
    avoid_titles: Set[str] = Field(default_factory=set)

    def excludes(self, lesson: Lesson) -> bool:
        return lesson.id.strip() in self.avoid_ids or normalize_title(lesson.title) in self.avoid_titles

    def excluded_ids(self) -> List[str]:
        return sorted(self.avoid_ids)


def normalize_title(title: str) -> str:
    stripped = _TITLE_STRIP.sub(" ", title.lower())
    return _SPACES.sub(" ", stripped).strip()


def _clip(value: Optional[str], budget: int) -> Optional[str]:
    if not value:
        return None
    text = _SPACES.sub(" ", value).strip()
    if len(text) <= budget:
        return text
    return text[: budget - 1].rstrip() + "…"


def style_cues(band: int, tone_tags: Sequence[str], pace: Pace) -> List[str]:
    candidates: List[str] = []
    if band == 0:
        candidates += ["stepwise", "avoid:jargon"]
    elif band == 3:
        candidates.append("stretch")
    candidates += [tag for tag in tone_tags if tag]
    if pace == "fast":
        candidates.append("concise")
    cues: List[str] = []
    for cue in candidates:
        if cue not in cues:
            cues.append(cue)
    return cues[:MAX_STYLE_CUES]


def persona_hash(pace: Pace, band: int, tone_tags: Iterable[str]) -> str:
    """Fingerprint of pace, accuracy band and the most recent tone tags."""
    tags = sorted(tag.strip().lower() for tag in list(tone_tags)[:PERSONA_TONE_TAGS] if tag)
    basis = f"{pace}|{band}|{','.join(tags)}"
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()[:16]


def persona_for(metrics: Optional[ProgressMetricsSnapshot], preferences: PreferenceSet) -> str:
    pace: Pace = metrics.pace if metrics is not None else "slow"
    band = metrics.accuracy_band if metrics is not None else -1
    return persona_hash(pace, band, preferences.tone_tags)


def build_knowledge(
    path: LearningPath, cursor: PathCursor, recent_titles: Sequence[str]
) -> KnowledgeFragment:
    topic = path.topics[cursor.topic_index]
    sub = topic.subtopics[cursor.subtopic_index]
    course = f" ({path.course})" if path.course else ""
    definition = f"{sub.name}: a building block of {topic.name}{course}."

    prerequisite: Optional[str] = None
    if cursor.subtopic_index > 0:
        prerequisite = topic.subtopics[cursor.subtopic_index - 1].name
    elif cursor.topic_index > 0:
        previous = path.topics[cursor.topic_index - 1]
        if previous.subtopics:
            prerequisite = FocusLabel(previous.name, previous.subtopics[-1].name).label

    return KnowledgeFragment(
        definition=_clip(definition, DEFINITION_BUDGET) or sub.name,
        application=_clip(sub.applications[0] if sub.applications else None, APPLICATION_BUDGET),
        prerequisite=_clip(prerequisite, PREREQUISITE_BUDGET),
        reminder=_clip(recent_titles[-1] if recent_titles else None, REMINDER_BUDGET),
    )


def assemble_context(
    path: LearningPath,
    cursor: PathCursor,
    metrics: Optional[ProgressMetricsSnapshot],
    preferences: PreferenceSet,
    deliveries: DeliveryLog,
    completion: CompletionMap,
    exclusion_window: int = DEFAULT_EXCLUSION_WINDOW,
) -> Tuple[StructuredContext, Guardrails]:
    focus = focus_for(path, cursor)
    entry = deliveries.for_focus(focus)
    recent_ids = entry.ids[-exclusion_window:]
    recent_titles = entry.titles[-exclusion_window:]
    disliked = preferences.disliked[-exclusion_window:]

    pace: Pace = metrics.pace if metrics is not None else "slow"
    accuracy = metrics.accuracy_pct if metrics is not None else None
    band = accuracy_band(accuracy)
    topic = path.topics[cursor.topic_index]

    context = StructuredContext(
        focus=focus.label,
        position=CurriculumPosition(
            topic=cursor.topic_index + 1,
            topics=len(path.topics),
            subtopic=cursor.subtopic_index + 1,
            subtopics=len(topic.subtopics),
            mini=min(cursor.delivered_mini + 1, planned_mini(path, cursor)),
            planned=planned_mini(path, cursor),
            completion_pct=completion_percent(path, completion),
        ),
        pace=pace,
        accuracy_pct=accuracy,
        difficulty=target_difficulty(accuracy),
        knowledge=build_knowledge(path, cursor, recent_titles),
        style_cues=style_cues(band, preferences.tone_tags, pace),
        avoid_titles=list(reversed(recent_titles))[:MAX_RECENT_TITLES],
    )
    guardrails = Guardrails(
        avoid_ids={value.strip() for value in recent_ids + disliked if value.strip()},
        avoid_titles={normalize_title(title) for title in recent_titles if title.strip()},
    )
    return context, guardrails


__all__ = [
    "CurriculumPosition",
    "Guardrails",
    "KnowledgeFragment",
    "StructuredContext",
    "assemble_context",
    "build_knowledge",
    "normalize_title",
    "persona_for",
    "persona_hash",
    "style_cues",
]
