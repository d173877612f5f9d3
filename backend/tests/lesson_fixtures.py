"""Fakes and builders shared by the delivery tests."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from lesson_engine.context_assembler import StructuredContext
from lesson_engine.lessons import Lesson
from lesson_engine.path_state import FocusLabel, LearningPath, parse_learning_path

SUBJECT = "Algebra 1"


def path_document() -> Dict[str, Any]:
    return {
        "course": SUBJECT,
        "topics": [
            {
                "name": "Topic 1",
                "subtopics": [
                    {"name": "Subtopic 1", "mini_lessons": 2, "applications": ["Splitting a restaurant bill"]},
                    {"name": "Subtopic 2", "mini_lessons": 1},
                ],
            },
            {
                "name": "Topic 2",
                "subtopics": [
                    {"name": "Subtopic 1", "mini_lessons": 1},
                    {"name": "Subtopic 2", "mini_lessons": 3},
                ],
            },
        ],
    }


def sample_path() -> LearningPath:
    path = parse_learning_path(path_document(), SUBJECT)
    assert path is not None
    return path


def make_lesson(lesson_id: str, title: str, subject: str = SUBJECT, topic: str = "Topic 1 > Subtopic 1") -> Lesson:
    stem = title.split()[0].lower()[:8]
    content = " ".join(f"{stem}-{index}" for index in range(40))
    return Lesson(
        id=lesson_id,
        subject=subject,
        topic=topic,
        title=title,
        content=content,
        difficulty="easy",
        questions=[
            {
                "prompt": f"Question {number} about {title}?",
                "choices": ["A", "B", "C", "D"],
                "correct_index": number % 4,
                "explanation": "Because the worked example shows it.",
            }
            for number in range(3)
        ],
    )


class FakeEmbedder:
    """One orthogonal basis vector per distinct title unless a vector is pinned."""

    def __init__(self, dimensions: int = 32, pinned: Optional[Dict[str, List[float]]] = None) -> None:
        self.dimensions = dimensions
        self.pinned = dict(pinned or {})
        self._assigned: Dict[str, int] = {}
        self.calls: List[str] = []
        self.fail = False

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding backend down")
        title = text.split("\n", 1)[0]
        if title in self.pinned:
            return list(self.pinned[title])
        index = self._assigned.setdefault(title, len(self._assigned) % self.dimensions)
        vector = [0.0] * self.dimensions
        vector[index] = 1.0
        return vector


class FakeGenerator:
    def __init__(
        self,
        path: Optional[Dict[str, Any]] = None,
        delay: float = 0.0,
        path_delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        self.path = path if path is not None else path_document()
        self.delay = delay
        self.path_delay = path_delay
        self.error = error
        self.lesson_calls: List[Tuple[str, FocusLabel, StructuredContext, str]] = []
        self.path_calls = 0

    async def generate_lesson(
        self,
        subject: str,
        focus: FocusLabel,
        context: StructuredContext,
        model_speed: str = "fast",
        user_id: Optional[str] = None,
    ) -> Lesson:
        self.lesson_calls.append((subject, focus, context, model_speed))
        number = len(self.lesson_calls)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return make_lesson(f"L-gen{number}", f"Generated{number} {focus.subtopic}", subject, focus.label)

    async def generate_learning_path(
        self,
        subject: str,
        course: str,
        mastery_estimate: Optional[int] = None,
        pace_note: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.path_calls += 1
        if self.path_delay:
            await asyncio.sleep(self.path_delay)
        return dict(self.path)
