"""Lesson payload schema plus the repair pass applied to generator output."""

from __future__ import annotations

import html
import json
import re
import secrets
import string
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

Difficulty = Literal["intro", "easy", "medium", "hard"]
DIFFICULTIES = ("intro", "easy", "medium", "hard")

CONTENT_MIN_CHARS = 180
CONTENT_MAX_CHARS = 720
CONTENT_MIN_WORDS = 30
CONTENT_MAX_WORDS = 140
EXPLANATION_MAX_CHARS = 280
QUESTION_COUNT = 3
CHOICE_COUNT = 4

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_ID_ALPHABET = string.ascii_lowercase + string.digits


class LessonQuestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(..., min_length=1)
    choices: List[str] = Field(..., min_length=CHOICE_COUNT, max_length=CHOICE_COUNT)
    correct_index: int = Field(
        ...,
        ge=0,
        le=CHOICE_COUNT - 1,
        validation_alias=AliasChoices("correct_index", "correctIndex"),
    )
    explanation: str = Field(..., min_length=3, max_length=EXPLANATION_MAX_CHARS)


class Lesson(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, max_length=128)
    subject: str = Field(..., min_length=1)
    topic: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=120)
    content: str = Field(..., min_length=CONTENT_MIN_CHARS, max_length=CONTENT_MAX_CHARS)
    difficulty: Difficulty = "easy"
    questions: List[LessonQuestion] = Field(..., min_length=QUESTION_COUNT, max_length=QUESTION_COUNT)
    media_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("media_url", "mediaUrl"))
    media_type: Optional[Literal["image", "video"]] = Field(
        default=None, validation_alias=AliasChoices("media_type", "mediaType")
    )

    @field_validator("content")
    @classmethod
    def _word_budget(cls, value: str) -> str:
        words = len(value.split())
        if words < CONTENT_MIN_WORDS or words > CONTENT_MAX_WORDS:
            raise ValueError(f"content must be {CONTENT_MIN_WORDS}-{CONTENT_MAX_WORDS} words, got {words}")
        return value

    def embedding_text(self) -> str:
        return f"{self.title}\n{self.content}"


def target_difficulty(accuracy_pct: Optional[int]) -> Difficulty:
    if accuracy_pct is None:
        return "easy"
    if accuracy_pct < 50:
        return "intro"
    if accuracy_pct < 65:
        return "easy"
    if accuracy_pct < 80:
        return "medium"
    return "hard"


def new_lesson_id() -> str:
    return "L-" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))


def extract_json_object(raw: str) -> Optional[str]:
    """Return the first balanced ``{...}`` block in ``raw``, ignoring braces in strings."""
    text = _FENCE_RE.sub("", raw.strip())
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start != -1:
                return text[start : index + 1]
    return None


def load_lesson_json(raw: str) -> Dict[str, Any]:
    """Decode model output into a dict, tolerating prose around the object."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        block = extract_json_object(raw)
        if block is None:
            raise ValueError("no JSON object in generator output") from None
        data = json.loads(block)
    if isinstance(data, dict) and isinstance(data.get("lesson"), dict):
        data = data["lesson"]
    if not isinstance(data, dict):
        raise ValueError("generator output is not a JSON object")
    return data


def clean_text(value: Any, limit: Optional[int] = None) -> str:
    if not isinstance(value, str):
        return ""
    text = html.unescape(_TAG_RE.sub(" ", value))
    text = _WS_RE.sub(" ", text).strip()
    if limit is not None and len(text) > limit:
        text = _truncate_words(text, limit)
    return text


def _truncate_words(text: str, limit: int) -> str:
    cut = text[:limit]
    if " " in cut and len(text) > limit:
        cut = cut.rsplit(" ", 1)[0]
    return cut.rstrip(" ,;:")


def _pad_content(content: str, subject: str, topic: str) -> str:
    extras = [
        f"Start by stating what {topic} means in your own words.",
        f"Then connect it to one small worked example from {subject}.",
        "Watch for the most common slip: applying the idea without checking its conditions first.",
        "Finish by explaining the example aloud in two calm steps, as if teaching a friend.",
        f"Revisit this tomorrow and see whether you can recall the key rule of {topic} without notes.",
    ]
    parts = [content] if content else []
    for extra in extras:
        joined = " ".join(parts)
        if len(joined) >= CONTENT_MIN_CHARS and len(joined.split()) >= CONTENT_MIN_WORDS:
            break
        parts.append(extra)
    return _truncate_words(" ".join(parts), CONTENT_MAX_CHARS)


def _fallback_choices(topic: str) -> List[str]:
    return [
        f"It applies {topic} after checking its conditions",
        f"It ignores how {topic} is defined",
        "It guesses without a reason",
        "It repeats the question unchanged",
    ]


def _normalize_question(raw: Any, topic: str) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    prompt = clean_text(raw.get("prompt") or raw.get("question"), 300)
    if not prompt:
        return None
    choices: List[str] = []
    for choice in raw.get("choices") or []:
        text = clean_text(choice, 160)
        if text and text not in choices:
            choices.append(text)
    if not choices:
        return None

    index_raw = raw.get("correct_index", raw.get("correctIndex", 0))
    try:
        correct = int(index_raw)
    except (TypeError, ValueError):
        correct = 0
    correct = max(0, min(len(choices) - 1, correct))

    if len(choices) > CHOICE_COUNT:
        answer = choices[correct]
        kept = [c for c in choices if c != answer][: CHOICE_COUNT - 1]
        insert_at = min(correct, CHOICE_COUNT - 1)
        kept.insert(insert_at, answer)
        choices, correct = kept, insert_at
    for filler in _fallback_choices(topic):
        if len(choices) >= CHOICE_COUNT:
            break
        if filler not in choices:
            choices.append(filler)

    explanation = clean_text(raw.get("explanation"), EXPLANATION_MAX_CHARS)
    if len(explanation) < 3:
        explanation = f"The correct choice is the one that states {topic} accurately."
    return {
        "prompt": prompt,
        "choices": choices[:CHOICE_COUNT],
        "correct_index": correct,
        "explanation": explanation,
    }


def _fallback_question(topic: str, ordinal: int) -> Dict[str, Any]:
    return {
        "prompt": f"Check {ordinal}: which approach best reflects {topic}?",
        "choices": _fallback_choices(topic),
        "correct_index": 0,
        "explanation": f"Applying {topic} only after checking its conditions avoids the most common mistake.",
    }


def normalize_lesson(
    raw: Dict[str, Any],
    subject: str,
    topic_label: str,
    difficulty: Difficulty = "easy",
) -> Dict[str, Any]:
    """Repair a decoded lesson dict so it has a chance of validating."""
    focus_name = topic_label.split(">")[-1].strip() or topic_label
    lesson_id = raw.get("id")
    content = clean_text(raw.get("content") or raw.get("body"), CONTENT_MAX_CHARS)
    if len(content) < CONTENT_MIN_CHARS or len(content.split()) < CONTENT_MIN_WORDS:
        content = _pad_content(content, subject, focus_name)

    questions = [
        question
        for question in (_normalize_question(q, focus_name) for q in raw.get("questions") or [])
        if question is not None
    ][:QUESTION_COUNT]
    while len(questions) < QUESTION_COUNT:
        questions.append(_fallback_question(focus_name, len(questions) + 1))

    declared = raw.get("difficulty")
    normalized: Dict[str, Any] = {
        "id": lesson_id.strip() if isinstance(lesson_id, str) and lesson_id.strip() else new_lesson_id(),
        "subject": clean_text(raw.get("subject")) or subject,
        "topic": clean_text(raw.get("topic")) or topic_label,
        "title": clean_text(raw.get("title"), 120) or focus_name[:120],
        "content": content,
        "difficulty": declared if declared in DIFFICULTIES else difficulty,
        "questions": questions,
    }
    media_url = raw.get("media_url") or raw.get("mediaUrl")
    media_type = raw.get("media_type") or raw.get("mediaType")
    if isinstance(media_url, str) and media_url.startswith(("http://", "https://")):
        normalized["media_url"] = media_url
        if media_type in ("image", "video"):
            normalized["media_type"] = media_type
    return normalized


__all__ = [
    "CHOICE_COUNT",
    "DIFFICULTIES",
    "Difficulty",
    "Lesson",
    "LessonQuestion",
    "QUESTION_COUNT",
    "clean_text",
    "extract_json_object",
    "load_lesson_json",
    "new_lesson_id",
    "normalize_lesson",
    "target_difficulty",
]
