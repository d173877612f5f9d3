"""Generator adapter: OpenAI chat completions in, validated lessons out."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Protocol, Tuple

from openai import (
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    OpenAIError,
    RateLimitError,
)
from pydantic import ValidationError

from .config import Settings, get_settings
from .context_assembler import StructuredContext
from .errors import GeneratorError, InvalidLessonFormat, UsageLimitExceeded
from .lessons import (
    CHOICE_COUNT,
    QUESTION_COUNT,
    Lesson,
    extract_json_object,
    load_lesson_json,
    normalize_lesson,
)
from .path_state import FocusLabel

if TYPE_CHECKING:  # pragma: no cover
    from .store import DeliveryStore

logger = logging.getLogger(__name__)

ModelSpeed = Literal["fast", "slow"]
ResponseMode = Literal["json_schema", "json_object", "none"]

LESSON_SYSTEM_PROMPT = (
    "You write adaptive micro-lessons. Produce one lesson of 80-120 words plus exactly three"
    " multiple-choice questions, each with four short choices and a 20-45 word explanation that"
    " justifies the answer and names a common misconception. Tailor tone and difficulty to the"
    " learner context you are given: honour its style cues, respect its target difficulty, and do"
    " not reuse any title listed under avoid_titles. Use inline LaTeX \\( ... \\) for math, no HTML"
    " and no markdown fences. Return only a JSON object with keys: id, subject, topic, title,"
    " content, difficulty, questions[{prompt, choices, correct_index, explanation}]."
)

STRICT_SUFFIX = (
    " Your previous answer could not be parsed. Output the JSON object and nothing else;"
    " escape backslashes and quotes so the JSON stays valid."
)

PATH_SYSTEM_PROMPT = (
    "You design learning paths. Given a subject, a course and the learner's current mastery,"
    " return only a JSON object {course, starting_topic, topics:[{name, subtopics:[{name,"
    " mini_lessons, applications}]}]}. Use 4-8 topics ordered from foundations to advanced, 2-5"
    " subtopics per topic, mini_lessons between 1 and 6, and at most two short real-world"
    " applications per subtopic."
)

LESSON_JSON_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["id", "subject", "topic", "title", "content", "difficulty", "questions"],
    "properties": {
        "id": {"type": "string"},
        "subject": {"type": "string"},
        "topic": {"type": "string"},
        "title": {"type": "string"},
        "content": {"type": "string"},
        "difficulty": {"type": "string", "enum": ["intro", "easy", "medium", "hard"]},
        "questions": {
            "type": "array",
            "minItems": QUESTION_COUNT,
            "maxItems": QUESTION_COUNT,
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["prompt", "choices", "correct_index", "explanation"],
                "properties": {
                    "prompt": {"type": "string"},
                    "choices": {
                        "type": "array",
                        "minItems": CHOICE_COUNT,
                        "maxItems": CHOICE_COUNT,
                        "items": {"type": "string"},
                    },
                    "correct_index": {"type": "integer", "minimum": 0, "maximum": CHOICE_COUNT - 1},
                    "explanation": {"type": "string"},
                },
            },
        },
    },
}


class UsageGate(Protocol):
    def allow(self, user_id: str) -> bool:  # pragma: no cover - protocol definition
        ...

    def record(self, user_id: str) -> None:  # pragma: no cover - protocol definition
        ...


class DailyUsageGate:
    """Per-user daily generation cap backed by the delivery store. 0 disables it."""

    def __init__(self, store: "DeliveryStore", daily_limit: int) -> None:
        self._store = store
        self._limit = daily_limit

    def allow(self, user_id: str) -> bool:
        if self._limit <= 0:
            return True
        return self._store.generations_today(user_id) < self._limit

    def record(self, user_id: str) -> None:
        self._store.record_generation(user_id)


@dataclass(frozen=True)
class _AttemptPlan:
    mode: ResponseMode
    system: str


ATTEMPT_PLANS: Tuple[_AttemptPlan, ...] = (
    _AttemptPlan("json_schema", LESSON_SYSTEM_PROMPT),
    _AttemptPlan("json_object", LESSON_SYSTEM_PROMPT),
    _AttemptPlan("none", LESSON_SYSTEM_PROMPT + STRICT_SUFFIX),
)


def build_lesson_prompt(subject: str, focus: FocusLabel, context: StructuredContext) -> str:
    sections = [
        f"Subject: {subject}",
        f"Focus: {focus.label}",
        f"Target difficulty: {context.difficulty}",
        "Learner context:\n" + json.dumps(context.model_dump(mode="json", exclude_none=True), indent=2),
        "Return the lesson JSON only.",
    ]
    return "\n\n".join(sections)


def _response_format(mode: ResponseMode) -> Dict[str, Any]:
    if mode == "json_schema":
        return {
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "lesson", "schema": LESSON_JSON_SCHEMA},
            }
        }
    if mode == "json_object":
        return {"response_format": {"type": "json_object"}}
    return {}


class LessonGenerator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[AsyncOpenAI] = None,
        usage: Optional[UsageGate] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._usage = usage

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._settings.openai_api_key:
                raise GeneratorError("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(
                api_key=self._settings.openai_api_key,
                base_url=self._settings.openai_base_url,
                timeout=self._settings.generation_timeout_seconds,
            )
        return self._client

    def _model(self, speed: ModelSpeed) -> str:
        if speed == "slow":
            return self._settings.generator_slow_model
        return self._settings.generator_fast_model

    async def _complete(self, model: str, system: str, user: str, mode: ResponseMode) -> str:
        client = self._get_client()
        try:
            completion = await client.chat.completions.create(
                model=model,
                temperature=self._settings.generator_temperature,
                max_tokens=self._settings.generator_max_tokens,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                **_response_format(mode),
            )
        except RateLimitError as exc:
            if getattr(exc, "code", None) == "insufficient_quota":
                raise UsageLimitExceeded() from exc
            raise GeneratorError(f"Generator rate limited: {exc}") from exc
        except AuthenticationError as exc:
            logger.error("OpenAI authentication error while generating: %s", exc)
            raise GeneratorError("Generator is not authorized; check OPENAI_API_KEY") from exc
        if not completion.choices:
            return ""
        return completion.choices[0].message.content or ""

    async def generate_lesson(
        self,
        subject: str,
        focus: FocusLabel,
        context: StructuredContext,
        model_speed: ModelSpeed = "fast",
        user_id: Optional[str] = None,
    ) -> Lesson:
        if user_id and self._usage is not None and not self._usage.allow(user_id):
            raise UsageLimitExceeded()

        model = self._model(model_speed)
        prompt = build_lesson_prompt(subject, focus, context)
        failures: List[str] = []
        for plan in ATTEMPT_PLANS:
            try:
                raw = await self._complete(model, plan.system, prompt, plan.mode)
            except BadRequestError as exc:
                if plan.mode == "none":
                    raise GeneratorError(f"Generator rejected request: {exc}") from exc
                logger.info("Response mode %s rejected by %s; falling back", plan.mode, model)
                failures.append(f"{plan.mode}: rejected")
                continue
            except OpenAIError as exc:
                raise GeneratorError(f"Upstream generation failed: {exc}") from exc

            try:
                data = load_lesson_json(raw)
                lesson = Lesson.model_validate(
                    normalize_lesson(data, subject, focus.label, context.difficulty)
                )
            except (ValueError, ValidationError) as exc:
                logger.warning("Lesson output unusable (mode=%s model=%s): %s", plan.mode, model, exc)
                failures.append(f"{plan.mode}: {type(exc).__name__}")
                continue

            if user_id and self._usage is not None:
                self._usage.record(user_id)
            return lesson

        raise InvalidLessonFormat("Invalid lesson format from generator (" + "; ".join(failures) + ")")

    async def generate_learning_path(
        self,
        subject: str,
        course: str,
        mastery_estimate: Optional[int] = None,
        pace_note: Optional[str] = None,
    ) -> Dict[str, Any]:
        lines = [f"Subject: {subject}", f"Course: {course}"]
        if mastery_estimate is not None:
            lines.append(f"Estimated mastery: {mastery_estimate}%")
        if pace_note:
            lines.append(f"Pace: {pace_note}")
        try:
            raw = await self._complete(
                self._settings.generator_slow_model,
                PATH_SYSTEM_PROMPT,
                "\n".join(lines),
                "json_object",
            )
        except OpenAIError as exc:
            raise GeneratorError(f"Upstream path generation failed: {exc}") from exc

        block = extract_json_object(raw)
        if block is None:
            raise InvalidLessonFormat("Learning path output had no JSON object")
        try:
            data = json.loads(block)
        except json.JSONDecodeError as exc:
            raise InvalidLessonFormat("Learning path output was not valid JSON") from exc
        if not isinstance(data, dict):
            raise InvalidLessonFormat("Learning path output was not an object")
        data.setdefault("course", course)
        return data


__all__ = [
    "ATTEMPT_PLANS",
    "DailyUsageGate",
    "LESSON_JSON_SCHEMA",
    "LessonGenerator",
    "ModelSpeed",
    "UsageGate",
    "build_lesson_prompt",
]
