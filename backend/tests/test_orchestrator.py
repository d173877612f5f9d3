from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from lesson_engine.cache import CachedLesson
from lesson_engine.config import Settings, get_settings
from lesson_engine.context_assembler import persona_hash
from lesson_engine.dedup import Deduplicator
from lesson_engine.errors import (
    Generating,
    GeneratorError,
    InvalidLessonFormat,
    NoSubject,
    NotReady,
    ServerError,
    UsageLimitExceeded,
)
from lesson_engine.orchestrator import DeliveryOrchestrator
from lesson_engine.path_state import FocusLabel
from lesson_engine.store import delivery_store
from lesson_engine.subjects import LearnerProfile
from lesson_engine.telemetry import recent_events

from lesson_fixtures import SUBJECT, FakeEmbedder, FakeGenerator, make_lesson, sample_path

USER = "learner-1"
FIRST = FocusLabel("Topic 1", "Subtopic 1")
SLOW_UNKNOWN = persona_hash("slow", -1, [])


def _orchestrator(
    generator: Optional[FakeGenerator] = None,
    embedder: Optional[FakeEmbedder] = None,
    settings: Optional[Settings] = None,
) -> DeliveryOrchestrator:
    return DeliveryOrchestrator(
        delivery_store,
        generator or FakeGenerator(),
        Deduplicator(embedder or FakeEmbedder(), 0.85),
        settings or get_settings(),
    )


def _seed_path() -> None:
    delivery_store.upsert_path_state(USER, SUBJECT, SUBJECT, sample_path())


def _cache(entry_id: str, persona: str = SLOW_UNKNOWN, focus: FocusLabel = FIRST) -> None:
    orchestrator = _orchestrator()
    orchestrator.cache.put(
        USER,
        SUBJECT,
        focus,
        CachedLesson(lesson=make_lesson(entry_id, f"{entry_id} cached"), persona_hash=persona),
    )


def test_first_delivery_generates_path_and_lesson(database) -> None:
    delivery_store.upsert_learner_profile(
        LearnerProfile(user_id=USER, interests=[SUBJECT], level_map={SUBJECT: SUBJECT})
    )
    generator = FakeGenerator()
    orchestrator = _orchestrator(generator)

    result = asyncio.run(orchestrator.deliver(USER))

    assert generator.path_calls == 1
    assert result.source == "generated"
    assert result.topic == "Topic 1 > Subtopic 1"
    assert result.lesson.id == "L-gen1"
    assert result.next_topic_hint == "Topic 1 > Subtopic 2"
    payload = result.to_payload()
    assert set(payload) == {"topic", "lesson", "nextTopicHint"}

    _, focus, context, speed = generator.lesson_calls[0]
    assert focus == FIRST
    assert speed == "fast"
    assert context.position.mini == 1

    progress = delivery_store.get_progress_row(USER, SUBJECT)
    assert progress.cursor.delivered_mini == 1
    assert progress.deliveries.for_focus(FIRST).ids == ["L-gen1"]
    record = delivery_store.get_path_state(USER, SUBJECT)
    assert record is not None and record.next_topic == "Topic 1 > Subtopic 2"
    cached = orchestrator.cache.get(USER, SUBJECT, FIRST)
    assert [entry.lesson_id for entry in cached] == ["L-gen1"]
    assert cached[0].persona_hash == SLOW_UNKNOWN


def test_cursor_advances_after_planned_mini_lessons(database) -> None:
    _seed_path()
    orchestrator = _orchestrator()

    first = asyncio.run(orchestrator.deliver(USER, SUBJECT))
    second = asyncio.run(orchestrator.deliver(USER, SUBJECT))
    third = asyncio.run(orchestrator.deliver(USER, SUBJECT))

    assert first.topic == second.topic == "Topic 1 > Subtopic 1"
    assert second.lesson.id != first.lesson.id
    assert third.topic == "Topic 1 > Subtopic 2"
    assert third.next_topic_hint == "Topic 2 > Subtopic 1"
    progress = delivery_store.get_progress_row(USER, SUBJECT)
    assert progress.completion.is_complete(FIRST)


def test_warm_cache_serves_without_generation(database) -> None:
    _seed_path()
    for entry_id in ("L-c1", "L-c2", "L-c3"):
        _cache(entry_id)
    generator = FakeGenerator()

    result = asyncio.run(_orchestrator(generator).deliver(USER, SUBJECT, prefetch=2))

    assert generator.lesson_calls == []
    assert result.source == "cache"
    assert result.lesson.id == "L-c3"
    assert [lesson.id for lesson in result.prefetch] == ["L-c2", "L-c1"]
    assert "prefetch" in result.to_payload()
    assert delivery_store.get_progress_row(USER, SUBJECT).deliveries.for_focus(FIRST).ids == ["L-c3"]


def test_cache_hit_is_logged_but_not_counted_as_a_mini_lesson(database) -> None:
    _seed_path()
    _cache("L-c1")
    orchestrator = _orchestrator()

    served = asyncio.run(orchestrator.deliver(USER, SUBJECT))

    assert served.source == "cache"
    progress = delivery_store.get_progress_row(USER, SUBJECT)
    assert progress.cursor.delivered_mini == 0
    assert progress.deliveries.for_focus(FIRST).ids == ["L-c1"]
    assert not progress.completion.is_complete(FIRST)

    follow_up = asyncio.run(orchestrator.deliver(USER, SUBJECT))

    assert follow_up.source == "generated"
    assert follow_up.topic == "Topic 1 > Subtopic 1"
    progress = delivery_store.get_progress_row(USER, SUBJECT)
    assert progress.cursor.delivered_mini == 1
    assert progress.deliveries.for_focus(FIRST).ids == ["L-c1", follow_up.lesson.id]


def test_accuracy_band_change_bypasses_old_persona_entries(database) -> None:
    _seed_path()
    delivery_store.record_attempt(USER, SUBJECT, None, None, 6, 10)
    band_one = persona_hash("slow", 1, [])
    _cache("L-c1", persona=band_one)
    _cache("L-c2", persona=band_one)
    generator = FakeGenerator()
    orchestrator = _orchestrator(generator)

    served = asyncio.run(orchestrator.deliver(USER, SUBJECT))
    assert served.source == "cache"
    assert served.lesson.id == "L-c2"

    delivery_store.record_attempt(USER, SUBJECT, None, None, 20, 20)
    after = asyncio.run(orchestrator.deliver(USER, SUBJECT))

    assert after.source == "generated"
    assert len(generator.lesson_calls) == 1
    assert generator.lesson_calls[0][2].accuracy_pct == 87
    stored = {entry.lesson_id: entry.persona_hash for entry in orchestrator.cache.get(USER, SUBJECT, FIRST)}
    assert stored["L-c1"] == band_one
    assert stored[after.lesson.id] == persona_hash("slow", 3, [])


def test_invalid_format_is_retryable(database) -> None:
    _seed_path()
    orchestrator = _orchestrator(FakeGenerator(error=InvalidLessonFormat("no json")))

    with pytest.raises(Generating) as excinfo:
        asyncio.run(orchestrator.deliver(USER, SUBJECT))

    assert excinfo.value.retry_after == 2
    assert not delivery_store.get_progress_row(USER, SUBJECT).exists
    assert recent_events("lesson_generation_failed")[0].payload["reason"] == "invalid_format"


def test_generator_errors_map_to_terminal_outcomes(database) -> None:
    _seed_path()
    with pytest.raises(ServerError):
        asyncio.run(_orchestrator(FakeGenerator(error=GeneratorError("boom"))).deliver(USER, SUBJECT))
    with pytest.raises(UsageLimitExceeded):
        asyncio.run(_orchestrator(FakeGenerator(error=UsageLimitExceeded())).deliver(USER, SUBJECT))


def test_timeout_returns_generating_and_caches_late_lesson(database) -> None:
    _seed_path()
    settings = get_settings().model_copy(update={"generation_timeout_seconds": 0.05})
    orchestrator = _orchestrator(FakeGenerator(delay=0.2), settings=settings)

    async def scenario() -> Generating:
        try:
            await orchestrator.deliver(USER, SUBJECT)
        except Generating as exc:
            await asyncio.sleep(0.4)
            return exc
        raise AssertionError("expected a timeout")

    outcome = asyncio.run(scenario())

    assert outcome.retry_after == 5
    assert not delivery_store.get_progress_row(USER, SUBJECT).exists
    cached = orchestrator.cache.get(USER, SUBJECT, FIRST)
    assert [entry.lesson_id for entry in cached] == ["L-gen1"]

    served = asyncio.run(_orchestrator(FakeGenerator()).deliver(USER, SUBJECT))
    assert served.source == "cache"
    assert served.lesson.id == "L-gen1"


def test_near_duplicate_generation_is_still_served(database) -> None:
    _seed_path()
    same = [1.0] + [0.0] * 31
    embedder = FakeEmbedder(pinned={"Generated1 Subtopic 1": same, "Generated2 Subtopic 1": same})
    orchestrator = _orchestrator(embedder=embedder)

    asyncio.run(orchestrator.deliver(USER, SUBJECT))
    second = asyncio.run(orchestrator.deliver(USER, SUBJECT))

    assert second.lesson.id == "L-gen2"
    events = recent_events("lesson_near_duplicate")
    assert len(events) == 1
    assert events[0].payload["lesson_id"] == "L-gen2"


def test_pending_lessons_are_served_before_generating(database) -> None:
    _seed_path()
    generator = FakeGenerator()
    orchestrator = _orchestrator(generator)

    produced = asyncio.run(orchestrator.generate_pending(USER, SUBJECT, count=2))
    assert produced["generated"] == 2
    assert produced["lessonIds"] == ["L-gen1", "L-gen2"]
    assert produced["currentCount"] == 2
    assert all(call[3] == "slow" for call in generator.lesson_calls)

    full = asyncio.run(orchestrator.generate_pending(USER, SUBJECT))
    assert full["reason"] == "Queue full"
    assert full["generated"] == 0

    result = asyncio.run(orchestrator.deliver(USER, SUBJECT))
    assert result.source == "pending"
    assert result.lesson.id == "L-gen1"
    assert len(generator.lesson_calls) == 2
    assert orchestrator.queue.depth(USER, SUBJECT) == 1


def test_pending_for_other_focus_is_discarded(database) -> None:
    _seed_path()
    generator = FakeGenerator()
    orchestrator = _orchestrator(generator)

    produced = asyncio.run(orchestrator.generate_pending(USER, SUBJECT, topic_label="Topic 2 > Subtopic 2"))
    assert produced["generated"] == 1
    assert generator.lesson_calls[0][1] == FocusLabel("Topic 2", "Subtopic 2")

    result = asyncio.run(orchestrator.deliver(USER, SUBJECT))
    assert result.source == "generated"
    assert result.topic == "Topic 1 > Subtopic 1"
    assert recent_events("pending_rejected")[0].payload["reason"] == "focus_mismatch"


def test_generate_pending_requires_path(database) -> None:
    with pytest.raises(NotReady):
        asyncio.run(_orchestrator().generate_pending(USER, SUBJECT))


def test_subject_resolution_failures(database) -> None:
    orchestrator = _orchestrator()
    with pytest.raises(NoSubject):
        asyncio.run(orchestrator.deliver(USER))
    with pytest.raises(NotReady):
        asyncio.run(orchestrator.deliver(USER, "Chemistry"))


def test_recent_subject_is_used_when_none_given(database) -> None:
    _seed_path()
    result = asyncio.run(_orchestrator().deliver(USER))
    assert result.topic == "Topic 1 > Subtopic 1"


def test_progress_summary_reports_position(database) -> None:
    _seed_path()
    orchestrator = _orchestrator()
    asyncio.run(orchestrator.deliver(USER, SUBJECT))
    asyncio.run(orchestrator.deliver(USER, SUBJECT))

    summary = orchestrator.progress_summary(USER, SUBJECT)

    assert summary["focus"] == "Topic 1 > Subtopic 2"
    assert summary["deliveredMini"] == 0
    assert summary["plannedMini"] == 1
    assert summary["completionPct"] == 25
    assert summary["topics"][0]["subtopics"][0]["completed"] is True
    assert summary["topics"][0]["completed"] is False
    assert summary["nextTopicHint"] == "Topic 2 > Subtopic 1"


def test_feedback_requires_existing_path(database) -> None:
    orchestrator = _orchestrator()
    with pytest.raises(NoSubject):
        orchestrator.record_feedback(USER, SUBJECT, "like", "L-1")

    _seed_path()
    preferences = orchestrator.record_feedback(USER, SUBJECT, "dislike", "L-1", ["Playful"])
    assert preferences.disliked == ["L-1"]
    assert preferences.tone_tags == ["playful"]


def test_disliked_cache_entry_is_skipped(database) -> None:
    _seed_path()
    _cache("L-c1")
    orchestrator = _orchestrator()
    orchestrator.record_feedback(USER, SUBJECT, "dislike", "L-c1")

    result = asyncio.run(orchestrator.deliver(USER, SUBJECT))

    assert result.source == "generated"


def test_complete_lesson_reports_queue_state(database) -> None:
    _seed_path()
    orchestrator = _orchestrator()
    asyncio.run(orchestrator.generate_pending(USER, SUBJECT, count=2))

    outcome = orchestrator.complete_lesson(USER, SUBJECT, "L-gen2")

    assert outcome == {"success": True, "removed": True, "cleanedStale": 0, "remaining": 1}


class _StalledEmbedder:
    async def embed(self, text: str) -> list[float]:
        await asyncio.sleep(30)
        return [1.0]


def test_stalled_embedding_does_not_hold_up_delivery(database) -> None:
    _seed_path()
    orchestrator = DeliveryOrchestrator(
        delivery_store,
        FakeGenerator(),
        Deduplicator(_StalledEmbedder(), 0.85, timeout=0.05),
        get_settings(),
    )

    result = asyncio.run(orchestrator.deliver(USER, SUBJECT))

    assert result.source == "generated"
    assert delivery_store.recent_embeddings(USER, SUBJECT, 10) == []
    assert orchestrator.cache.get(USER, SUBJECT, FIRST)[0].embedding is None
