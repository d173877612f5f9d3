from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from lesson_engine.cache import CachedLesson, LessonCache
from lesson_engine.context_assembler import Guardrails
from lesson_engine.dedup import Deduplicator
from lesson_engine.path_state import FocusLabel
from lesson_engine.store import DeliveryStore
from lesson_engine.telemetry import recent_events

from lesson_fixtures import FakeEmbedder, make_lesson

FOCUS = FocusLabel("Topic 1", "Subtopic 1")
USER = "learner-1"
SUBJECT = "Algebra 1"
NOW = datetime.now(timezone.utc)


def _entry(index: int, persona: str = "p-current", age: timedelta = timedelta(0), embedding=None) -> CachedLesson:
    return CachedLesson(
        lesson=make_lesson(f"L-{index}", f"Cached{index} lesson"),
        cached_at=NOW - age,
        persona_hash=persona,
        embedding=embedding,
        next_topic_hint="Topic 1 > Subtopic 2",
    )


def _fill(cache: LessonCache, entries) -> None:
    for entry in entries:
        cache.put(USER, SUBJECT, FOCUS, entry, now=NOW)


def test_put_then_get_returns_most_recent_first(database) -> None:
    cache = LessonCache(DeliveryStore())
    _fill(cache, [_entry(1), _entry(2)])

    entries = cache.get(USER, SUBJECT, FOCUS, now=NOW)

    assert [entry.lesson_id for entry in entries] == ["L-2", "L-1"]
    assert entries[0].next_topic_hint == "Topic 1 > Subtopic 2"
    assert entries[0].lesson == make_lesson("L-2", "Cached2 lesson")


def test_cache_is_scoped_per_focus_and_subject(database) -> None:
    cache = LessonCache(DeliveryStore())
    _fill(cache, [_entry(1)])
    assert cache.get(USER, SUBJECT, FocusLabel("Topic 1", "Subtopic 2"), now=NOW) == []
    assert cache.get(USER, "Geometry", FOCUS, now=NOW) == []
    assert len(cache.get(USER, " Algebra  1 ", FOCUS, now=NOW)) == 1


def test_sixth_insert_evicts_oldest(database) -> None:
    cache = LessonCache(DeliveryStore(), capacity=5)
    _fill(cache, [_entry(index) for index in range(1, 7)])

    entries = cache.get(USER, SUBJECT, FOCUS, now=NOW)

    assert [entry.lesson_id for entry in entries] == ["L-6", "L-5", "L-4", "L-3", "L-2"]


def test_stale_persona_is_evicted_before_older_current_entries(database) -> None:
    cache = LessonCache(DeliveryStore(), capacity=3)
    _fill(cache, [_entry(1), _entry(2, persona="p-old"), _entry(3), _entry(4)])

    ids = [entry.lesson_id for entry in cache.get(USER, SUBJECT, FOCUS, now=NOW)]

    assert ids == ["L-4", "L-3", "L-1"]


def test_reinserting_same_lesson_does_not_duplicate(database) -> None:
    cache = LessonCache(DeliveryStore())
    _fill(cache, [_entry(1), _entry(2), _entry(1)])
    ids = [entry.lesson_id for entry in cache.get(USER, SUBJECT, FOCUS, now=NOW)]
    assert ids == ["L-1", "L-2"]


def test_expired_entries_are_dropped(database) -> None:
    cache = LessonCache(DeliveryStore(), max_age_days=7)
    _fill(cache, [_entry(1, age=timedelta(days=8)), _entry(2, age=timedelta(days=1))])
    ids = [entry.lesson_id for entry in cache.get(USER, SUBJECT, FOCUS, now=NOW)]
    assert ids == ["L-2"]


def test_select_hit_skips_wrong_persona_excluded_and_near_duplicates() -> None:
    cache = LessonCache(store=None)  # type: ignore[arg-type]
    dedup = Deduplicator(FakeEmbedder(), threshold=0.85)
    entries = [
        _entry(1, persona="p-old"),
        _entry(2),
        _entry(3, embedding=[1.0, 0.0]),
        _entry(4, embedding=[0.0, 1.0]),
    ]
    guardrails = Guardrails(avoid_ids={"L-2"})

    hit = cache.select_hit(entries, "p-current", guardrails, [[1.0, 0.0]], dedup)

    assert hit is not None and hit.lesson_id == "L-4"
    assert cache.select_hit(entries[:3], "p-current", guardrails, [[1.0, 0.0]], dedup) is None


def test_select_hit_without_embedding_is_not_a_duplicate() -> None:
    cache = LessonCache(store=None)  # type: ignore[arg-type]
    dedup = Deduplicator(FakeEmbedder())
    hit = cache.select_hit([_entry(1)], "p-current", Guardrails(), [[1.0, 0.0]], dedup)
    assert hit is not None and hit.lesson_id == "L-1"


def test_prefetch_skips_served_and_caps_at_three() -> None:
    cache = LessonCache(store=None)  # type: ignore[arg-type]
    entries = [_entry(index) for index in range(1, 7)] + [_entry(9, persona="p-old")]
    lessons = cache.prefetch(entries, "p-current", Guardrails(avoid_ids={"L-2"}), served_id="L-1", limit=10)
    assert [lesson.id for lesson in lessons] == ["L-3", "L-4", "L-5"]
    assert cache.prefetch(entries, "p-current", Guardrails(), served_id="L-1", limit=0) == []


class _BrokenStore:
    def get_lesson_cache(self, *args, **kwargs):
        raise RuntimeError("cache table missing")

    def upsert_lesson_cache(self, *args, **kwargs):
        raise RuntimeError("cache table missing")


def test_store_failures_degrade_to_miss(database) -> None:
    cache = LessonCache(_BrokenStore())  # type: ignore[arg-type]
    assert cache.get(USER, SUBJECT, FOCUS) == []
    cache.put(USER, SUBJECT, FOCUS, _entry(1))
    operations = [event.payload["operation"] for event in recent_events("lesson_cache_degraded")]
    assert operations == ["put", "get"]


def test_embedding_round_trips_through_store(database) -> None:
    cache = LessonCache(DeliveryStore())
    vector = asyncio.run(Deduplicator(FakeEmbedder(dimensions=4)).embed("Cached1 lesson\nbody"))
    _fill(cache, [_entry(1, embedding=vector)])
    assert cache.get(USER, SUBJECT, FOCUS, now=NOW)[0].embedding == [1.0, 0.0, 0.0, 0.0]
