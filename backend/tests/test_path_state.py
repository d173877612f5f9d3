from __future__ import annotations

import asyncio
from itertools import product

import pytest

from lesson_engine.errors import Generating, InvalidLessonFormat, NotReady
from lesson_engine.locks import GenerationLockManager
from lesson_engine.path_state import (
    CompletionMap,
    DeliveryLog,
    FocusLabel,
    PathCursor,
    PathStateService,
    advance_cursor,
    completion_percent,
    next_incomplete_after,
    parse_learning_path,
)
from lesson_engine.store import DeliveryStore

from lesson_fixtures import SUBJECT, FakeGenerator, path_document, sample_path


def _labels():
    path = sample_path()
    return path, [path.label_at(ti, si) for ti, si in path.iter_positions()]


def test_advance_never_lands_on_completed_subtopic() -> None:
    path, labels = _labels()
    positions = list(path.iter_positions())
    for flags in product([False, True], repeat=len(labels)):
        completion = CompletionMap(label for label, done in zip(labels, flags) if done)
        for ti, si in positions:
            cursor = advance_cursor(path, PathCursor(topic_index=ti, subtopic_index=si), completion)
            landed = path.label_at(cursor.topic_index, cursor.subtopic_index)
            if not all(flags):
                assert not completion.is_complete(landed)


def test_advance_jumps_to_earliest_incomplete_and_resets_mini() -> None:
    path, labels = _labels()
    completion = CompletionMap([labels[0], labels[2]])
    cursor = advance_cursor(path, PathCursor(topic_index=1, subtopic_index=0, delivered_mini=1), completion)
    assert (cursor.topic_index, cursor.subtopic_index, cursor.delivered_mini) == (0, 1, 0)


def test_advance_keeps_incomplete_cursor_and_clamps() -> None:
    path = sample_path()
    cursor = advance_cursor(path, PathCursor(topic_index=0, subtopic_index=0, delivered_mini=9), CompletionMap())
    assert (cursor.topic_index, cursor.subtopic_index, cursor.delivered_mini) == (0, 0, 2)

    out_of_range = advance_cursor(path, PathCursor(topic_index=7, subtopic_index=3), CompletionMap())
    assert (out_of_range.topic_index, out_of_range.subtopic_index) == (0, 0)


def test_advance_leaves_cursor_when_everything_complete() -> None:
    path, labels = _labels()
    cursor = PathCursor(topic_index=1, subtopic_index=1, delivered_mini=3)
    assert advance_cursor(path, cursor, CompletionMap(labels)) == cursor


def test_next_incomplete_after_wraps_around() -> None:
    path, labels = _labels()
    completion = CompletionMap(labels[1:3])
    hint = next_incomplete_after(path, PathCursor(topic_index=1, subtopic_index=1), completion)
    assert hint == FocusLabel("Topic 1", "Subtopic 1")
    assert next_incomplete_after(path, PathCursor(), CompletionMap(labels[1:])) is None


def test_completion_map_is_authoritative_after_seed() -> None:
    document = path_document()
    document["topics"][0]["subtopics"][0]["completed"] = True
    path = parse_learning_path(document, SUBJECT)
    assert path is not None

    seeded = CompletionMap.seed_from_path(path)
    assert FocusLabel("Topic 1", "Subtopic 1") in seeded
    assert completion_percent(path, seeded) == 25

    restored = CompletionMap.from_rows([])
    assert FocusLabel("Topic 1", "Subtopic 1") not in restored


def test_focus_labels_with_separator_do_not_collide() -> None:
    completion = CompletionMap([FocusLabel("A > B", "C")])
    assert completion.is_complete(FocusLabel("A > B", "C"))
    assert not completion.is_complete(FocusLabel("A", "B > C"))


def test_parse_learning_path_drops_unusable_entries() -> None:
    parsed = parse_learning_path(
        {
            "topics": [
                {"name": "Empty", "subtopics": []},
                {"name": "Kept", "subtopics": [{"name": " Ratios ", "mini_lessons": 40}, {"name": ""}, "junk"]},
            ]
        },
        "Course",
    )
    assert parsed is not None
    assert [topic.name for topic in parsed.topics] == ["Kept"]
    assert parsed.topics[0].subtopics[0].name == "Ratios"
    assert parsed.topics[0].subtopics[0].mini_lessons == 12
    assert parsed.course == "Course"
    assert parse_learning_path({"topics": []}) is None
    assert parse_learning_path("not a path") is None


def test_delivery_log_keeps_recent_unique_entries() -> None:
    log = DeliveryLog()
    focus = FocusLabel("Topic 1", "Subtopic 1")
    for lesson_id in ["a", "b", "a", "c"]:
        log.record(focus, lesson_id, f"title {lesson_id}", retention=2)
    entry = log.for_focus(focus)
    assert entry.ids == ["a", "c"]
    assert entry.count == 4


def test_ensure_requires_course(database) -> None:
    store = DeliveryStore()
    service = PathStateService(store, FakeGenerator(), GenerationLockManager(store))
    with pytest.raises(NotReady):
        asyncio.run(service.ensure("learner-1", SUBJECT, None))


def test_ensure_with_empty_generated_path_is_not_ready(database) -> None:
    store = DeliveryStore()
    service = PathStateService(store, FakeGenerator(path={"topics": []}), GenerationLockManager(store))
    with pytest.raises(NotReady):
        asyncio.run(service.ensure("learner-1", SUBJECT, SUBJECT))


def test_concurrent_ensure_generates_once(database) -> None:
    store = DeliveryStore()
    generator = FakeGenerator(path_delay=0.05)
    service = PathStateService(store, generator, GenerationLockManager(store))

    async def race():
        return await asyncio.gather(
            service.ensure("learner-1", SUBJECT, SUBJECT),
            service.ensure("learner-1", SUBJECT, SUBJECT),
            return_exceptions=True,
        )

    first, second = asyncio.run(race())
    assert generator.path_calls == 1
    outcomes = [first, second]
    busy = [item for item in outcomes if isinstance(item, Generating)]
    records = [item for item in outcomes if not isinstance(item, BaseException)]
    assert len(busy) == 1 and len(records) == 1
    assert busy[0].retry_after == 3

    retried = asyncio.run(service.ensure("learner-1", SUBJECT, SUBJECT))
    assert generator.path_calls == 1
    assert retried.path == records[0].path


def test_load_seeds_completion_only_without_progress_row(database) -> None:
    store = DeliveryStore()
    document = path_document()
    document["topics"][0]["subtopics"][0]["completed"] = True
    path = parse_learning_path(document, SUBJECT)
    assert path is not None
    store.upsert_path_state("learner-1", SUBJECT, SUBJECT, path)
    service = PathStateService(store, FakeGenerator(), GenerationLockManager(store))

    record, progress = service.load("learner-1", SUBJECT)
    assert record is not None and record.is_valid
    assert not progress.exists
    assert FocusLabel("Topic 1", "Subtopic 1") in progress.completion


class _BrokenPathGenerator(FakeGenerator):
    async def generate_learning_path(self, *args, **kwargs):
        self.path_calls += 1
        raise InvalidLessonFormat("no JSON object")


def test_unparseable_path_is_retryable_and_releases_lock(database) -> None:
    store = DeliveryStore()
    generator = _BrokenPathGenerator()
    service = PathStateService(store, generator, GenerationLockManager(store))

    with pytest.raises(Generating) as excinfo:
        asyncio.run(service.ensure("learner-1", SUBJECT, SUBJECT))
    assert excinfo.value.retry_after == 2

    with pytest.raises(Generating):
        asyncio.run(service.ensure("learner-1", SUBJECT, SUBJECT))
    assert generator.path_calls == 2
