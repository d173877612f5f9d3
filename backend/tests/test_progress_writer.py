from __future__ import annotations

from datetime import datetime, timezone

from lesson_engine.path_state import CompletionMap, DeliveryLog, FocusLabel, PathCursor
from lesson_engine.progress_metrics import ProgressMetricsSnapshot
from lesson_engine.progress_writer import CompletionMark, ProgressPatch, ProgressWriter, apply_patch
from lesson_engine.store import DeliveryStore
from lesson_engine.telemetry import recent_events

from lesson_fixtures import SUBJECT, sample_path

USER = "learner-1"
FOCUS = FocusLabel("Topic 1", "Subtopic 1")


def _delivery(lesson_id: str, cursor: PathCursor, next_topic: FocusLabel | None = None) -> ProgressPatch:
    return ProgressPatch.for_delivery(
        FOCUS,
        cursor,
        planned_mini=2,
        lesson_id=lesson_id,
        lesson_title=f"Title {lesson_id}",
        metrics=None,
        next_topic=next_topic,
    )


def test_concurrent_patches_from_same_snapshot_keep_both_deliveries(database) -> None:
    store = DeliveryStore()
    store.upsert_path_state(USER, SUBJECT, SUBJECT, sample_path())
    writer = ProgressWriter(store)
    snapshot = store.get_progress_row(USER, SUBJECT).cursor

    writer.apply(USER, SUBJECT, _delivery("L-a", snapshot))
    row = writer.apply(USER, SUBJECT, _delivery("L-b", snapshot))

    assert row is not None
    assert row.deliveries.for_focus(FOCUS).ids == ["L-a", "L-b"]
    assert row.deliveries.for_focus(FOCUS).count == 2
    assert row.cursor.delivered_mini == 2
    assert row.completion.is_complete(FOCUS)


def test_mini_counter_never_exceeds_planned(database) -> None:
    store = DeliveryStore()
    writer = ProgressWriter(store)
    for index in range(4):
        row = writer.apply(USER, SUBJECT, _delivery(f"L-{index}", PathCursor()))
    assert row is not None
    assert row.cursor.delivered_mini == 2


def test_delivery_patch_sets_next_topic_hint(database) -> None:
    store = DeliveryStore()
    store.upsert_path_state(USER, SUBJECT, SUBJECT, sample_path())
    ProgressWriter(store).apply(USER, SUBJECT, _delivery("L-a", PathCursor(), FocusLabel("Topic 1", "Subtopic 2")))

    record = store.get_path_state(USER, SUBJECT)
    assert record is not None
    assert record.next_topic == "Topic 1 > Subtopic 2"


def test_first_patch_seeds_completion_from_path_flags(database) -> None:
    store = DeliveryStore()
    path = sample_path()
    path.topics[1].subtopics[0].completed = True
    store.upsert_path_state(USER, SUBJECT, SUBJECT, path)

    row = ProgressWriter(store).apply(USER, SUBJECT, _delivery("L-a", PathCursor()))

    assert row is not None
    assert row.completion.is_complete(FocusLabel("Topic 2", "Subtopic 1"))
    assert not row.completion.is_complete(FOCUS)


def test_pure_merge_applies_marks_and_metrics() -> None:
    metrics = ProgressMetricsSnapshot(accuracy_pct=80, computed_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
    patch = ProgressPatch(
        topic="Topic 2",
        subtopic="Subtopic 2",
        cursor=PathCursor(topic_index=1, subtopic_index=1),
        mark_complete=[CompletionMark(topic="Topic 1", subtopic="Subtopic 1")],
        metrics=metrics,
    )
    cursor, log, completion, merged = apply_patch(
        PathCursor(delivered_mini=1), DeliveryLog(), CompletionMap(), None, patch
    )
    assert (cursor.topic_index, cursor.subtopic_index, cursor.delivered_mini) == (1, 1, 0)
    assert log.entries == []
    assert completion.is_complete(FOCUS)
    assert merged == metrics


class _FailingStore:
    def apply_progress_patch(self, *args, **kwargs):
        raise RuntimeError("database is locked")


def test_writer_failure_is_reported_not_raised(database) -> None:
    writer = ProgressWriter(_FailingStore())  # type: ignore[arg-type]

    assert writer.apply(USER, SUBJECT, _delivery("L-a", PathCursor())) is None

    events = recent_events("progress_patch_failed")
    assert len(events) == 1
    assert events[0].payload["focus"] == "Topic 1 > Subtopic 1"
    assert "locked" in events[0].payload["error"]


def _served(
    lesson_id: str,
    focus: FocusLabel,
    cursor: PathCursor,
    read_cursor: PathCursor,
    planned: int,
    next_topic: FocusLabel | None = None,
) -> ProgressPatch:
    return ProgressPatch.for_delivery(
        focus,
        cursor,
        planned_mini=planned,
        lesson_id=lesson_id,
        lesson_title=f"Title {lesson_id}",
        metrics=None,
        next_topic=next_topic,
        read_cursor=read_cursor,
    )


def test_slow_patch_cannot_move_cursor_back(database) -> None:
    store = DeliveryStore()
    store.upsert_path_state(USER, SUBJECT, SUBJECT, sample_path())
    writer = ProgressWriter(store)
    second = FocusLabel("Topic 1", "Subtopic 2")
    writer.apply(USER, SUBJECT, _served("L-0", FOCUS, PathCursor(), PathCursor(), 2))

    # two requests read the same row
    seen = store.get_progress_row(USER, SUBJECT).cursor
    assert seen.delivered_mini == 1

    writer.apply(USER, SUBJECT, _served("L-fast", FOCUS, seen, seen, 2, second))
    done = store.get_progress_row(USER, SUBJECT).cursor
    moved = PathCursor(topic_index=0, subtopic_index=1)
    writer.apply(USER, SUBJECT, _served("L-next", second, moved, done, 1, FocusLabel("Topic 2", "Subtopic 1")))

    row = writer.apply(USER, SUBJECT, _served("L-slow", FOCUS, seen, seen, 2, second))

    assert row is not None
    assert (row.cursor.topic_index, row.cursor.subtopic_index, row.cursor.delivered_mini) == (0, 1, 1)
    assert row.deliveries.for_focus(FOCUS).ids == ["L-0", "L-fast", "L-slow"]
    assert row.deliveries.for_focus(second).ids == ["L-next"]
    assert row.completion.is_complete(second)
    record = store.get_path_state(USER, SUBJECT)
    assert record is not None
    assert record.next_topic == "Topic 2 > Subtopic 1"


def test_superseded_merge_keeps_stored_cursor_and_marks() -> None:
    stored = PathCursor(topic_index=1, subtopic_index=0, delivered_mini=1)
    patch = ProgressPatch(
        topic="Topic 1",
        subtopic="Subtopic 1",
        cursor=PathCursor(delivered_mini=1),
        delivered_mini_delta=1,
        planned_mini=2,
        lesson_id="L-late",
        mark_complete=[CompletionMark(topic="Topic 1", subtopic="Subtopic 2")],
    )

    cursor, log, completion, _ = apply_patch(stored, DeliveryLog(), CompletionMap(), None, patch)

    assert cursor == stored
    assert log.for_focus(FOCUS).ids == ["L-late"]
    assert completion.is_complete(FocusLabel("Topic 1", "Subtopic 2"))
    assert not completion.is_complete(FOCUS)


def test_wrapping_back_from_the_read_position_is_kept() -> None:
    stored = PathCursor(topic_index=1, subtopic_index=1, delivered_mini=3)
    patch = ProgressPatch(
        topic="Topic 1",
        subtopic="Subtopic 1",
        cursor=PathCursor(),
        read_cursor=stored,
        delivered_mini_delta=1,
        planned_mini=2,
        lesson_id="L-wrap",
    )

    cursor, _, _, _ = apply_patch(stored, DeliveryLog(), CompletionMap(), None, patch)

    assert (cursor.topic_index, cursor.subtopic_index, cursor.delivered_mini) == (0, 0, 1)
