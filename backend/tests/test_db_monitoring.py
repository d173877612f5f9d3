from __future__ import annotations

from sqlalchemy import create_engine, text

from lesson_engine.db import monitoring


def test_instrument_engine_emits_pool_status(monkeypatch) -> None:
    emitted: list[tuple[str, dict[str, object]]] = []

    def record(event_name: str, **payload: object) -> None:
        emitted.append((event_name, payload))

    monkeypatch.setattr(monitoring, "_TELEMETRY_INTERVAL", 0)
    monkeypatch.setattr(monitoring, "emit_event", record)

    engine = create_engine("sqlite:///:memory:", future=True)
    try:
        monitoring.instrument_engine(engine)
        monitoring.instrument_engine(engine)
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        assert emitted
        event_name, payload = emitted[0]
        assert event_name == "lesson_pool_status"
        assert payload["connects"] == 1
        assert [name for name, _ in emitted].count("lesson_pool_status") == len(emitted)

        snapshot = monitoring.get_pool_snapshot(engine)
        assert snapshot["checkouts"] >= 1
        assert snapshot["checkins"] == snapshot["checkouts"]
        assert snapshot["in_use"] == 0
    finally:
        engine.dispose()


def test_snapshot_of_uninstrumented_engine_is_zeroed() -> None:
    engine = create_engine("sqlite:///:memory:", future=True)
    try:
        snapshot = monitoring.get_pool_snapshot(engine)
        assert snapshot["connects"] == 0
        assert snapshot["in_use"] == 0
    finally:
        engine.dispose()
