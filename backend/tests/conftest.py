from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator

import pytest

os.environ.setdefault("LESSON_PRODUCER_ENABLED", "0")

from lesson_engine.config import get_settings  # noqa: E402
from lesson_engine.db import Base, dispose_engine, get_engine  # noqa: E402
from lesson_engine.db import models  # noqa: E402,F401
from lesson_engine.telemetry import clear_listeners  # noqa: E402


@pytest.fixture
def database(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    db_path = tmp_path / "lessons.db"
    monkeypatch.setenv("LESSON_DATABASE_URL", f"sqlite:///{db_path}")
    get_settings.cache_clear()
    dispose_engine()
    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    clear_listeners()
    yield db_path
    dispose_engine()
    get_settings.cache_clear()
