"""Connection pool counters surfaced through telemetry and /healthz/database."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from threading import Lock
from typing import Dict
from weakref import WeakKeyDictionary

from sqlalchemy import event
from sqlalchemy.engine import Engine

from ..telemetry import emit_event

_TELEMETRY_INTERVAL = float(os.getenv("LESSON_DB_TELEMETRY_INTERVAL", "30"))


@dataclass
class PoolCounters:
    connects: int = 0
    checkouts: int = 0
    checkins: int = 0
    last_emit: float = 0.0

    @property
    def in_use(self) -> int:
        return max(0, self.checkouts - self.checkins)


_counters: "WeakKeyDictionary[Engine, PoolCounters]" = WeakKeyDictionary()
_counters_lock = Lock()


def instrument_engine(engine: Engine) -> None:
    """Attach pool listeners once per engine."""
    with _counters_lock:
        if engine in _counters:
            return
        counters = PoolCounters()
        _counters[engine] = counters

    def bump(kind: str) -> None:
        setattr(counters, kind, getattr(counters, kind) + 1)
        now = time.time()
        if _TELEMETRY_INTERVAL > 0 and (now - counters.last_emit) < _TELEMETRY_INTERVAL:
            return
        counters.last_emit = now
        emit_event(
            "lesson_pool_status",
            trigger=kind,
            status=_pool_status(engine),
            connects=counters.connects,
            checkouts=counters.checkouts,
            checkins=counters.checkins,
            in_use=counters.in_use,
        )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        bump("connects")

    @event.listens_for(engine, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy) -> None:  # type: ignore[no-untyped-def]
        bump("checkouts")

    @event.listens_for(engine, "checkin")
    def _on_checkin(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        bump("checkins")


def get_pool_snapshot(engine: Engine) -> Dict[str, object]:
    counters = _counters.get(engine) or PoolCounters()
    return {
        "status": _pool_status(engine),
        "connects": counters.connects,
        "checkouts": counters.checkouts,
        "checkins": counters.checkins,
        "in_use": counters.in_use,
    }


def _pool_status(engine: Engine) -> str:
    try:
        return engine.pool.status()  # type: ignore[no-untyped-call]
    except Exception as exc:  # pragma: no cover
        return f"unavailable: {exc}"


__all__ = ["PoolCounters", "get_pool_snapshot", "instrument_engine"]
