"""Cross-process generation lock keyed on (user, subject).

The lease lives in the ``generation_locks`` table. When that table cannot be
used the manager falls back to a per-key in-process lock, which only guards
requests served by this worker.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterator, Literal, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:  # pragma: no cover
    from .store import DeliveryStore

logger = logging.getLogger(__name__)

LockMode = Literal["held", "busy", "unsupported"]


@dataclass(frozen=True)
class LockOutcome:
    acquired: bool
    mode: LockMode
    owner: str
    local: Optional[threading.Lock] = None


def _key(user_id: str, subject: str) -> Tuple[str, str]:
    return user_id.strip(), " ".join(subject.split()).lower()


class GenerationLockManager:
    def __init__(self, store: "DeliveryStore", ttl_seconds: int = 180) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._local: Dict[Tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()

    def _local_lock(self, user_id: str, subject: str) -> threading.Lock:
        key = _key(user_id, subject)
        with self._guard:
            lock = self._local.get(key)
            if lock is None:
                lock = threading.Lock()
                self._local[key] = lock
            return lock

    def acquire(self, user_id: str, subject: str) -> LockOutcome:
        owner = uuid4().hex
        try:
            held = self._store.acquire_lock(user_id, subject, owner, self._ttl_seconds)
        except SQLAlchemyError as exc:
            logger.warning("Generation lock store unavailable, using in-process lock: %s", exc)
            lock = self._local_lock(user_id, subject)
            if lock.acquire(blocking=False):
                return LockOutcome(True, "unsupported", owner, lock)
            return LockOutcome(False, "busy", owner)
        return LockOutcome(held, "held" if held else "busy", owner)

    def release(self, user_id: str, subject: str, outcome: LockOutcome) -> None:
        if not outcome.acquired:
            return
        if outcome.local is not None:
            outcome.local.release()
            return
        try:
            self._store.release_lock(user_id, subject, outcome.owner)
        except SQLAlchemyError:  # noqa: BLE001
            # the lease still expires after its TTL
            logger.exception("Failed to release generation lock (subject=%s)", subject)

    @contextmanager
    def hold(self, user_id: str, subject: str) -> Iterator[LockOutcome]:
        """Yield the acquisition outcome; callers must check ``acquired``."""
        outcome = self.acquire(user_id, subject)
        try:
            yield outcome
        finally:
            self.release(user_id, subject, outcome)


__all__ = ["GenerationLockManager", "LockMode", "LockOutcome"]
