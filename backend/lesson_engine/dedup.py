"""Cosine-similarity near-duplicate detection over lesson embeddings."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.85
DEFAULT_EMBED_TIMEOUT = 10.0

Vector = Sequence[float]


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]:  # pragma: no cover - protocol definition
        ...


def cosine_similarity(a: Vector, b: Vector) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def max_similarity(candidate: Vector, recent: Sequence[Vector]) -> float:
    """Highest similarity against ``recent``, clamped to [0, 1].

    Vectors that cannot be compared (length mismatch) are skipped.
    """
    best = 0.0
    for vector in recent:
        try:
            score = cosine_similarity(candidate, vector)
        except ValueError:
            logger.debug("Skipping embedding with mismatched dimensions")
            continue
        best = max(best, score)
    return min(1.0, max(0.0, best))


def is_near_duplicate(score: float, threshold: float = DEFAULT_THRESHOLD) -> bool:
    return score > threshold


class Deduplicator:
    """Wraps an embedder so failures degrade to "similarity unknown"."""

    def __init__(
        self,
        embedder: Optional[Embedder],
        threshold: float = DEFAULT_THRESHOLD,
        timeout: float = DEFAULT_EMBED_TIMEOUT,
    ) -> None:
        self._embedder = embedder
        self.threshold = threshold
        self.timeout = timeout

    async def embed(self, text: str) -> Optional[list[float]]:
        if self._embedder is None or not text.strip():
            return None
        try:
            vector = await asyncio.wait_for(self._embedder.embed(text), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Embedding timed out after %.1fs; similarity unknown", self.timeout)
            return None
        except Exception as exc:  # noqa: BLE001
            logger.warning("Embedding failed; similarity unknown: %s", exc)
            return None
        return list(vector) if vector else None

    def score(self, candidate: Optional[Vector], recent: Sequence[Vector]) -> Optional[float]:
        if candidate is None or not recent:
            return None
        return max_similarity(candidate, recent)

    def is_near_duplicate(self, candidate: Optional[Vector], recent: Sequence[Vector]) -> bool:
        score = self.score(candidate, recent)
        return score is not None and is_near_duplicate(score, self.threshold)


__all__ = [
    "DEFAULT_EMBED_TIMEOUT",
    "DEFAULT_THRESHOLD",
    "Deduplicator",
    "Embedder",
    "cosine_similarity",
    "is_near_duplicate",
    "max_similarity",
]
