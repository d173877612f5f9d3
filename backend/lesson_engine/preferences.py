"""Liked/disliked/saved lesson sets and tone tags for one (user, subject)."""

from __future__ import annotations

from typing import Iterable, List, Literal

from pydantic import BaseModel, Field

PREFERENCE_RETENTION = 200
TONE_TAG_RETENTION = 20

FeedbackAction = Literal["like", "dislike", "save"]


def push_unique(values: List[str], value: str, limit: int = PREFERENCE_RETENTION) -> List[str]:
    """Append ``value`` as the most recent entry, dropping an older duplicate."""
    trimmed = value.strip()
    if not trimmed:
        return list(values)
    updated = [item for item in values if item != trimmed]
    updated.append(trimmed)
    return updated[-limit:]


def normalize_ids(values: Iterable[object]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values or []:
        if not isinstance(value, str):
            continue
        trimmed = value.strip()
        if trimmed and trimmed not in seen:
            seen.add(trimmed)
            result.append(trimmed)
    return result


class PreferenceSet(BaseModel):
    liked: List[str] = Field(default_factory=list)
    disliked: List[str] = Field(default_factory=list)
    saved: List[str] = Field(default_factory=list)
    tone_tags: List[str] = Field(default_factory=list)

    def apply(self, action: FeedbackAction, lesson_id: str) -> "PreferenceSet":
        liked, disliked, saved = list(self.liked), list(self.disliked), list(self.saved)
        if action == "like":
            liked = push_unique(liked, lesson_id)
            disliked = [item for item in disliked if item != lesson_id]
        elif action == "dislike":
            disliked = push_unique(disliked, lesson_id)
            liked = [item for item in liked if item != lesson_id]
        else:
            saved = push_unique(saved, lesson_id)
        return self.model_copy(update={"liked": liked, "disliked": disliked, "saved": saved})

    def with_tone_tags(self, tags: Iterable[str]) -> "PreferenceSet":
        """Most recent tags first; case-insensitive de-duplication."""
        incoming = [tag.strip().lower() for tag in tags if isinstance(tag, str) and tag.strip()]
        if not incoming:
            return self
        merged: List[str] = []
        for tag in incoming + [t.lower() for t in self.tone_tags]:
            if tag not in merged:
                merged.append(tag)
        return self.model_copy(update={"tone_tags": merged[:TONE_TAG_RETENTION]})


__all__ = [
    "FeedbackAction",
    "PREFERENCE_RETENTION",
    "PreferenceSet",
    "TONE_TAG_RETENTION",
    "normalize_ids",
    "push_unique",
]
