"""Learner interests, course mapping and subject resolution."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, field_validator

from .errors import NoSubject


class LearnerProfile(BaseModel):
    user_id: str
    interests: List[str] = Field(default_factory=list)
    level_map: Dict[str, str] = Field(default_factory=dict)

    @field_validator("interests")
    @classmethod
    def _dedupe_interests(cls, values: List[str]) -> List[str]:
        seen: List[str] = []
        for value in values:
            trimmed = value.strip()
            if trimmed and trimmed not in seen:
                seen.append(trimmed)
        return seen

    def course_for(self, subject: str) -> Optional[str]:
        course = self.level_map.get(subject)
        if course is None:
            lowered = subject.strip().lower()
            for key, value in self.level_map.items():
                if key.strip().lower() == lowered:
                    course = value
                    break
        if isinstance(course, str) and course.strip():
            return course.strip()
        return None


def resolve_subject(
    explicit: Optional[str],
    recent_subjects: Sequence[str],
    profile: Optional[LearnerProfile],
) -> Tuple[str, Optional[str]]:
    """Explicit subject, else the most recently active one, else the first mapped interest.

    Returns ``(subject, course)``; the course may be ``None`` when the subject
    has no curriculum mapping yet.
    """
    if explicit and explicit.strip():
        subject = explicit.strip()
        return subject, profile.course_for(subject) if profile else None
    if recent_subjects:
        subject = recent_subjects[0]
        return subject, profile.course_for(subject) if profile else None
    if profile is not None:
        for interest in profile.interests:
            course = profile.course_for(interest)
            if course:
                return interest, course
    raise NoSubject()


__all__ = ["LearnerProfile", "resolve_subject"]
