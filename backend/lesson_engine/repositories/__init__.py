"""Database repositories for the delivery store."""

from .learners import GenerationLockRepository, LearnerRepository
from .lessons import LessonCacheRepository, LessonEmbeddingRepository, PendingLessonRepository, PendingRow
from .paths import LearningPathRepository, SubjectProgressRepository

__all__ = [
    "GenerationLockRepository",
    "LearnerRepository",
    "LearningPathRepository",
    "LessonCacheRepository",
    "LessonEmbeddingRepository",
    "PendingLessonRepository",
    "PendingRow",
    "SubjectProgressRepository",
]
