"""Per-focus lesson cache shared by the delivery paths."""

from .lesson_cache import CachedLesson, LessonCache

__all__ = ["CachedLesson", "LessonCache"]
