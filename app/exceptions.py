"""Error taxonomy for the recommendation engine."""

from __future__ import annotations


class RecommendationError(Exception):
    """Base class for recommendation engine failures."""


class DataError(RecommendationError):
    """The library store could not be queried; generation cannot proceed."""


class GeneratorError(RecommendationError):
    """The AI generator failed or produced an unusable response."""


class CacheWriteError(RecommendationError):
    """A persistent cache record could not be written."""


class CacheReadError(RecommendationError):
    """A persistent cache record could not be read."""
