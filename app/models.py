"""Domain models describing preference profiles and recommendation payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import book_label, normalise_label

CandidateSource = Literal["ai", "fallback"]
Provenance = Literal["ai", "fallback", "hybrid"]

MAX_RECOMMENDATIONS = 3


@dataclass(frozen=True)
class HighRatedBook:
    title: str
    author: str
    rating: int
    genre: str | None = None


@dataclass(frozen=True)
class ReadingPatterns:
    is_selective_reader: bool = False
    is_active_reviewer: bool = False
    has_genre_preference: bool = False


@dataclass
class UserPreferenceProfile:
    """Derived summary of a user's genre, rating and author affinities."""

    favorite_genres: list[str] = field(default_factory=list)
    high_rated_books: list[HighRatedBook] = field(default_factory=list)
    average_rating: float = 0.0
    total_reviews: int = 0
    total_favorites: int = 0
    recent_genres: list[str] = field(default_factory=list)
    rating_distribution: dict[int, int] = field(
        default_factory=lambda: {1: 0, 2: 0, 3: 0, 4: 0, 5: 0}
    )
    preferred_authors: list[str] = field(default_factory=list)
    reading_patterns: ReadingPatterns = field(default_factory=ReadingPatterns)

    def to_request(self, book_limit: int = 5) -> "RecommendationRequest":
        """Return the structured summary handed to the AI generator."""

        return RecommendationRequest(
            favorite_genres=list(self.favorite_genres),
            high_rated_books=list(self.high_rated_books[:book_limit]),
            average_rating=self.average_rating,
            total_reviews=self.total_reviews,
            recent_genres=list(self.recent_genres),
        )

    def snapshot(self, *, has_enough_data: bool) -> "PreferenceSnapshot":
        return PreferenceSnapshot(
            favorite_genres=list(self.favorite_genres),
            average_rating=round(self.average_rating, 2),
            total_reviews=self.total_reviews,
            has_enough_data=has_enough_data,
        )


@dataclass(frozen=True)
class RecommendationRequest:
    """Preference summary sent to the AI generator."""

    favorite_genres: list[str]
    high_rated_books: list[HighRatedBook]
    average_rating: float
    total_reviews: int
    recent_genres: list[str]


class RecommendationCandidate(BaseModel):
    """A single proposed book together with its provenance and confidence."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    genre: str | None = None
    reason: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    source: CandidateSource
    average_rating: float | None = Field(default=None, ge=0.0, le=5.0)
    review_count: int | None = Field(default=None, ge=0)

    @field_validator("genre", mode="before")
    @classmethod
    def _blank_genre(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def label(self) -> str:
        return book_label(self.title, self.author)

    @property
    def key(self) -> tuple[str, str]:
        return normalise_label(self.title), normalise_label(self.author)


class PreferenceSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    favorite_genres: list[str] = Field(default_factory=list)
    average_rating: float = 0.0
    total_reviews: int = 0
    has_enough_data: bool = False


class RecommendationMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    generated_at: datetime
    source: Provenance
    user_preferences: PreferenceSnapshot
    processing_time_ms: int = Field(default=0, ge=0)
    ai_model: str | None = None


class RecommendationResult(BaseModel):
    """Ordered, de-duplicated recommendations plus generation metadata."""

    model_config = ConfigDict(frozen=True)

    recommendations: list[RecommendationCandidate] = Field(
        min_length=1, max_length=MAX_RECOMMENDATIONS
    )
    metadata: RecommendationMetadata

    @model_validator(mode="after")
    def _ensure_unique_books(self) -> "RecommendationResult":
        seen: set[tuple[str, str]] = set()
        for candidate in self.recommendations:
            if candidate.key in seen:
                raise ValueError(f"Duplicate recommendation: {candidate.label}")
            seen.add(candidate.key)
        return self

    @property
    def source(self) -> Provenance:
        return self.metadata.source

    @property
    def generated_at(self) -> datetime:
        return self.metadata.generated_at
