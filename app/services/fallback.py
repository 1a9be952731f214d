"""Deterministic recommendation strategies used when the AI path is skipped."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Iterable

from ..models import MAX_RECOMMENDATIONS, RecommendationCandidate, UserPreferenceProfile
from ..utils import normalise_label
from .library import BookStats, LibraryRepository

logger = logging.getLogger(__name__)

MAX_NEIGHBOURS = 10
MIN_NEIGHBOUR_VOTES = 2
RELAXED_CONFIDENCE = 0.3


@dataclass(slots=True)
class _StrategyContext:
    """Mutable state shared by the strategies during one generation run."""

    user_id: str
    profile: UserPreferenceProfile
    user_book_ids: set[str]
    excluded_labels: set[str] = field(default_factory=set)

    def is_excluded(self, label: str) -> bool:
        return normalise_label(label) in self.excluded_labels

    def exclude(self, label: str) -> None:
        self.excluded_labels.add(normalise_label(label))


Strategy = Callable[[_StrategyContext, int], Awaitable[list[RecommendationCandidate]]]


def genre_confidence(book: BookStats, profile: UserPreferenceProfile) -> float:
    confidence = 0.6
    if book.matches_genres(profile.favorite_genres):
        confidence += 0.2
    if book.average_rating >= 4.5:
        confidence += 0.1
    elif book.average_rating >= 4.0:
        confidence += 0.05
    if book.review_count >= 50:
        confidence += 0.05
    return round(min(0.9, confidence), 4)


def rating_confidence(book: BookStats, profile: UserPreferenceProfile) -> float:
    confidence = 0.5
    if book.average_rating >= 4.5:
        confidence += 0.2
    elif book.average_rating >= 4.0:
        confidence += 0.1
    if book.matches_genres(profile.favorite_genres):
        confidence += 0.15
    if profile.reading_patterns.is_selective_reader and book.average_rating >= 4.0:
        confidence += 0.1
    return round(min(0.85, confidence), 4)


def popularity_confidence(book: BookStats, profile: UserPreferenceProfile) -> float:
    confidence = 0.4
    if book.matches_genres(profile.favorite_genres):
        confidence += 0.2
    if book.review_count >= 100:
        confidence += 0.1
    elif book.review_count >= 50:
        confidence += 0.05
    if book.average_rating >= 4.0:
        confidence += 0.1
    return round(min(0.75, confidence), 4)


def collaborative_confidence(neighbour_count: int) -> float:
    return round(min(0.8, 0.4 + 0.1 * neighbour_count), 4)


class FallbackGenerator:
    """Produces up to three candidates from catalog statistics alone."""

    def __init__(self, library: LibraryRepository):
        self._library = library

    async def generate(
        self,
        user_id: str,
        profile: UserPreferenceProfile,
        exclude: Iterable[str] = (),
    ) -> list[RecommendationCandidate]:
        """Return candidates ordered by confidence, never more than three.

        Individual strategy failures are logged and skipped. Failing to load
        the user's own books raises :class:`~app.exceptions.DataError`.
        """

        logger.info("Generating fallback recommendations for user %s", user_id)
        context = _StrategyContext(
            user_id=user_id,
            profile=profile,
            user_book_ids=await self._library.get_user_book_ids(user_id),
        )
        for label in exclude:
            context.exclude(label)

        strategies: list[tuple[str, Strategy]] = [
            ("genre", self._genre_affinity),
            ("rating", self._high_rating),
            ("popularity", self._popularity),
            ("collaborative", self._collaborative),
            ("relaxed", self._relaxed_fill),
        ]

        candidates: list[RecommendationCandidate] = []
        for name, strategy in strategies:
            remaining = MAX_RECOMMENDATIONS - len(candidates)
            if remaining <= 0:
                break
            try:
                found = await strategy(context, remaining)
            except Exception as exc:
                logger.warning(
                    "Fallback strategy %s failed for user %s: %s", name, user_id, exc
                )
                continue
            for candidate in found:
                if len(candidates) >= MAX_RECOMMENDATIONS:
                    break
                if context.is_excluded(candidate.label):
                    continue
                context.exclude(candidate.label)
                candidates.append(candidate)

        candidates.sort(key=lambda candidate: candidate.confidence, reverse=True)
        final = candidates[:MAX_RECOMMENDATIONS]
        if final:
            logger.info(
                "Fallback produced %d recommendations for user %s (avg confidence %.2f)",
                len(final),
                user_id,
                sum(candidate.confidence for candidate in final) / len(final),
            )
        else:
            logger.warning("Fallback produced no recommendations for user %s", user_id)
        return final

    async def _genre_affinity(
        self, context: _StrategyContext, limit: int
    ) -> list[RecommendationCandidate]:
        profile = context.profile
        if not profile.favorite_genres:
            return []
        books = await self._library.find_books(
            exclude_ids=context.user_book_ids, genres=profile.favorite_genres
        )
        return [
            self._candidate(
                book,
                reason=(
                    f"Recommended because you enjoy {book.primary_genre} books. "
                    f"This book has an average rating of {book.average_rating:.1f}/5.0 "
                    f"from {book.review_count} reviews."
                ),
                confidence=genre_confidence(book, profile),
            )
            for book in self._unseen(books, context)[:limit]
        ]

    async def _high_rating(
        self, context: _StrategyContext, limit: int
    ) -> list[RecommendationCandidate]:
        books = await self._library.find_books(
            exclude_ids=context.user_book_ids, min_rating=4.0, min_reviews=10
        )
        return [
            self._candidate(
                book,
                reason=(
                    f"Highly rated book with {book.average_rating:.1f}/5.0 stars from "
                    f"{book.review_count} reviews. Great choice for readers who "
                    "appreciate quality literature."
                ),
                confidence=rating_confidence(book, context.profile),
            )
            for book in self._unseen(books, context)[:limit]
        ]

    async def _popularity(
        self, context: _StrategyContext, limit: int
    ) -> list[RecommendationCandidate]:
        genres = context.profile.favorite_genres or None
        books = await self._library.find_books(
            exclude_ids=context.user_book_ids, genres=genres, min_reviews=20
        )
        return [
            self._candidate(
                book,
                reason=(
                    f"Popular choice with {book.review_count} reviews and a "
                    f"{book.average_rating:.1f}/5.0 rating. Many readers in your "
                    "preferred genres have enjoyed this book."
                ),
                confidence=popularity_confidence(book, context.profile),
            )
            for book in self._unseen(books, context)[:limit]
        ]

    async def _collaborative(
        self, context: _StrategyContext, limit: int
    ) -> list[RecommendationCandidate]:
        profile = context.profile
        neighbours = await self._library.find_similar_users(
            context.user_id,
            favorite_genres=profile.favorite_genres,
            average_rating=profile.average_rating,
            limit=MAX_NEIGHBOURS,
        )
        if not neighbours:
            return []

        liked = await self._library.get_liked_reviews(
            neighbours, exclude_ids=context.user_book_ids
        )
        votes: dict[str, list[int]] = {}
        books: dict[str, BookStats] = {}
        for review in liked:
            votes.setdefault(review.book.id, []).append(review.rating)
            books[review.book.id] = review.book

        ranked = [
            (books[book_id], len(ratings), sum(ratings) / len(ratings))
            for book_id, ratings in votes.items()
            if len(ratings) >= MIN_NEIGHBOUR_VOTES
        ]
        ranked.sort(key=lambda item: (-item[1], -item[2], item[0].id))

        candidates: list[RecommendationCandidate] = []
        for book, count, neighbour_average in ranked:
            if context.is_excluded(book.label):
                continue
            candidates.append(
                RecommendationCandidate(
                    title=book.title,
                    author=book.author,
                    genre=book.primary_genre,
                    reason=(
                        f"Recommended by {count} readers with similar preferences. "
                        f"They gave it an average rating of {neighbour_average:.1f}/5.0."
                    ),
                    confidence=collaborative_confidence(count),
                    source="fallback",
                    average_rating=round(neighbour_average, 2),
                    review_count=count,
                )
            )
            if len(candidates) >= limit:
                break
        return candidates

    async def _relaxed_fill(
        self, context: _StrategyContext, limit: int
    ) -> list[RecommendationCandidate]:
        books = await self._library.find_books(
            exclude_ids=context.user_book_ids, min_rating=3.5, min_reviews=5
        )
        return [
            self._candidate(
                book,
                reason=(
                    f"Well-reviewed book with a {book.average_rating:.1f}/5.0 rating. "
                    "A solid choice for expanding your reading horizons."
                ),
                confidence=RELAXED_CONFIDENCE,
            )
            for book in self._unseen(books, context)[:limit]
        ]

    @staticmethod
    def _unseen(books: list[BookStats], context: _StrategyContext) -> list[BookStats]:
        return [book for book in books if not context.is_excluded(book.label)]

    @staticmethod
    def _candidate(
        book: BookStats, *, reason: str, confidence: float
    ) -> RecommendationCandidate:
        return RecommendationCandidate(
            title=book.title,
            author=book.author,
            genre=book.primary_genre,
            reason=reason,
            confidence=confidence,
            source="fallback",
            average_rating=round(book.average_rating, 2),
            review_count=book.review_count,
        )
