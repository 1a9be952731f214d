"""Derive reading preferences from a user's review and favourite history."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass

from ..models import HighRatedBook, ReadingPatterns, UserPreferenceProfile
from .library import LibraryRepository, UserBookEntry, genre_counter

logger = logging.getLogger(__name__)

FAVORITE_GENRE_LIMIT = 5
RECENT_GENRE_LIMIT = 3
HIGH_RATED_LIMIT = 10
PREFERRED_AUTHOR_LIMIT = 5
HIGH_RATING = 4
SELECTIVE_AVERAGE = 4.0
ACTIVE_REVIEWER_THRESHOLD = 10
GENRE_CONCENTRATION = 0.4
MIN_REVIEWS_FOR_AI = 3
MIN_FAVORITES_FOR_AI = 2


@dataclass(slots=True)
class _AuthorTally:
    count: int = 0
    total_rating: int = 0

    @property
    def average(self) -> float:
        return self.total_rating / self.count if self.count else 0.0


class PreferenceAnalyzer:
    """Builds :class:`UserPreferenceProfile` snapshots from the library store."""

    def __init__(self, library: LibraryRepository, *, recent_review_window: int = 10):
        self._library = library
        self._recent_review_window = recent_review_window

    async def analyze(self, user_id: str) -> UserPreferenceProfile:
        """Return the user's preference profile.

        Store failures propagate as :class:`~app.exceptions.DataError`.
        """

        logger.info("Analyzing preferences for user %s", user_id)
        reviews = await self._library.get_user_reviews(user_id)
        favorites = await self._library.get_user_favorites(user_id)
        profile = self.build_profile(reviews, favorites)
        logger.info(
            "Preferences for user %s: %d reviews, %d favourite genres, avg %.2f",
            user_id,
            profile.total_reviews,
            len(profile.favorite_genres),
            profile.average_rating,
        )
        return profile

    async def has_enough_data(self, user_id: str) -> bool:
        """Return whether the user has enough history for AI personalisation."""

        review_count = await self._library.count_user_reviews(user_id)
        if review_count >= MIN_REVIEWS_FOR_AI:
            return True
        favorite_count = await self._library.count_user_favorites(user_id)
        return favorite_count >= MIN_FAVORITES_FOR_AI

    def build_profile(
        self,
        reviews: list[UserBookEntry],
        favorites: list[UserBookEntry],
    ) -> UserPreferenceProfile:
        """Compute the profile from history entries ordered newest first."""

        total_reviews = len(reviews)
        ratings = [entry.rating or 0 for entry in reviews]
        average_rating = sum(ratings) / total_reviews if total_reviews else 0.0

        genre_weights = self._weigh_genres(reviews, favorites)
        favorite_genres = [
            genre for genre, _ in genre_weights.most_common(FAVORITE_GENRE_LIMIT)
        ]

        recent = reviews[: self._recent_review_window]
        recent_genres = [
            genre
            for genre, _ in genre_counter(recent).most_common(RECENT_GENRE_LIMIT)
        ]

        high_rated_books = [
            HighRatedBook(
                title=entry.title,
                author=entry.author,
                rating=entry.rating or 0,
                genre=entry.genres[0] if entry.genres else None,
            )
            for entry in reviews
            if (entry.rating or 0) >= HIGH_RATING
        ][:HIGH_RATED_LIMIT]

        return UserPreferenceProfile(
            favorite_genres=favorite_genres,
            high_rated_books=high_rated_books,
            average_rating=average_rating,
            total_reviews=total_reviews,
            total_favorites=len(favorites),
            recent_genres=recent_genres,
            rating_distribution=self._rating_distribution(ratings),
            preferred_authors=self._preferred_authors(reviews),
            reading_patterns=self._reading_patterns(
                total_reviews, average_rating, genre_weights
            ),
        )

    @staticmethod
    def _weigh_genres(
        reviews: list[UserBookEntry], favorites: list[UserBookEntry]
    ) -> Counter[str]:
        weights: Counter[str] = Counter()
        for entry in reviews:
            bonus = 2 if (entry.rating or 0) >= HIGH_RATING else 1
            for genre in entry.genres:
                weights[genre] += bonus
        for entry in favorites:
            for genre in entry.genres:
                weights[genre] += 2
        return weights

    @staticmethod
    def _rating_distribution(ratings: list[int]) -> dict[int, int]:
        distribution = {1: 0, 2: 0, 3: 0, 4: 0, 5: 0}
        for rating in ratings:
            bucket = round(rating)
            if bucket in distribution:
                distribution[bucket] += 1
        return distribution

    @staticmethod
    def _preferred_authors(reviews: list[UserBookEntry]) -> list[str]:
        tallies: dict[str, _AuthorTally] = {}
        for entry in reviews:
            tally = tallies.setdefault(entry.author, _AuthorTally())
            tally.count += 1
            tally.total_rating += entry.rating or 0

        liked = [
            (author, tally)
            for author, tally in tallies.items()
            if tally.count >= 2 and tally.average >= HIGH_RATING
        ]
        liked.sort(key=lambda item: (-item[1].average, -item[1].count))
        return [author for author, _ in liked[:PREFERRED_AUTHOR_LIMIT]]

    @staticmethod
    def _reading_patterns(
        total_reviews: int, average_rating: float, genre_weights: Counter[str]
    ) -> ReadingPatterns:
        has_genre_preference = False
        if genre_weights:
            top_weight = max(genre_weights.values())
            concentrated = (
                total_reviews > 0 and top_weight / total_reviews >= GENRE_CONCENTRATION
            )
            has_genre_preference = len(genre_weights) <= 3 or concentrated

        return ReadingPatterns(
            is_selective_reader=average_rating >= SELECTIVE_AVERAGE,
            is_active_reviewer=total_reviews >= ACTIVE_REVIEWER_THRESHOLD,
            has_genre_preference=has_genre_preference,
        )
