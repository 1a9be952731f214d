"""Read-only access to the book, review and favourite tables."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import Book, Favorite, Review
from ..exceptions import DataError
from ..utils import book_label

logger = logging.getLogger(__name__)

BOOK_QUERY_LIMIT = 50


@dataclass(frozen=True, slots=True)
class BookStats:
    """Catalog book with the rating statistics used for scoring."""

    id: str
    title: str
    author: str
    genres: tuple[str, ...]
    average_rating: float
    review_count: int

    @property
    def primary_genre(self) -> str:
        return self.genres[0] if self.genres else "Unknown"

    @property
    def label(self) -> str:
        return book_label(self.title, self.author)

    def matches_genres(self, genres: Iterable[str]) -> bool:
        wanted = set(genres)
        return any(genre in wanted for genre in self.genres)


@dataclass(frozen=True, slots=True)
class UserBookEntry:
    """A reviewed or favourited book as seen from the user's history."""

    book_id: str
    title: str
    author: str
    genres: tuple[str, ...]
    created_at: datetime
    rating: int | None = None


@dataclass(frozen=True, slots=True)
class LikedReview:
    user_id: str
    book: BookStats
    rating: int


def _to_stats(book: Book) -> BookStats:
    return BookStats(
        id=book.id,
        title=book.title,
        author=book.author,
        genres=tuple(book.genres or ()),
        average_rating=float(book.average_rating or 0.0),
        review_count=int(book.review_count or 0),
    )


class LibraryRepository:
    """Query interface over the external library store.

    Every public method is a pure read. Database failures surface as
    :class:`DataError` so callers can treat them as terminal.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_user_reviews(self, user_id: str) -> list[UserBookEntry]:
        """Return the user's reviews, newest first."""

        stmt = (
            select(Review, Book)
            .join(Book, Review.book_id == Book.id)
            .where(Review.user_id == user_id)
            .order_by(Review.created_at.desc(), Review.id.desc())
        )
        rows = await self._fetch_rows(stmt, "reviews", user_id)
        return [
            UserBookEntry(
                book_id=book.id,
                title=book.title,
                author=book.author,
                genres=tuple(book.genres or ()),
                created_at=review.created_at,
                rating=review.rating,
            )
            for review, book in rows
        ]

    async def get_user_favorites(self, user_id: str) -> list[UserBookEntry]:
        """Return the user's favourites, newest first."""

        stmt = (
            select(Favorite, Book)
            .join(Book, Favorite.book_id == Book.id)
            .where(Favorite.user_id == user_id)
            .order_by(Favorite.created_at.desc(), Favorite.id.desc())
        )
        rows = await self._fetch_rows(stmt, "favorites", user_id)
        return [
            UserBookEntry(
                book_id=book.id,
                title=book.title,
                author=book.author,
                genres=tuple(book.genres or ()),
                created_at=favorite.created_at,
            )
            for favorite, book in rows
        ]

    async def count_user_reviews(self, user_id: str) -> int:
        stmt = select(func.count(Review.id)).where(Review.user_id == user_id)
        return await self._scalar(stmt, "review count", user_id)

    async def count_user_favorites(self, user_id: str) -> int:
        stmt = select(func.count(Favorite.id)).where(Favorite.user_id == user_id)
        return await self._scalar(stmt, "favorite count", user_id)

    async def get_user_book_ids(self, user_id: str) -> set[str]:
        """Return ids of every book the user reviewed or favourited."""

        review_stmt = select(Review.book_id).where(Review.user_id == user_id)
        favorite_stmt = select(Favorite.book_id).where(Favorite.user_id == user_id)
        try:
            async with self._session_factory() as session:
                reviewed = (await session.execute(review_stmt)).scalars().all()
                favorited = (await session.execute(favorite_stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise DataError(f"Failed to load books for user {user_id}") from exc
        return set(reviewed) | set(favorited)

    async def get_user_book_labels(self, user_id: str) -> list[str]:
        """Return "title by author" labels for reviewed and favourited books."""

        reviews = await self.get_user_reviews(user_id)
        favorites = await self.get_user_favorites(user_id)
        labels: list[str] = []
        for entry in [*reviews, *favorites]:
            label = book_label(entry.title, entry.author)
            if label not in labels:
                labels.append(label)
        return labels

    async def find_books(
        self,
        *,
        exclude_ids: Iterable[str] = (),
        genres: Sequence[str] | None = None,
        min_rating: float | None = None,
        min_reviews: int | None = None,
        limit: int = BOOK_QUERY_LIMIT,
    ) -> list[BookStats]:
        """Return reviewed catalog books ordered by rating then review count."""

        stmt = select(Book).where(Book.review_count > 0)
        excluded = list(exclude_ids)
        if excluded:
            stmt = stmt.where(Book.id.not_in(excluded))
        if min_rating is not None:
            stmt = stmt.where(Book.average_rating >= min_rating)
        if min_reviews is not None:
            stmt = stmt.where(Book.review_count >= min_reviews)
        stmt = stmt.order_by(
            Book.average_rating.desc(), Book.review_count.desc(), Book.id
        )
        if genres is None:
            stmt = stmt.limit(limit)

        try:
            async with self._session_factory() as session:
                books = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise DataError("Failed to query catalog books") from exc

        results: list[BookStats] = []
        for book in books:
            stats = _to_stats(book)
            # Genres live in a JSON column, so the intersection is applied here.
            if genres is not None and not stats.matches_genres(genres):
                continue
            results.append(stats)
            if len(results) >= limit:
                break
        return results

    async def find_similar_users(
        self,
        user_id: str,
        *,
        favorite_genres: Sequence[str],
        average_rating: float,
        min_common_books: int = 3,
        max_rating_gap: float = 0.5,
        limit: int = 10,
    ) -> list[str]:
        """Return users who liked several books in the same favourite genres."""

        if not favorite_genres:
            return []
        genre_book_ids = await self._book_ids_in_genres(favorite_genres)
        if not genre_book_ids:
            return []

        common_books = func.count(Review.id)
        stmt = (
            select(Review.user_id)
            .where(
                Review.user_id != user_id,
                Review.rating >= 4,
                Review.book_id.in_(genre_book_ids),
            )
            .group_by(Review.user_id)
            .having(
                common_books >= min_common_books,
                func.abs(func.avg(Review.rating) - average_rating) <= max_rating_gap,
            )
            .order_by(common_books.desc(), Review.user_id)
            .limit(limit)
        )
        rows = await self._fetch_rows(stmt, "neighbour reviews", user_id)
        return [neighbour_id for (neighbour_id,) in rows]

    async def get_liked_reviews(
        self, user_ids: Sequence[str], *, exclude_ids: Iterable[str] = ()
    ) -> list[LikedReview]:
        """Return reviews rated 4 or higher by the given users."""

        if not user_ids:
            return []
        stmt = (
            select(Review.user_id, Review.rating, Book)
            .join(Book, Review.book_id == Book.id)
            .where(Review.user_id.in_(list(user_ids)), Review.rating >= 4)
        )
        excluded = list(exclude_ids)
        if excluded:
            stmt = stmt.where(Review.book_id.not_in(excluded))
        rows = await self._fetch_rows(stmt, "liked reviews", ",".join(user_ids))
        return [
            LikedReview(user_id=neighbour_id, book=_to_stats(book), rating=rating)
            for neighbour_id, rating, book in rows
        ]

    async def _book_ids_in_genres(self, genres: Sequence[str]) -> list[str]:
        wanted = set(genres)
        stmt = select(Book.id, Book.genres)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise DataError("Failed to query catalog genres") from exc
        return [
            book_id
            for book_id, book_genres in rows
            if any(genre in wanted for genre in book_genres or ())
        ]

    async def _fetch_rows(self, stmt, what: str, user_id: str) -> list:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.all())
        except SQLAlchemyError as exc:
            raise DataError(f"Failed to load {what} for user {user_id}") from exc

    async def _scalar(self, stmt, what: str, user_id: str) -> int:
        try:
            async with self._session_factory() as session:
                value = (await session.execute(stmt)).scalar_one()
        except SQLAlchemyError as exc:
            raise DataError(f"Failed to load {what} for user {user_id}") from exc
        return int(value or 0)


def genre_counter(entries: Iterable[UserBookEntry]) -> Counter[str]:
    """Count genre occurrences across history entries."""

    counter: Counter[str] = Counter()
    for entry in entries:
        counter.update(entry.genres)
    return counter
