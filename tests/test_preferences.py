from __future__ import annotations

import asyncio
from datetime import datetime

from app.database import Database
from app.services.library import LibraryRepository, UserBookEntry
from app.services.preferences import PreferenceAnalyzer


def _entry(
    book_id: str,
    genre: str,
    *,
    author: str = "Ann Author",
    rating: int | None = None,
) -> UserBookEntry:
    return UserBookEntry(
        book_id=book_id,
        title=f"Title {book_id}",
        author=author,
        genres=(genre,),
        created_at=datetime(2024, 1, 1),
        rating=rating,
    )


def _analyzer(window: int = 10) -> PreferenceAnalyzer:
    # build_profile never touches the repository.
    return PreferenceAnalyzer(None, recent_review_window=window)  # type: ignore[arg-type]


def test_build_profile_weighs_ratings_and_favourites() -> None:
    reviews = [
        _entry("b1", "Fantasy", author="A", rating=5),
        _entry("b2", "Fantasy", author="A", rating=4),
        _entry("b3", "Mystery", author="B", rating=2),
    ]
    favorites = [_entry("b4", "Sci-Fi")]

    profile = _analyzer().build_profile(reviews, favorites)

    assert profile.favorite_genres == ["Fantasy", "Sci-Fi", "Mystery"]
    assert profile.recent_genres == ["Fantasy", "Mystery"]
    assert profile.average_rating == 11 / 3
    assert profile.total_reviews == 3
    assert profile.total_favorites == 1
    assert [book.title for book in profile.high_rated_books] == ["Title b1", "Title b2"]
    assert profile.high_rated_books[0].genre == "Fantasy"
    assert profile.preferred_authors == ["A"]
    assert profile.rating_distribution == {1: 0, 2: 1, 3: 0, 4: 1, 5: 1}
    assert profile.reading_patterns.is_selective_reader is False
    assert profile.reading_patterns.is_active_reviewer is False
    assert profile.reading_patterns.has_genre_preference is True


def test_recent_genres_follow_review_window() -> None:
    reviews = [
        _entry("b1", "Horror", rating=3),
        _entry("b2", "Romance", rating=3),
        _entry("b3", "Romance", rating=3),
    ]

    profile = _analyzer(window=1).build_profile(reviews, [])

    assert profile.recent_genres == ["Horror"]


def test_empty_history_yields_neutral_profile() -> None:
    profile = _analyzer().build_profile([], [])

    assert profile.favorite_genres == []
    assert profile.average_rating == 0.0
    assert profile.high_rated_books == []
    assert profile.reading_patterns.has_genre_preference is False


def test_selective_active_reviewer_patterns() -> None:
    reviews = [_entry(f"b{index}", f"Genre {index}", rating=5) for index in range(12)]

    profile = _analyzer().build_profile(reviews, [])

    assert profile.reading_patterns.is_selective_reader is True
    assert profile.reading_patterns.is_active_reviewer is True
    assert len(profile.favorite_genres) == 5
    assert len(profile.high_rated_books) == 10


def test_has_enough_data_thresholds(database_url, make_book, seed_library) -> None:
    """Three reviews or two favourites unlock AI personalisation."""

    async def runner() -> tuple[bool, bool, bool]:
        database = Database(database_url)
        await database.create_all()
        try:
            await seed_library(
                database,
                books=[make_book(f"b{index}", f"Book {index}") for index in range(4)],
                reviews=[
                    ("reviewer", "b0", 4),
                    ("reviewer", "b1", 3),
                    ("reviewer", "b2", 5),
                    ("casual", "b0", 5),
                ],
                favorites=[("collector", "b0"), ("collector", "b1"), ("casual", "b2")],
            )
            analyzer = PreferenceAnalyzer(LibraryRepository(database.session_factory))
            return (
                await analyzer.has_enough_data("reviewer"),
                await analyzer.has_enough_data("collector"),
                await analyzer.has_enough_data("casual"),
            )
        finally:
            await database.dispose()

    reviewer, collector, casual = asyncio.run(runner())

    assert reviewer is True
    assert collector is True
    assert casual is False


def test_analyze_reads_history_newest_first(
    database_url, make_book, seed_library
) -> None:
    async def runner():
        database = Database(database_url)
        await database.create_all()
        try:
            await seed_library(
                database,
                books=[
                    make_book("old", "Old Book", genres=["Poetry"]),
                    make_book("new", "New Book", genres=["Thriller"]),
                ],
                reviews=[("reader", "old", 2), ("reader", "new", 5)],
            )
            analyzer = PreferenceAnalyzer(
                LibraryRepository(database.session_factory), recent_review_window=1
            )
            return await analyzer.analyze("reader")
        finally:
            await database.dispose()

    profile = asyncio.run(runner())

    assert profile.total_reviews == 2
    assert profile.recent_genres == ["Thriller"]
    assert profile.favorite_genres == ["Thriller", "Poetry"]
    assert [book.title for book in profile.high_rated_books] == ["New Book"]
