"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from app.database import Database  # noqa: E402
from app.db_models import Book, Favorite, Review  # noqa: E402

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def _make_book(
    book_id: str,
    title: str,
    *,
    author: str = "Jane Author",
    genres: Iterable[str] = ("Fiction",),
    rating: float = 4.0,
    reviews: int = 10,
) -> Book:
    return Book(
        id=book_id,
        title=title,
        author=author,
        genres=list(genres),
        average_rating=rating,
        review_count=reviews,
        created_at=BASE_TIME,
    )


async def _seed_library(
    database: Database,
    *,
    books: Iterable[Book] = (),
    reviews: Iterable[tuple[str, str, int]] = (),
    favorites: Iterable[tuple[str, str]] = (),
) -> None:
    """Insert books plus ``(user, book, rating)`` reviews and ``(user, book)`` favourites.

    Later rows get later timestamps so "newest first" follows insertion order
    reversed.
    """

    async with database.session_factory() as session:
        session.add_all(list(books))
        await session.flush()
        for offset, (user_id, book_id, rating) in enumerate(reviews):
            session.add(
                Review(
                    user_id=user_id,
                    book_id=book_id,
                    rating=rating,
                    text="Review text",
                    created_at=BASE_TIME + timedelta(minutes=offset),
                )
            )
        for offset, (user_id, book_id) in enumerate(favorites):
            session.add(
                Favorite(
                    user_id=user_id,
                    book_id=book_id,
                    created_at=BASE_TIME + timedelta(minutes=offset),
                )
            )
        await session.commit()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'library.db'}"


@pytest.fixture
def make_book():
    return _make_book


@pytest.fixture
def seed_library():
    return _seed_library
