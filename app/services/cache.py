"""Two-tier cache for generated recommendation results.

Tier A is an in-process map guarded by an :class:`asyncio.Lock`; tier B is the
``recommendation_history`` table, where at most one row per user is expected
to be active. Rows are never updated except to deactivate them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import RecommendationRecord
from ..exceptions import CacheReadError, CacheWriteError
from ..models import RecommendationResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3_600


@dataclass(frozen=True, slots=True)
class CacheEntry:
    result: RecommendationResult
    stored_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class CacheWriteResult:
    """Outcome of a cache write; the in-process tier always succeeds."""

    persisted: bool
    error: CacheWriteError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class CacheStats:
    size: int
    entries: list[dict[str, Any]]

    def to_payload(self) -> dict[str, Any]:
        return {"size": self.size, "entries": list(self.entries)}


class RecommendationCache:
    """Owns both cache tiers for recommendation results."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    async def get(self, user_id: str) -> RecommendationResult | None:
        """Return a live cached result from tier A, then tier B."""

        now = self._clock()
        async with self._lock:
            entry = self._entries.get(user_id)
            if entry is not None and entry.is_expired(now):
                del self._entries[user_id]
                entry = None
        if entry is not None:
            return entry.result

        try:
            record = await self._load_active_record(user_id, now)
        except CacheReadError as exc:
            logger.warning("Treating persistent cache read failure as a miss: %s", exc)
            return None
        if record is None:
            return None

        try:
            result = RecommendationResult.model_validate(record.payload)
        except ValidationError as exc:
            logger.warning(
                "Ignoring unreadable cached recommendations for user %s: %s",
                user_id,
                exc,
            )
            return None

        async with self._lock:
            self._entries[user_id] = CacheEntry(
                result=result, stored_at=now, expires_at=record.expires_at
            )
        logger.info("Restored recommendations for user %s from persistent cache", user_id)
        return result

    async def store(self, user_id: str, result: RecommendationResult) -> CacheWriteResult:
        """Write the result to both tiers, expiring one TTL after generation."""

        now = self._clock()
        expires_at = result.generated_at + self._ttl
        async with self._lock:
            self._sweep_expired(now)
            self._entries[user_id] = CacheEntry(
                result=result, stored_at=now, expires_at=expires_at
            )

        if self._session_factory is None:
            return CacheWriteResult(persisted=False)
        try:
            await self._persist(user_id, result, expires_at=expires_at, now=now)
        except CacheWriteError as exc:
            logger.error(
                "Persistent cache write failed for user %s; serving from memory: %s",
                user_id,
                exc,
            )
            return CacheWriteResult(persisted=False, error=exc)
        return CacheWriteResult(persisted=True)

    async def invalidate(self, user_id: str) -> None:
        """Forget the user's cached result in both tiers."""

        async with self._lock:
            self._entries.pop(user_id, None)
        await self._deactivate(RecommendationRecord.user_id == user_id)
        logger.info("Recommendation cache invalidated for user %s", user_id)

    async def invalidate_all(self) -> None:
        async with self._lock:
            self._entries.clear()
        await self._deactivate()
        logger.info("Recommendation cache cleared for all users")

    async def stats(self) -> CacheStats:
        """Return tier-A size and the remaining lifetime of each entry."""

        now = self._clock()
        async with self._lock:
            snapshot = list(self._entries.items())
        entries = [
            {
                "user_id": user_id,
                "expires_in_seconds": max(
                    0.0, (entry.expires_at - now).total_seconds()
                ),
            }
            for user_id, entry in snapshot
        ]
        return CacheStats(size=len(snapshot), entries=entries)

    async def self_test(self, probe: RecommendationResult) -> bool:
        """Round-trip a probe result through tier A only."""

        key = f"__probe__:{probe.metadata.user_id}"
        now = self._clock()
        async with self._lock:
            self._entries[key] = CacheEntry(
                result=probe, stored_at=now, expires_at=now + self._ttl
            )
            try:
                cached = self._entries.get(key)
            finally:
                self._entries.pop(key, None)
        return cached is not None and cached.result == probe

    async def history(
        self, user_id: str, *, limit: int = 10, skip: int = 0
    ) -> list[dict[str, Any]]:
        """Return persisted results for the user, newest first."""

        if self._session_factory is None:
            return []
        stmt = (
            select(RecommendationRecord)
            .where(RecommendationRecord.user_id == user_id)
            .order_by(
                RecommendationRecord.created_at.desc(), RecommendationRecord.id.desc()
            )
            .offset(skip)
            .limit(limit)
        )
        async with self._session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()
        return [
            {
                "id": record.id,
                "source": record.source,
                "isActive": record.is_active,
                "generatedAt": record.generated_at.isoformat(),
                "expiresAt": record.expires_at.isoformat(),
                "processingTimeMs": record.processing_time_ms,
                "aiModel": record.ai_model,
                "recommendations": (record.payload or {}).get("recommendations", []),
            }
            for record in records
        ]

    async def analytics(
        self, *, start: datetime | None = None, end: datetime | None = None
    ) -> dict[str, dict[str, float]]:
        """Summarise persisted results per provenance."""

        if self._session_factory is None:
            return {}
        stmt = select(RecommendationRecord)
        if start is not None:
            stmt = stmt.where(RecommendationRecord.created_at >= start)
        if end is not None:
            stmt = stmt.where(RecommendationRecord.created_at <= end)
        async with self._session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()

        grouped: dict[str, list[RecommendationRecord]] = {}
        for record in records:
            grouped.setdefault(record.source, []).append(record)

        summary: dict[str, dict[str, float]] = {}
        for source, items in sorted(grouped.items()):
            confidences = [
                float(candidate.get("confidence", 0.0))
                for record in items
                for candidate in (record.payload or {}).get("recommendations", [])
            ]
            avg_confidence = (
                sum(confidences) / len(confidences) if confidences else 0.0
            )
            summary[source] = {
                "count": len(items),
                "avgProcessingTimeMs": round(
                    sum(record.processing_time_ms for record in items) / len(items), 2
                ),
                "avgConfidence": round(avg_confidence, 4),
            }
        return summary

    def _sweep_expired(self, now: datetime) -> None:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("Swept %d expired recommendation cache entries", len(expired))

    async def _load_active_record(
        self, user_id: str, now: datetime
    ) -> RecommendationRecord | None:
        if self._session_factory is None:
            return None
        stmt = (
            select(RecommendationRecord)
            .where(
                RecommendationRecord.user_id == user_id,
                RecommendationRecord.is_active.is_(True),
                RecommendationRecord.expires_at > now,
            )
            .order_by(
                RecommendationRecord.created_at.desc(), RecommendationRecord.id.desc()
            )
            .limit(1)
        )
        try:
            async with self._session_factory() as session:
                return (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise CacheReadError(
                f"Failed to read cached recommendations for user {user_id}"
            ) from exc

    async def _persist(
        self,
        user_id: str,
        result: RecommendationResult,
        *,
        expires_at: datetime,
        now: datetime,
    ) -> None:
        assert self._session_factory is not None
        metadata = result.metadata
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(RecommendationRecord)
                    .where(
                        RecommendationRecord.user_id == user_id,
                        RecommendationRecord.is_active.is_(True),
                    )
                    .values(is_active=False)
                )
                session.add(
                    RecommendationRecord(
                        user_id=user_id,
                        source=metadata.source,
                        payload=result.model_dump(mode="json"),
                        processing_time_ms=metadata.processing_time_ms,
                        ai_model=metadata.ai_model,
                        generated_at=metadata.generated_at,
                        expires_at=expires_at,
                        is_active=True,
                        created_at=now,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise CacheWriteError(
                f"Failed to persist recommendations for user {user_id}"
            ) from exc

    async def _deactivate(self, *criteria) -> None:
        if self._session_factory is None:
            return
        stmt = (
            update(RecommendationRecord)
            .where(RecommendationRecord.is_active.is_(True), *criteria)
            .values(is_active=False)
        )
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise CacheWriteError("Failed to deactivate cached recommendations") from exc
