"""High level orchestration for recommendation generation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..exceptions import DataError
from ..models import (
    MAX_RECOMMENDATIONS,
    PreferenceSnapshot,
    Provenance,
    RecommendationCandidate,
    RecommendationMetadata,
    RecommendationResult,
    UserPreferenceProfile,
)
from ..utils import label_matches
from .cache import CacheStats, RecommendationCache
from .fallback import FallbackGenerator
from .library import LibraryRepository
from .openai import OpenAIClient
from .preferences import PreferenceAnalyzer

logger = logging.getLogger(__name__)

PROBE_USER_ID = "test-user"


@dataclass(frozen=True)
class SystemStatus:
    """Result of the diagnostic probe exposed on the health endpoint."""

    ai_available: bool
    fallback_working: bool
    cache_working: bool

    @property
    def healthy(self) -> bool:
        return self.fallback_working and self.cache_working

    def to_payload(self) -> dict[str, bool]:
        return {
            "aiAvailable": self.ai_available,
            "fallbackWorking": self.fallback_working,
            "cacheWorking": self.cache_working,
        }


@dataclass
class _Selection:
    candidates: list[RecommendationCandidate]
    source: Provenance


class RecommendationService:
    """Decides between AI, fallback and hybrid results and caches them."""

    def __init__(
        self,
        library: LibraryRepository,
        analyzer: PreferenceAnalyzer,
        fallback: FallbackGenerator,
        ai_client: OpenAIClient,
        cache: RecommendationCache,
        *,
        prompt_book_limit: int = 5,
    ):
        self._library = library
        self._analyzer = analyzer
        self._fallback = fallback
        self._ai = ai_client
        self._cache = cache
        self._prompt_book_limit = prompt_book_limit

    @property
    def cache(self) -> RecommendationCache:
        return self._cache

    async def generate(self, user_id: str) -> RecommendationResult:
        """Return cached or freshly generated recommendations for the user.

        Only :class:`DataError` escapes; AI failures degrade to the fallback.
        """

        cached = await self._cache.get(user_id)
        if cached is not None:
            logger.info("Returning cached recommendations for user %s", user_id)
            return cached

        started = time.perf_counter()
        try:
            profile = await self._analyzer.analyze(user_id)
            has_enough_data = await self._analyzer.has_enough_data(user_id)
            seen_labels = await self._library.get_user_book_labels(user_id)

            selection: _Selection | None = None
            if not has_enough_data:
                logger.info(
                    "Using fallback recommendations for user %s: insufficient user data",
                    user_id,
                )
            elif not self._ai.is_available():
                logger.info(
                    "Using fallback recommendations for user %s: AI service unavailable",
                    user_id,
                )
            else:
                selection = await self._try_ai(user_id, profile, seen_labels)

            if selection is None:
                selection = _Selection(
                    candidates=await self._fallback_candidates(
                        user_id, profile, seen_labels
                    ),
                    source="fallback",
                )
        except DataError:
            logger.exception("Failed to generate recommendations for user %s", user_id)
            raise

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        result = RecommendationResult(
            recommendations=selection.candidates,
            metadata=RecommendationMetadata(
                user_id=user_id,
                generated_at=datetime.utcnow(),
                source=selection.source,
                user_preferences=profile.snapshot(has_enough_data=has_enough_data),
                processing_time_ms=elapsed_ms,
                ai_model=self._ai.model if selection.source != "fallback" else None,
            ),
        )
        await self._cache.store(user_id, result)

        logger.info(
            "Recommendations generated for user %s: source=%s count=%d time=%dms",
            user_id,
            result.source,
            len(result.recommendations),
            elapsed_ms,
        )
        return result

    async def invalidate(self, user_id: str) -> None:
        """Drop the user's cached result; call after a new review or favourite."""

        await self._cache.invalidate(user_id)

    async def invalidate_all(self) -> None:
        await self._cache.invalidate_all()

    async def get_cache_stats(self) -> CacheStats:
        return await self._cache.stats()

    async def get_history(
        self, user_id: str, *, limit: int = 10, skip: int = 0
    ) -> list[dict[str, Any]]:
        return await self._cache.history(user_id, limit=limit, skip=skip)

    async def get_analytics(
        self, *, start: datetime | None = None, end: datetime | None = None
    ) -> dict[str, dict[str, float]]:
        return await self._cache.analytics(start=start, end=end)

    async def test_system(self) -> SystemStatus:
        """Probe each subsystem independently. Never raises."""

        try:
            ai_available = self._ai.is_available() and await self._ai.test_connection()
        except Exception as exc:
            logger.warning("AI availability probe failed: %s", exc)
            ai_available = False

        probe_profile = UserPreferenceProfile(
            favorite_genres=["Fiction"],
            average_rating=4.0,
            recent_genres=["Fiction"],
        )
        try:
            fallback_candidates = await self._fallback.generate(
                PROBE_USER_ID, probe_profile
            )
            fallback_working = bool(fallback_candidates)
        except Exception as exc:
            logger.warning("Fallback probe failed: %s", exc)
            fallback_working = False

        try:
            probe = RecommendationResult(
                recommendations=[
                    RecommendationCandidate(
                        title="Probe",
                        author="System",
                        reason="Cache self-test",
                        confidence=0.5,
                        source="fallback",
                    )
                ],
                metadata=RecommendationMetadata(
                    user_id=PROBE_USER_ID,
                    generated_at=datetime.utcnow(),
                    source="fallback",
                    user_preferences=PreferenceSnapshot(),
                ),
            )
            cache_working = await self._cache.self_test(probe)
        except Exception as exc:
            logger.warning("Cache probe failed: %s", exc)
            cache_working = False

        return SystemStatus(
            ai_available=ai_available,
            fallback_working=fallback_working,
            cache_working=cache_working,
        )

    async def _try_ai(
        self,
        user_id: str,
        profile: UserPreferenceProfile,
        seen_labels: list[str],
    ) -> _Selection | None:
        """Return an AI or hybrid selection, or ``None`` to fall back."""

        try:
            suggestions = await self._ai.generate_candidates(
                profile.to_request(self._prompt_book_limit)
            )
            chosen = self._select_unseen(suggestions, seen_labels)
            if not chosen:
                logger.info(
                    "AI returned no unseen recommendations for user %s; using fallback",
                    user_id,
                )
                return None
            if len(chosen) >= MAX_RECOMMENDATIONS:
                return _Selection(candidates=chosen[:MAX_RECOMMENDATIONS], source="ai")

            needed = MAX_RECOMMENDATIONS - len(chosen)
            logger.info(
                "Supplementing %d AI recommendations with %d fallback picks for user %s",
                len(chosen),
                needed,
                user_id,
            )
            supplemental = await self._fallback.generate(
                user_id,
                profile,
                exclude=[*seen_labels, *(candidate.label for candidate in chosen)],
            )
            chosen_keys = {candidate.key for candidate in chosen}
            extra = [
                candidate
                for candidate in supplemental
                if candidate.key not in chosen_keys
            ][:needed]
            source: Provenance = "hybrid" if extra else "ai"
            return _Selection(candidates=[*chosen, *extra], source=source)
        except Exception as exc:
            logger.warning(
                "AI recommendations failed for user %s, falling back to algorithmic "
                "approach: %s",
                user_id,
                exc,
            )
            return None

    @staticmethod
    def _select_unseen(
        suggestions: list[RecommendationCandidate], seen_labels: list[str]
    ) -> list[RecommendationCandidate]:
        unique: list[RecommendationCandidate] = []
        keys: set[tuple[str, str]] = set()
        for candidate in suggestions:
            if candidate.key in keys or label_matches(candidate.label, seen_labels):
                continue
            keys.add(candidate.key)
            unique.append(candidate)
        return sorted(unique, key=lambda candidate: candidate.confidence, reverse=True)

    async def _fallback_candidates(
        self,
        user_id: str,
        profile: UserPreferenceProfile,
        seen_labels: list[str],
    ) -> list[RecommendationCandidate]:
        candidates = await self._fallback.generate(user_id, profile, exclude=seen_labels)
        if not candidates:
            raise DataError(f"No eligible catalog books to recommend for user {user_id}")
        return candidates
