"""Integration helpers for OpenAI-compatible chat completion APIs.

The client turns a :class:`~app.models.RecommendationRequest` into a prompt,
sends a single request, and validates the structured reply. Anything that
prevents reading the reply envelope raises :class:`GeneratorError`; malformed
individual candidates are dropped.
"""

from __future__ import annotations

import logging
import math
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..exceptions import GeneratorError
from ..models import RecommendationCandidate, RecommendationRequest
from ..utils import parse_json_object

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a knowledgeable book recommendation expert. Provide personalized book "
    "recommendations based on user preferences in valid JSON format."
)

RECOMMENDATION_REQUEST_TEMPLATE = """
Based on the following user reading preferences, recommend exactly {item_target} books that would be perfect for this reader:

User profile:
- Favorite genres: {favorite_genres}
- Recent genre interests: {recent_genres}
- Highly rated books: {high_rated_books}
- Average rating given: {average_rating:.1f}/5.0
- Total reviews written: {total_reviews}

Requirements:
1. Recommend {item_target} diverse books that match the user's preferences.
2. Never recommend a book listed under highly rated books.
3. Consider both favorite genres and recent reading patterns.
4. Give a specific reason (2-3 sentences) for each recommendation.
5. Include a confidence score between 0.0 and 1.0 reflecting how well each book fits.

Respond with a single JSON object and nothing else:
{{"recommendations": [{{"title": "", "author": "", "genre": "", "reason": "", "confidence": 0.85}}]}}
""".strip()


class OpenAIClient:
    """Client responsible for talking to the /chat/completions endpoint."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    @property
    def model(self) -> str:
        return self._settings.openai_model

    def is_available(self) -> bool:
        """Return whether credentials are configured."""

        return bool(self._settings.openai_api_key)

    async def generate_candidates(
        self, request: RecommendationRequest
    ) -> list[RecommendationCandidate]:
        """Return between zero and ``AI_CANDIDATE_LIMIT`` validated candidates."""

        if not self.is_available():
            raise GeneratorError("OpenAI API key is not configured")

        limit = self._settings.ai_candidate_limit
        logger.info(
            "Requesting AI recommendations: %d genres, %d rated books, model=%s",
            len(request.favorite_genres),
            len(request.high_rated_books),
            self.model,
        )
        payload = {
            "model": self.model,
            "temperature": self._settings.openai_temperature,
            "max_tokens": self._settings.openai_max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self.build_prompt(request, item_target=limit)},
            ],
        }
        content = await self._complete(payload)
        candidates = self.parse_candidates(content, limit=limit)
        logger.info("AI returned %d usable recommendations", len(candidates))
        return candidates

    async def test_connection(self) -> bool:
        """Send a tiny completion to check connectivity. Never raises."""

        if not self.is_available():
            return False
        payload = {
            "model": self.model,
            "max_tokens": 10,
            "messages": [{"role": "user", "content": "Test connection"}],
        }
        try:
            content = await self._complete(payload)
        except GeneratorError as exc:
            logger.warning("OpenAI connection test failed: %s", exc)
            return False
        return bool(content)

    def build_prompt(self, request: RecommendationRequest, *, item_target: int) -> str:
        books = request.high_rated_books[: self._settings.prompt_book_limit]
        if books:
            rendered_books = ", ".join(
                f'"{book.title}" by {book.author} (rated {book.rating}/5'
                + (f", {book.genre})" if book.genre else ")")
                for book in books
            )
        else:
            rendered_books = "No previous high-rated books"

        return RECOMMENDATION_REQUEST_TEMPLATE.format(
            item_target=item_target,
            favorite_genres=", ".join(request.favorite_genres)
            or "No specific genre preferences",
            recent_genres=", ".join(request.recent_genres)
            or "No recent reading patterns",
            high_rated_books=rendered_books,
            average_rating=request.average_rating,
            total_reviews=request.total_reviews,
        )

    @staticmethod
    def parse_candidates(content: str, *, limit: int = 5) -> list[RecommendationCandidate]:
        """Validate the reply envelope and keep well-formed candidates."""

        try:
            parsed = parse_json_object(content)
        except ValueError as exc:
            raise GeneratorError(f"Failed to parse AI recommendations: {exc}") from exc

        raw_items = parsed.get("recommendations")
        if not isinstance(raw_items, list):
            raise GeneratorError("Invalid response format: missing recommendations array")

        candidates: list[RecommendationCandidate] = []
        for index, entry in enumerate(raw_items):
            candidate = _candidate_from_payload(entry)
            if candidate is None:
                logger.debug("Dropping malformed AI recommendation at index %d", index)
                continue
            candidates.append(candidate)
            if len(candidates) >= limit:
                break
        return candidates

    async def _complete(self, payload: dict[str, Any]) -> str:
        headers = {
            "Authorization": f"Bearer {self._settings.openai_api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.post(
                "/chat/completions", json=payload, headers=headers
            )
        except httpx.HTTPError as exc:
            raise GeneratorError(f"OpenAI request failed: {exc}") from exc
        if response.status_code >= 400:
            raise GeneratorError(
                f"OpenAI returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise GeneratorError("OpenAI returned a non-JSON body") from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            raise GeneratorError("Model returned no choices")
        choice = choices[0]
        if not isinstance(choice, dict):
            raise GeneratorError("Model returned a malformed choice")
        message = choice.get("message")
        if not isinstance(message, dict):
            raise GeneratorError("Model choice missing message")
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise GeneratorError("Model response missing content")
        return content


def _clean_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _candidate_from_payload(entry: object) -> RecommendationCandidate | None:
    """Return a candidate when every required field is present and valid."""

    if not isinstance(entry, dict):
        return None
    title = _clean_text(entry.get("title"))
    author = _clean_text(entry.get("author"))
    reason = _clean_text(entry.get("reason"))
    if not (title and author and reason):
        return None

    confidence = entry.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        return None
    if not math.isfinite(confidence) or not 0.0 <= confidence <= 1.0:
        return None

    try:
        return RecommendationCandidate(
            title=title,
            author=author,
            reason=reason,
            confidence=float(confidence),
            genre=_clean_text(entry.get("genre")),
            source="ai",
        )
    except ValidationError:
        return None
