from __future__ import annotations

import asyncio
import json
from typing import Callable

import httpx
import pytest

from app.config import Settings
from app.exceptions import GeneratorError
from app.models import HighRatedBook, RecommendationRequest
from app.services.openai import OpenAIClient


def _request() -> RecommendationRequest:
    return RecommendationRequest(
        favorite_genres=["Fantasy", "Mystery"],
        high_rated_books=[
            HighRatedBook(title="The Hobbit", author="J.R.R. Tolkien", rating=5, genre="Fantasy")
        ],
        average_rating=4.4,
        total_reviews=12,
        recent_genres=["Mystery"],
    )


def _completion(content: str) -> dict[str, object]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _run(
    handler: Callable[[httpx.Request], httpx.Response],
    action: Callable[[OpenAIClient], object],
    *,
    api_key: str | None = "sk-test",
):
    async def runner():
        async with httpx.AsyncClient(
            base_url="https://api.example.test/v1",
            transport=httpx.MockTransport(handler),
        ) as http_client:
            settings = Settings(_env_file=None, OPENAI_API_KEY=api_key or "")
            return await action(OpenAIClient(settings, http_client))  # type: ignore[misc]

    return asyncio.run(runner())


def test_generate_candidates_keeps_valid_entries() -> None:
    """Malformed entries are dropped and the rest are capped at five."""

    captured: dict[str, object] = {}
    recommendations = [
        {"title": " Mistborn ", "author": "Brandon Sanderson", "genre": "Fantasy",
         "reason": "Epic magic systems.", "confidence": 0.92},
        {"title": "No Author", "reason": "Missing author", "confidence": 0.5},
        {"title": "Boolean", "author": "A", "reason": "Bad score", "confidence": True},
        {"title": "Stringly", "author": "A", "reason": "Bad score", "confidence": "0.8"},
        {"title": "Too High", "author": "A", "reason": "Bad score", "confidence": 1.5},
        "not an object",
    ] + [
        {"title": f"Mystery {index}", "author": "Agatha", "reason": "Clever plot.",
         "confidence": 0.6}
        for index in range(6)
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200, json=_completion(json.dumps({"recommendations": recommendations}))
        )

    candidates = _run(handler, lambda client: client.generate_candidates(_request()))

    assert captured["path"] == "/v1/chat/completions"
    assert captured["auth"] == "Bearer sk-test"
    body = captured["body"]
    assert body["model"] == "gpt-3.5-turbo"  # type: ignore[index]
    assert body["response_format"] == {"type": "json_object"}  # type: ignore[index]
    prompt = body["messages"][1]["content"]  # type: ignore[index]
    assert "Fantasy, Mystery" in prompt
    assert '"The Hobbit" by J.R.R. Tolkien' in prompt

    assert len(candidates) == 5
    assert candidates[0].title == "Mistborn"
    assert candidates[0].confidence == 0.92
    assert all(candidate.source == "ai" for candidate in candidates)
    assert [candidate.title for candidate in candidates[1:]] == [
        "Mystery 0",
        "Mystery 1",
        "Mystery 2",
        "Mystery 3",
    ]


def test_fenced_reply_is_accepted() -> None:
    content = (
        "```json\n"
        '{"recommendations": [{"title": "Emma", "author": "Jane Austen", '
        '"reason": "Sharp social comedy.", "confidence": 0.7}]}\n'
        "```"
    )

    candidates = OpenAIClient.parse_candidates(content)

    assert [candidate.label for candidate in candidates] == ["Emma by Jane Austen"]


@pytest.mark.parametrize(
    "content",
    [
        "I recommend Emma by Jane Austen.",
        '{"items": []}',
        '{"recommendations": "Emma"}',
    ],
)
def test_unusable_envelope_raises(content: str) -> None:
    with pytest.raises(GeneratorError):
        OpenAIClient.parse_candidates(content)


MALFORMED_ENVELOPES = [
    {"choices": {"first": {"message": {"content": "{}"}}}},
    {"choices": ["oops"]},
    {"choices": [{"message": "oops"}]},
]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="upstream exploded"),
        httpx.Response(200, text="<html>not json</html>"),
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, json=_completion("   ")),
    ]
    + [httpx.Response(200, json=body) for body in MALFORMED_ENVELOPES],
)
def test_transport_failures_raise_generator_error(response: httpx.Response) -> None:
    with pytest.raises(GeneratorError):
        _run(lambda request: response, lambda client: client.generate_candidates(_request()))


def test_network_error_raises_generator_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GeneratorError, match="OpenAI request failed"):
        _run(handler, lambda client: client.generate_candidates(_request()))


def test_missing_key_disables_client() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - not used
        raise AssertionError("Network access should not be triggered without a key")

    async def check(client: OpenAIClient):
        assert client.is_available() is False
        assert await client.test_connection() is False
        with pytest.raises(GeneratorError):
            await client.generate_candidates(_request())
        return True

    assert _run(handler, check, api_key=None) is True


def test_connection_check_reports_failures() -> None:
    assert _run(
        lambda request: httpx.Response(200, json=_completion("OK")),
        lambda client: client.test_connection(),
    ) is True
    assert _run(
        lambda request: httpx.Response(401, text="bad key"),
        lambda client: client.test_connection(),
    ) is False


@pytest.mark.parametrize("body", MALFORMED_ENVELOPES)
def test_connection_check_survives_malformed_envelope(body: dict[str, object]) -> None:
    """A reply with the wrong shape reports unavailable instead of raising."""

    assert _run(
        lambda request: httpx.Response(200, json=body),
        lambda client: client.test_connection(),
    ) is False


def test_prompt_without_history_uses_placeholders() -> None:
    client = OpenAIClient(Settings(_env_file=None), None)  # type: ignore[arg-type]
    request = RecommendationRequest(
        favorite_genres=[],
        high_rated_books=[],
        average_rating=0.0,
        total_reviews=0,
        recent_genres=[],
    )

    prompt = client.build_prompt(request, item_target=5)

    assert "recommend exactly 5 books" in prompt
    assert "No specific genre preferences" in prompt
    assert "No previous high-rated books" in prompt
