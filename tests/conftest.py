from __future__ import annotations

import asyncio
import re
from typing import Any, Callable, Optional

import pytest

from research_engine.config import settings
from research_engine.llm_client import MessageResponse, TextBlock, Usage
from research_engine.tools.search_provider import SearchResponse, SearchSource


class FakeStream:
    def __init__(self, text: str, chunk_size: int = 40, fail: Exception | None = None):
        self._chunks = [text[i : i + chunk_size] for i in range(0, len(text), chunk_size)]
        self._text = text
        self._fail = fail

    async def __aenter__(self) -> "FakeStream":
        if self._fail is not None:
            raise self._fail
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def _iter(self):
        for chunk in self._chunks:
            await asyncio.sleep(0)
            yield chunk

    @property
    def text_stream(self):
        return self._iter()

    async def get_final_message(self) -> MessageResponse:
        return MessageResponse(
            content=[TextBlock(type="text", text=self._text)],
            usage=Usage(input_tokens=100, output_tokens=50),
        )


class FakeMessages:
    """Scripted completion provider: `create` and `stream` pop their next reply."""

    def __init__(self, create_replies: list[Any] | None = None, stream_replies: list[Any] | None = None):
        self.create_replies = list(create_replies or [])
        self.stream_replies = list(stream_replies or [])
        self.create_calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> MessageResponse:
        self.create_calls.append(kwargs)
        reply = self.create_replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return MessageResponse(
            content=[TextBlock(type="text", text=reply)],
            usage=Usage(input_tokens=10, output_tokens=5),
        )

    def stream(self, **kwargs: Any) -> FakeStream:
        self.stream_calls.append(kwargs)
        reply = self.stream_replies.pop(0)
        if isinstance(reply, Exception):
            return FakeStream("", fail=reply)
        return FakeStream(reply)


class FakeClient:
    def __init__(self, create_replies: list[Any] | None = None, stream_replies: list[Any] | None = None):
        self.messages = FakeMessages(create_replies, stream_replies)


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")[:40]


class FakeSearch:
    """Search provider double: two sources per query, scripted failures and overrides."""

    def __init__(
        self,
        fail_on: Callable[[str], bool] | None = None,
        responses: dict[str, SearchResponse] | None = None,
        delay: float = 0.0,
    ):
        self.fail_on = fail_on or (lambda query: False)
        self.responses = responses or {}
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def __call__(
        self,
        query: str,
        *,
        model: Any,
        context: Optional[str] = None,
        on_progress: Any = None,
    ) -> SearchResponse:
        self.calls.append({"query": query, "model": model, "context": context})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_on(query):
                raise RuntimeError(f"search exploded for {query}")
            response = self.responses.get(query) or SearchResponse(
                content=f"Findings about {query} [1]. More detail on the topic [2].",
                sources=[
                    SearchSource(url=f"https://example.com/{_slug(query)}/a", title="A"),
                    SearchSource(url=f"https://www.example.org/{_slug(query)}/b", title="B"),
                ],
                provider="fake",
            )
            if on_progress is not None:
                await on_progress(len(response.sources))
            return response
        finally:
            self.active -= 1

    @property
    def queries(self) -> list[str]:
        return [call["query"] for call in self.calls]


@pytest.fixture(autouse=True)
def fast_streaming(monkeypatch):
    monkeypatch.setattr(settings, "stream_delay_ms", 0)
    monkeypatch.setattr(settings, "progress_update_interval_ms", 0)


@pytest.fixture
def fake_client_factory():
    return FakeClient


@pytest.fixture
def fake_search_factory():
    return FakeSearch
