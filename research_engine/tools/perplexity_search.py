from __future__ import annotations

import json
from typing import Awaitable, Callable, Optional

import httpx

from research_engine.config import settings
from research_engine.models.research import SearchModel
from research_engine.services.prompt_store import render_prompt

ProgressCallback = Callable[[int], Awaitable[None]]


def build_messages(question: str, context: Optional[str] = None) -> list[dict[str, str]]:
    system = render_prompt("search.system_prompt")
    if context:
        system += "\n" + render_prompt("search.context_block", context=context)
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": question},
    ]


async def search(
    query: str,
    *,
    model: SearchModel = SearchModel.SONAR,
    context: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> tuple[str, list[str]]:
    """Stream a Perplexity answer. Returns (content, citation urls)."""
    if not settings.perplexity_api_key:
        raise RuntimeError("PERPLEXITY_API_KEY is not configured")

    content_parts: list[str] = []
    citations: list[str] = []
    url = settings.perplexity_base_url.rstrip("/") + "/chat/completions"

    async with httpx.AsyncClient(timeout=settings.search_timeout_seconds) as client:
        async with client.stream(
            "POST",
            url,
            headers={
                "Authorization": f"Bearer {settings.perplexity_api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": model.value,
                "messages": build_messages(query, context),
                "stream": True,
            },
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise RuntimeError(f"Perplexity API error: {response.status_code} - {body[:500]}")

            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                data = line[len("data: "):].strip()
                if data == "[DONE]":
                    continue
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    continue

                choices = chunk.get("choices") or []
                if choices:
                    delta = (choices[0].get("delta") or {}).get("content")
                    if delta:
                        content_parts.append(delta)

                chunk_citations = chunk.get("citations") or []
                if chunk_citations and len(chunk_citations) != len(citations):
                    citations = [c for c in chunk_citations if isinstance(c, str)]
                    if on_progress is not None:
                        await on_progress(len(citations))

    return "".join(content_parts), citations
