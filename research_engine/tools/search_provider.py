from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol

from research_engine.config import settings
from research_engine.models.research import SearchModel
from research_engine.tools import perplexity_search, tavily_search, web_utils

ProgressCallback = Callable[[int], Awaitable[None]]

MAX_FINDINGS_FROM_RESULTS = 5


@dataclass
class SearchSource:
    url: str
    title: str = ""
    snippet: Optional[str] = None
    score: Optional[float] = None


@dataclass
class SearchResponse:
    content: str
    sources: list[SearchSource] = field(default_factory=list)
    provider: str = ""
    fallback_from: str | None = None
    fallback_reason: str | None = None


class SearchFunction(Protocol):
    async def __call__(
        self,
        query: str,
        *,
        model: SearchModel,
        context: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SearchResponse: ...


def _tavily_content(answer: str, results: list[tavily_search.SearchResult]) -> str:
    """Answer text followed by the top findings, each cited against the result list."""
    lines = [answer.strip()] if answer.strip() else []
    findings = [
        f"- {' '.join(r.content.split())[:400]} [{index}]"
        for index, r in enumerate(results[:MAX_FINDINGS_FROM_RESULTS], start=1)
        if r.content.strip()
    ]
    if findings:
        lines.append("Key findings:\n" + "\n".join(findings))
    return "\n\n".join(lines)


async def _search_tavily(
    query: str,
    model: SearchModel,
    on_progress: Optional[ProgressCallback],
) -> SearchResponse:
    answer, results = await tavily_search.search(query=query, model=model)
    results = [r for r in results if web_utils.is_valid_url(r.url)]
    if on_progress is not None:
        await on_progress(len(results))
    return SearchResponse(
        content=_tavily_content(answer, results),
        sources=[
            SearchSource(url=r.url, title=r.title, snippet=r.content or None, score=r.score)
            for r in results
        ],
        provider="tavily",
    )


async def search(
    query: str,
    *,
    model: SearchModel = SearchModel.SONAR,
    context: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> SearchResponse:
    provider = settings.search_provider.lower().strip()
    use_fallback = settings.search_fallback_to_tavily and bool(settings.tavily_api_key)

    if provider == "tavily":
        return await _search_tavily(query, model, on_progress)

    if provider == "perplexity":
        try:
            content, urls = await perplexity_search.search(
                query,
                model=model,
                context=context,
                on_progress=on_progress,
            )
            if content.strip() or not use_fallback:
                return SearchResponse(
                    content=content,
                    sources=[SearchSource(url=u) for u in urls],
                    provider="perplexity",
                )
            fallback = await _search_tavily(query, model, on_progress)
            fallback.fallback_from = "perplexity"
            fallback.fallback_reason = "perplexity returned empty content"
            return fallback
        except Exception as e:
            if not use_fallback:
                raise
            fallback = await _search_tavily(query, model, on_progress)
            fallback.fallback_from = "perplexity"
            fallback.fallback_reason = str(e)
            return fallback

    raise ValueError(f"Unsupported SEARCH_PROVIDER: {settings.search_provider}")


def search_configured() -> bool:
    """Whether the configured provider (or its fallback) has credentials."""
    provider = settings.search_provider.lower().strip()
    if provider == "tavily":
        return bool(settings.tavily_api_key)
    if settings.perplexity_api_key:
        return True
    return settings.search_fallback_to_tavily and bool(settings.tavily_api_key)
