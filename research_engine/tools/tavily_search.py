from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from tavily import AsyncTavilyClient

from research_engine.config import settings
from research_engine.models.research import SearchModel

SEARCH_DEPTH_BY_MODEL = {
    SearchModel.SONAR: "basic",
    SearchModel.SONAR_PRO: "advanced",
}


@dataclass
class SearchResult:
    title: str
    url: str
    content: str
    score: float


async def search(
    query: str,
    *,
    model: SearchModel = SearchModel.SONAR,
    max_results: int = 8,
    time_range: Optional[str] = None,
) -> tuple[str, list[SearchResult]]:
    """Execute a Tavily search. Returns (generated answer, results)."""
    if not settings.tavily_api_key:
        raise RuntimeError("TAVILY_API_KEY is not configured")

    client = AsyncTavilyClient(api_key=settings.tavily_api_key)
    kwargs: dict[str, Any] = {
        "query": query,
        "search_depth": SEARCH_DEPTH_BY_MODEL.get(model, "basic"),
        "max_results": max_results,
        "include_answer": True,
    }
    if time_range:
        kwargs["time_range"] = time_range

    response = await client.search(**kwargs)

    results = [
        SearchResult(
            title=r.get("title", ""),
            url=r.get("url", ""),
            content=r.get("content", ""),
            score=r.get("score", 0.0),
        )
        for r in response.get("results", [])
    ]
    return response.get("answer") or "", results
