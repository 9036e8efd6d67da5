from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from research_engine.config import settings
from research_engine.models.research import Citation, ResearchNote, SearchModel, SubQuestion
from research_engine.services import logger as log_service
from research_engine.services.citations import citation_id_for
from research_engine.services.pricing import estimate_batch_cost
from research_engine.tools import search_provider, web_utils
from research_engine.tools.search_provider import SearchFunction, SearchSource

__all__ = [
    "BatchSearchResult",
    "SearchCallbacks",
    "SearchWorkerOutput",
    "align_source_markers",
    "calculate_confidence",
    "estimate_batch_cost",
    "execute_parallel_searches",
    "execute_search",
    "transform_citations",
]

NON_RETRYABLE_MARKERS = ("api key", "authentication", "rate limit")
RETRY_BASE_DELAY_S = 1.0
# A provider citation marker with any whitespace that leads it.
SOURCE_MARKER = re.compile(r"(\s*)\[(\d+)\]")


@dataclass
class SearchCallbacks:
    on_search_start: Optional[Callable[[str, str], Awaitable[None]]] = None
    on_search_progress: Optional[Callable[[str, int], Awaitable[None]]] = None
    on_search_complete: Optional[Callable[[str, ResearchNote], Awaitable[None]]] = None
    on_search_error: Optional[Callable[[str, Exception], Awaitable[None]]] = None


@dataclass(slots=True)
class SearchWorkerOutput:
    sub_question_id: str
    note: ResearchNote | None = None
    error: Exception | None = None
    duration_ms: int = 0


@dataclass
class BatchSearchResult:
    notes: list[ResearchNote] = field(default_factory=list)
    failed_questions: list[str] = field(default_factory=list)
    total_duration_ms: int = 0
    parallelization_efficiency: float = 0.0


def _source_index(sources: list[SearchSource]) -> tuple[list[Citation], dict[int, int | None]]:
    """Citations for the valid, distinct sources plus a provider-position map.

    The map sends each 1-based provider position to its 1-based citation
    number; repeats point at the first occurrence, invalid URLs at None.
    """
    citations: list[Citation] = []
    numbers: dict[str, int] = {}
    positions: dict[int, int | None] = {}
    for position, source in enumerate(sources, start=1):
        url = source.url.strip()
        if not web_utils.is_valid_url(url):
            positions[position] = None
            continue
        if url not in numbers:
            domain = web_utils.extract_domain(url)
            citations.append(
                Citation(
                    id=citation_id_for(url),
                    url=url,
                    title=source.title or web_utils.title_from_url(url) or domain,
                    domain=domain,
                    snippet=source.snippet,
                    favicon=web_utils.favicon_url(domain),
                    relevance_score=source.score,
                )
            )
            numbers[url] = len(citations)
        positions[position] = numbers[url]
    return citations, positions


def transform_citations(sources: list[SearchSource]) -> list[Citation]:
    """Turn provider sources into citations, skipping invalid and repeated URLs."""
    return _source_index(sources)[0]


def align_source_markers(content: str, sources: list[SearchSource]) -> tuple[str, list[Citation]]:
    """Rewrite provider `[n]` markers so they index the transformed citation list.

    Markers for invalid sources are removed; markers past the provider's list
    are left untouched.
    """
    citations, positions = _source_index(sources)

    def replace(match: re.Match[str]) -> str:
        position = int(match.group(2))
        if position not in positions:
            return match.group(0)
        number = positions[position]
        if number is None:
            return ""
        return f"{match.group(1)}[{number}]"

    return SOURCE_MARKER.sub(replace, content), citations


def calculate_confidence(content: str, citations: list[Citation]) -> float:
    """Heuristic note confidence from content richness and source count."""
    confidence = 0.5

    if len(content) > 500:
        confidence += 0.1
    if len(content) > 1000:
        confidence += 0.1
    if len(content) > 2000:
        confidence += 0.05

    if len(citations) >= 2:
        confidence += 0.1
    if len(citations) >= 4:
        confidence += 0.1
    if len(citations) >= 6:
        confidence += 0.05

    if re.search(r"\d+%|\d+\.\d+|\$\d+", content):
        confidence += 0.05
    if re.search(r'"[^"]{20,}"', content):
        confidence += 0.05
    if re.search(r"^\s*(?:[-*]|\d+\.)\s", content, flags=re.MULTILINE):
        confidence += 0.03

    return min(round(confidence, 2), 0.95)


def _is_retryable(exc: Exception) -> bool:
    message = str(exc).lower()
    return not any(marker in message for marker in NON_RETRYABLE_MARKERS)


async def execute_search(
    sub_question: SubQuestion,
    session_id: str,
    model: SearchModel,
    callbacks: SearchCallbacks,
    context: Optional[str] = None,
    *,
    search: SearchFunction | None = None,
    max_retries: int | None = None,
) -> ResearchNote:
    """Search one sub-question and build its note. Raises when no content comes back."""
    run_search = search or search_provider.search
    retries = settings.search_retry_max if max_retries is None else max_retries

    async def on_progress(sources_found: int) -> None:
        if callbacks.on_search_progress is not None:
            await callbacks.on_search_progress(sub_question.id, sources_found)

    attempt = 0
    while True:
        try:
            response = await run_search(
                sub_question.question,
                model=model,
                context=context,
                on_progress=on_progress,
            )
            break
        except Exception as e:
            attempt += 1
            if attempt > retries or not _is_retryable(e):
                raise
            log_service.log_event(
                event_type="search_retry",
                message=f"Retrying search for {sub_question.id}",
                session_id=session_id,
                attempt=attempt,
                error=str(e),
            )
            await asyncio.sleep(RETRY_BASE_DELAY_S * 2 ** (attempt - 1))

    content = (response.content or "").strip()
    if not content:
        raise RuntimeError(f"Search for {sub_question.id} returned no content")

    if response.fallback_from:
        log_service.log_event(
            event_type="search_fallback",
            message=f"{response.fallback_from} -> {response.provider}",
            session_id=session_id,
            sub_question_id=sub_question.id,
            reason=response.fallback_reason,
        )

    content, citations = align_source_markers(content, response.sources)
    return ResearchNote(
        id=f"note-{session_id}-{sub_question.id}",
        session_id=session_id,
        sub_question_id=sub_question.id,
        content=content,
        citations=citations,
        confidence=calculate_confidence(content, citations),
    )


async def execute_parallel_searches(
    sub_questions: list[SubQuestion],
    session_id: str,
    model: SearchModel,
    callbacks: SearchCallbacks | None = None,
    context: Optional[str] = None,
    *,
    search: SearchFunction | None = None,
    max_parallel: int | None = None,
) -> BatchSearchResult:
    """Run one search per sub-question with bounded parallelism.

    A failing search never aborts its siblings: its id is reported in
    `failed_questions` and it contributes no note. Notes come back in input
    order regardless of completion order.
    """
    callbacks = callbacks or SearchCallbacks()
    parallelism = max(int(max_parallel or settings.research_parallel_searches), 1)
    semaphore = asyncio.Semaphore(parallelism)
    t0 = time.monotonic()

    async def run_one(sub_question: SubQuestion) -> SearchWorkerOutput:
        async with semaphore:
            started = time.monotonic()
            if callbacks.on_search_start is not None:
                await callbacks.on_search_start(sub_question.id, sub_question.question)
            try:
                note = await execute_search(
                    sub_question,
                    session_id,
                    model,
                    callbacks,
                    context,
                    search=search,
                )
            except Exception as e:
                duration_ms = int((time.monotonic() - started) * 1000)
                log_service.log_event(
                    event_type="search_failed",
                    message=f"Search failed for {sub_question.id}",
                    session_id=session_id,
                    error=str(e),
                )
                if callbacks.on_search_error is not None:
                    await callbacks.on_search_error(sub_question.id, e)
                return SearchWorkerOutput(sub_question.id, error=e, duration_ms=duration_ms)

            duration_ms = int((time.monotonic() - started) * 1000)
            if callbacks.on_search_complete is not None:
                await callbacks.on_search_complete(sub_question.id, note)
            return SearchWorkerOutput(sub_question.id, note=note, duration_ms=duration_ms)

    outputs = await asyncio.gather(*(run_one(q) for q in sub_questions))
    total_duration_ms = int((time.monotonic() - t0) * 1000)

    result = BatchSearchResult(total_duration_ms=total_duration_ms)
    for output in outputs:
        if output.note is not None:
            result.notes.append(output.note)
        else:
            result.failed_questions.append(output.sub_question_id)

    lanes = min(parallelism, len(sub_questions))
    if lanes and total_duration_ms > 0:
        busy_ms = sum(o.duration_ms for o in outputs)
        result.parallelization_efficiency = round(
            min(max(busy_ms / (total_duration_ms * lanes), 0.0), 1.0), 3
        )

    log_service.log_research_step(
        session_id,
        "search_batch",
        "completed",
        {
            "batch_size": len(sub_questions),
            "notes": len(result.notes),
            "failed": result.failed_questions,
            "duration_ms": total_duration_ms,
        },
    )
    return result
