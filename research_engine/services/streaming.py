from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator, Optional, Protocol

from research_engine.errors import ErrorCode, error_message, is_recoverable
from research_engine.models.events import (
    ClassifyData,
    ClassifyEvent,
    GapFoundData,
    GapFoundEvent,
    PlanData,
    PlanEvent,
    ResearchCompleteData,
    ResearchCompleteEvent,
    ResearchErrorData,
    ResearchErrorEvent,
    ResearchStartData,
    ResearchStartEvent,
    ResearchStreamEvent,
    Round2StartData,
    Round2StartEvent,
    SearchCompleteData,
    SearchCompleteEvent,
    SearchProgressData,
    SearchProgressEvent,
    SearchStartData,
    SearchStartEvent,
    SynthesizeProgressData,
    SynthesizeProgressEvent,
    SynthesizeStartData,
    SynthesizeStartEvent,
)
from research_engine.models.research import (
    Citation,
    ClassificationResult,
    ResearchGap,
    ResearchNote,
    ResearchPlan,
    SessionMetrics,
)


class StreamController(Protocol):
    """Sink the orchestrator emits into. `close` is called exactly once per run."""

    def enqueue(self, event: ResearchStreamEvent) -> None: ...

    def close(self) -> None: ...


class QueueStreamController:
    """StreamController backed by an asyncio.Queue, consumed through `events()`."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def enqueue(self, event: ResearchStreamEvent) -> None:
        if self.closed:
            raise RuntimeError("Cannot enqueue on a closed stream")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(self._CLOSED)

    async def events(self) -> AsyncIterator[ResearchStreamEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


def _now_ms() -> int:
    return int(time.time() * 1000)


def research_start(session_id: str, query: str, estimated_time: int) -> ResearchStartEvent:
    return ResearchStartEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=ResearchStartData(query=query, estimated_time=estimated_time),
    )


def classify(
    session_id: str,
    classification: ClassificationResult,
    estimated_cost_usd: Optional[float] = None,
) -> ClassifyEvent:
    return ClassifyEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=ClassifyData(
            complexity=classification.complexity,
            confidence=classification.confidence,
            estimated_time=classification.estimated_time,
            reasoning=classification.reasoning,
            estimated_cost_usd=estimated_cost_usd,
        ),
    )


def plan(session_id: str, research_plan: ResearchPlan) -> PlanEvent:
    return PlanEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=PlanData(
            sub_questions=research_plan.sub_questions,
            total_estimated_time=research_plan.total_estimated_time,
        ),
    )


def search_start(session_id: str, sub_question_id: str, question: str) -> SearchStartEvent:
    return SearchStartEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=SearchStartData(sub_question_id=sub_question_id, question=question),
    )


def search_progress(
    session_id: str,
    sub_question_id: str,
    sources_found: int,
    partial_content: Optional[str] = None,
) -> SearchProgressEvent:
    return SearchProgressEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=SearchProgressData(
            sub_question_id=sub_question_id,
            sources_found=sources_found,
            partial_content=partial_content,
        ),
    )


def search_complete(session_id: str, sub_question_id: str, note: ResearchNote) -> SearchCompleteEvent:
    return SearchCompleteEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=SearchCompleteData(
            sub_question_id=sub_question_id,
            note=note,
            citations_count=len(note.citations),
        ),
    )


def synthesize_start(session_id: str, notes: list[ResearchNote], round: int = 1) -> SynthesizeStartEvent:
    return SynthesizeStartEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=SynthesizeStartData(
            notes_count=len(notes),
            citations_count=sum(len(n.citations) for n in notes),
            round=round,
        ),
    )


def synthesize_progress(
    session_id: str,
    progress: float,
    partial_answer: Optional[str] = None,
) -> SynthesizeProgressEvent:
    return SynthesizeProgressEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=SynthesizeProgressData(progress=progress, partial_answer=partial_answer),
    )


def gap_found(session_id: str, gap: ResearchGap, will_start_round2: bool) -> GapFoundEvent:
    return GapFoundEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=GapFoundData(gap=gap, will_start_round2=will_start_round2),
    )


def round2_start(session_id: str, gaps: list[ResearchGap], new_queries: list[str]) -> Round2StartEvent:
    return Round2StartEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=Round2StartData(gaps=gaps, new_queries=new_queries),
    )


def research_complete(
    session_id: str,
    answer: str,
    citations: list[Citation],
    total_time: int,
    metrics: SessionMetrics,
) -> ResearchCompleteEvent:
    return ResearchCompleteEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=ResearchCompleteData(
            answer=answer,
            citations=citations,
            total_time=total_time,
            metrics=metrics,
        ),
    )


def error(session_id: str, code: ErrorCode, message: Optional[str] = None) -> ResearchErrorEvent:
    return ResearchErrorEvent(
        session_id=session_id,
        timestamp=_now_ms(),
        data=ResearchErrorData(
            message=message or error_message(code),
            code=code.value,
            recoverable=is_recoverable(code),
        ),
    )
