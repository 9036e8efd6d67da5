from __future__ import annotations

import json
from enum import StrEnum
from typing import Annotated, Literal, Optional, Union

from pydantic import Field, TypeAdapter

from research_engine.models.research import (
    Citation,
    QueryComplexity,
    ResearchGap,
    ResearchNote,
    SessionMetrics,
    SubQuestion,
    WireModel,
)


class EventType(StrEnum):
    RESEARCH_START = "research_start"
    CLASSIFY = "classify"
    PLAN = "plan"
    SEARCH_START = "search_start"
    SEARCH_PROGRESS = "search_progress"
    SEARCH_COMPLETE = "search_complete"
    SYNTHESIZE_START = "synthesize_start"
    SYNTHESIZE_PROGRESS = "synthesize_progress"
    GAP_FOUND = "gap_found"
    ROUND2_START = "round2_start"
    RESEARCH_COMPLETE = "research_complete"
    ERROR = "error"


# --- Payloads ---


class ResearchStartData(WireModel):
    query: str
    estimated_time: int


class ClassifyData(WireModel):
    complexity: QueryComplexity
    confidence: float
    estimated_time: int
    reasoning: Optional[str] = None
    estimated_cost_usd: Optional[float] = None


class PlanData(WireModel):
    sub_questions: list[SubQuestion]
    total_estimated_time: int


class SearchStartData(WireModel):
    sub_question_id: str
    question: str


class SearchProgressData(WireModel):
    sub_question_id: str
    sources_found: int
    partial_content: Optional[str] = None


class SearchCompleteData(WireModel):
    sub_question_id: str
    note: ResearchNote
    citations_count: int


class SynthesizeStartData(WireModel):
    notes_count: int
    citations_count: int
    round: int = 1


class SynthesizeProgressData(WireModel):
    progress: float = Field(ge=0.0, le=100.0)
    partial_answer: Optional[str] = None


class GapFoundData(WireModel):
    gap: ResearchGap
    will_start_round2: bool


class Round2StartData(WireModel):
    gaps: list[ResearchGap]
    new_queries: list[str]


class ResearchCompleteData(WireModel):
    answer: str
    citations: list[Citation]
    total_time: int
    metrics: SessionMetrics


class ResearchErrorData(WireModel):
    message: str
    code: str
    recoverable: bool


# --- Envelopes ---


class _BaseEvent(WireModel):
    session_id: str
    timestamp: int  # epoch ms

    def to_json(self) -> str:
        return json.dumps(self.to_wire())

    def to_sse(self) -> str:
        return f"data: {self.to_json()}\n\n"


class ResearchStartEvent(_BaseEvent):
    type: Literal["research_start"] = "research_start"
    data: ResearchStartData


class ClassifyEvent(_BaseEvent):
    type: Literal["classify"] = "classify"
    data: ClassifyData


class PlanEvent(_BaseEvent):
    type: Literal["plan"] = "plan"
    data: PlanData


class SearchStartEvent(_BaseEvent):
    type: Literal["search_start"] = "search_start"
    data: SearchStartData


class SearchProgressEvent(_BaseEvent):
    type: Literal["search_progress"] = "search_progress"
    data: SearchProgressData


class SearchCompleteEvent(_BaseEvent):
    type: Literal["search_complete"] = "search_complete"
    data: SearchCompleteData


class SynthesizeStartEvent(_BaseEvent):
    type: Literal["synthesize_start"] = "synthesize_start"
    data: SynthesizeStartData


class SynthesizeProgressEvent(_BaseEvent):
    type: Literal["synthesize_progress"] = "synthesize_progress"
    data: SynthesizeProgressData


class GapFoundEvent(_BaseEvent):
    type: Literal["gap_found"] = "gap_found"
    data: GapFoundData


class Round2StartEvent(_BaseEvent):
    type: Literal["round2_start"] = "round2_start"
    data: Round2StartData


class ResearchCompleteEvent(_BaseEvent):
    type: Literal["research_complete"] = "research_complete"
    data: ResearchCompleteData


class ResearchErrorEvent(_BaseEvent):
    type: Literal["error"] = "error"
    data: ResearchErrorData


ResearchStreamEvent = Annotated[
    Union[
        ResearchStartEvent,
        ClassifyEvent,
        PlanEvent,
        SearchStartEvent,
        SearchProgressEvent,
        SearchCompleteEvent,
        SynthesizeStartEvent,
        SynthesizeProgressEvent,
        GapFoundEvent,
        Round2StartEvent,
        ResearchCompleteEvent,
        ResearchErrorEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[ResearchStreamEvent] = TypeAdapter(ResearchStreamEvent)


def parse_event(raw: str | bytes | dict) -> ResearchStreamEvent:
    """Validate a wire event (JSON text or decoded dict) into its typed variant."""
    if isinstance(raw, dict):
        return _event_adapter.validate_python(raw)
    return _event_adapter.validate_json(raw)
