from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for records that travel over the event stream (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class QueryComplexity(StrEnum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class SearchModel(StrEnum):
    SONAR = "sonar"
    SONAR_PRO = "sonar-pro"


class Priority(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_WEIGHTS: dict[Priority, int] = {
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


class SubQuestionStatus(StrEnum):
    PENDING = "pending"
    SEARCHING = "searching"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionStatus(StrEnum):
    # Gap analysis runs inside the synthesis call, so it has no status of its own.
    INITIALIZING = "initializing"
    CLASSIFYING = "classifying"
    PLANNING = "planning"
    SEARCHING = "searching"
    SYNTHESIZING = "synthesizing"
    ROUND2_SEARCHING = "round2_searching"
    ROUND2_SYNTHESIZING = "round2_synthesizing"
    COMPLETED = "completed"
    FAILED = "failed"


class ClassificationResult(WireModel):
    complexity: QueryComplexity
    confidence: float
    reasoning: str
    estimated_time: int  # seconds
    suggested_model: SearchModel


class SubQuestion(WireModel):
    id: str
    question: str
    reasoning: str
    priority: Priority = Priority.MEDIUM
    depends_on: list[str] = Field(default_factory=list)
    status: SubQuestionStatus = SubQuestionStatus.PENDING


class ResearchPlan(WireModel):
    id: str
    session_id: str
    original_query: str
    sub_questions: list[SubQuestion]
    created_at: datetime = Field(default_factory=utc_now)
    total_estimated_time: int = 0  # seconds, informational


class Citation(WireModel):
    id: str
    url: str
    title: str
    domain: str
    snippet: Optional[str] = None
    favicon: Optional[str] = None
    relevance_score: Optional[float] = None


class ResearchNote(WireModel):
    id: str
    session_id: str
    sub_question_id: str
    content: str
    citations: list[Citation] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utc_now)


class ResearchGap(WireModel):
    id: str
    session_id: str
    round: int
    description: str
    suggested_query: str
    priority: Priority = Priority.MEDIUM
    resolved: bool = False


class ResearchSession(WireModel):
    id: str
    query: str
    status: SessionStatus = SessionStatus.INITIALIZING
    complexity: Optional[QueryComplexity] = None
    plan: Optional[ResearchPlan] = None
    notes: list[ResearchNote] = Field(default_factory=list)
    gaps: list[ResearchGap] = Field(default_factory=list)
    current_round: int = 1
    final_answer: Optional[str] = None
    citations: list[Citation] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class SessionMetrics(WireModel):
    session_id: str
    total_duration_ms: int = 0
    classification_duration_ms: int = 0
    planning_duration_ms: int = 0
    search_duration_ms: int = 0
    synthesis_duration_ms: int = 0
    round2_duration_ms: Optional[int] = None
    total_queries: int = 0
    total_citations: int = 0
    gaps_found: int = 0
    gaps_resolved: int = 0
    parallelization_efficiency: float = 0.0
    estimated_cost_usd: float = 0.0


class ResearchOptions(WireModel):
    use_llm_classification: bool = False
    force_complexity: Optional[QueryComplexity] = None
    skip_round2: bool = False
    max_cost: Optional[float] = Field(default=None, ge=0.0)


class SynthesisInput(WireModel):
    query: str
    notes: list[ResearchNote]
    previous_answer: Optional[str] = None
    gaps: list[ResearchGap] = Field(default_factory=list)


class SynthesisOutput(WireModel):
    answer: str
    citations: list[Citation]
    gaps: list[ResearchGap]
    confidence: float
    # None when the synthesizer did not report which earlier gaps it closed.
    resolved_gap_ids: Optional[list[str]] = None
