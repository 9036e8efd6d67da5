from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from research_engine.errors import ErrorCode
from research_engine.models.events import ResearchCompleteEvent, parse_event
from research_engine.models.research import (
    Citation,
    ClassificationResult,
    QueryComplexity,
    ResearchGap,
    ResearchNote,
    ResearchPlan,
    SearchModel,
    SessionMetrics,
    SubQuestion,
)
from research_engine.services import streaming

SID = "research-1-abcdef0"


def _citation() -> Citation:
    return Citation(id="src-1", url="https://example.com/a", title="A", domain="example.com")


def _note() -> ResearchNote:
    return ResearchNote(
        id="note-1", session_id=SID, sub_question_id="sq-1", content="text [1]", citations=[_citation()]
    )


def _gap() -> ResearchGap:
    return ResearchGap(id="gap-1", session_id=SID, round=1, description="d", suggested_query="q")


def _all_events():
    plan = ResearchPlan(
        id="plan-1",
        session_id=SID,
        original_query="q",
        sub_questions=[SubQuestion(id="sq-1", question="question one", reasoning="r")],
        total_estimated_time=20,
    )
    classification = ClassificationResult(
        complexity=QueryComplexity.MODERATE,
        confidence=0.8,
        reasoning="r",
        estimated_time=30,
        suggested_model=SearchModel.SONAR,
    )
    return [
        streaming.research_start(SID, "q", 30),
        streaming.classify(SID, classification),
        streaming.plan(SID, plan),
        streaming.search_start(SID, "sq-1", "question one"),
        streaming.search_progress(SID, "sq-1", 3),
        streaming.search_complete(SID, "sq-1", _note()),
        streaming.synthesize_start(SID, [_note()], round=2),
        streaming.synthesize_progress(SID, 45, "partial"),
        streaming.gap_found(SID, _gap(), True),
        streaming.round2_start(SID, [_gap()], ["q"]),
        streaming.research_complete(SID, "answer [1]", [_citation()], 1234, SessionMetrics(session_id=SID)),
        streaming.error(SID, ErrorCode.TIMEOUT),
    ]


def test_every_event_type_round_trips_through_json():
    events = _all_events()

    assert len({event.type for event in events}) == 12
    for event in events:
        assert parse_event(event.to_json()) == event


def test_wire_format_uses_camel_case_envelope():
    event = streaming.search_complete(SID, "sq-1", _note())
    wire = json.loads(event.to_json())

    assert set(wire) == {"type", "sessionId", "timestamp", "data"}
    assert wire["data"]["subQuestionId"] == "sq-1"
    assert wire["data"]["citationsCount"] == 1
    assert wire["data"]["note"]["citations"][0]["url"] == "https://example.com/a"


def test_sse_frame():
    frame = streaming.search_start(SID, "sq-1", "q").to_sse()
    assert frame.startswith("data: {")
    assert frame.endswith("\n\n")


def test_error_event_payload():
    event = streaming.error(SID, ErrorCode.UNKNOWN)

    assert event.type == "error"
    assert event.data.code == "UNKNOWN"
    assert event.data.recoverable is False
    assert streaming.error(SID, ErrorCode.RATE_LIMITED, "slow down").data.message == "slow down"


def test_parse_event_rejects_unknown_type_and_missing_fields():
    with pytest.raises(ValidationError):
        parse_event({"type": "mystery", "sessionId": SID, "timestamp": 1, "data": {}})
    with pytest.raises(ValidationError):
        parse_event({"type": "search_start", "sessionId": SID, "timestamp": 1, "data": {}})


def test_parse_event_returns_typed_variant():
    raw = streaming.research_complete(SID, "a", [], 10, SessionMetrics(session_id=SID)).to_json()
    assert isinstance(parse_event(raw), ResearchCompleteEvent)


@pytest.mark.asyncio
async def test_queue_controller_yields_until_closed():
    controller = streaming.QueueStreamController()
    first = streaming.search_start(SID, "sq-1", "q")
    second = streaming.error(SID, ErrorCode.UNKNOWN)

    controller.enqueue(first)
    controller.enqueue(second)
    controller.close()
    controller.close()

    assert [e async for e in controller.events()] == [first, second]
    with pytest.raises(RuntimeError):
        controller.enqueue(first)
