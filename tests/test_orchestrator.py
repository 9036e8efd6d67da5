from __future__ import annotations

import json
import re
from unittest.mock import AsyncMock

import pytest

from research_engine.agents import orchestrator as orchestrator_module
from research_engine.agents.orchestrator import ResearchOrchestrator
from research_engine.models.research import (
    QueryComplexity,
    ResearchOptions,
    SessionStatus,
    SubQuestionStatus,
)
from research_engine.tools.search_provider import SearchResponse, SearchSource

EIFFEL_QUERY = "What year was the Eiffel Tower built?"
TOPIC_QUERY = "Analyze topic alpha"
Q_HISTORY = "What is the history of topic alpha?"
Q_USAGE = "How is topic alpha used today?"
Q_RISKS = "What are the risks of topic alpha?"
GAP_QUERY = "topic alpha cost data"

COMPLEX = ResearchOptions(force_complexity=QueryComplexity.COMPLEX)


def _plan_reply(*questions: dict) -> str:
    return json.dumps({"subQuestions": list(questions)})


INDEPENDENT_PLAN = _plan_reply({"question": Q_HISTORY}, {"question": Q_USAGE}, {"question": Q_RISKS})
CHAINED_PLAN = _plan_reply(
    {"question": Q_HISTORY, "priority": "high"},
    {"question": Q_USAGE, "priority": "medium", "dependsOn": [1]},
)


def _synthesis(answer: str, gaps: list[dict] | None = None, confidence: float = 0.9, **extra) -> str:
    return f"{answer}\n```json\n{json.dumps({'gaps': gaps or [], 'confidence': confidence, **extra})}\n```"


HIGH_GAP = {"description": "No cost data", "suggestedQuery": GAP_QUERY, "priority": "high"}
LOW_GAP = {"description": "Minor detail", "suggestedQuery": "minor detail", "priority": "low"}
ROUND1_ANSWER = "Round one answer citing [1] and [3]."


async def _run(orchestrator: ResearchOrchestrator, query: str, options: ResearchOptions | None = None):
    return [event async for event in orchestrator.research(query, options)]


def _types(events) -> list[str]:
    return [event.type for event in events]


class RecordingController:
    def __init__(self):
        self.events = []
        self.close_calls = 0

    def enqueue(self, event):
        self.events.append(event)

    def close(self):
        self.close_calls += 1


def test_session_id_format():
    assert re.fullmatch(r"research-\d+-[0-9a-f]{7}", ResearchOrchestrator().session_id)


@pytest.mark.asyncio
async def test_simple_query_takes_fast_path(fake_client_factory, fake_search_factory):
    client = fake_client_factory()
    search = fake_search_factory(
        responses={
            EIFFEL_QUERY: SearchResponse(
                content="The Eiffel Tower was built between 1887 and 1889 [1].",
                sources=[SearchSource(url="https://www.toureiffel.paris/en/history", title="History")],
                provider="fake",
            )
        }
    )
    orchestrator = ResearchOrchestrator(client=client, search=search, session_id="research-test")

    events = await _run(orchestrator, EIFFEL_QUERY)

    assert search.queries == [EIFFEL_QUERY]
    assert client.messages.create_calls == []
    assert client.messages.stream_calls == []
    assert orchestrator.status_history == [
        SessionStatus.INITIALIZING,
        SessionStatus.CLASSIFYING,
        SessionStatus.COMPLETED,
    ]
    assert orchestrator.session.final_answer == "The Eiffel Tower was built between 1887 and 1889 [1]."
    assert [c.url for c in orchestrator.session.citations] == ["https://www.toureiffel.paris/en/history"]
    assert _types(events) == [
        "research_start",
        "classify",
        "search_start",
        "search_progress",
        "search_complete",
        "research_complete",
    ]
    assert all(event.session_id == "research-test" for event in events)


@pytest.mark.asyncio
async def test_repair_round_merges_citations(fake_client_factory, fake_search_factory):
    duplicate_url = "https://example.com/what-is-the-history-of-topic-alpha/a"
    client = fake_client_factory(
        create_replies=[CHAINED_PLAN],
        stream_replies=[
            _synthesis(ROUND1_ANSWER, [HIGH_GAP, LOW_GAP], confidence=0.5),
            _synthesis("Improved answer [1][2][3][4][5]."),
        ],
    )
    search = fake_search_factory(
        responses={
            GAP_QUERY: SearchResponse(
                content="Costs fell by 40% [1] according to [2].",
                sources=[
                    SearchSource(url="https://costs.example.net/report", title="Cost report"),
                    SearchSource(url=duplicate_url),
                ],
                provider="fake",
            )
        }
    )
    orchestrator = ResearchOrchestrator(client=client, search=search, session_id="research-test")

    events = await _run(orchestrator, TOPIC_QUERY, COMPLEX)

    types = _types(events)
    assert types.count("round2_start") == 1
    assert types[-1] == "research_complete"
    round2 = next(e for e in events if e.type == "round2_start")
    assert round2.data.new_queries == [GAP_QUERY]

    # Dependency order: history first, usage second, then the gap follow-up.
    assert search.queries == [Q_HISTORY, Q_USAGE, GAP_QUERY]
    assert search.calls[2]["context"] == ROUND1_ANSWER

    assert SessionStatus.ROUND2_SEARCHING in orchestrator.status_history
    assert SessionStatus.ROUND2_SYNTHESIZING in orchestrator.status_history
    assert orchestrator.status_history[-1] == SessionStatus.COMPLETED

    citations = orchestrator.session.citations
    urls = [c.url for c in citations]
    assert len(urls) == len(set(urls)) == 5
    assert "https://costs.example.net/report" in urls
    assert [c.id for c in citations] == [f"citation-{i}" for i in range(1, 6)]

    gap_events = [e for e in events if e.type == "gap_found"]
    assert len(gap_events) == 2
    assert all(e.data.will_start_round2 for e in gap_events)
    resolved = {g.id: g.resolved for g in orchestrator.session.gaps}
    assert resolved == {"gap-research-test-r1-1": True, "gap-research-test-r1-2": False}

    complete = events[-1]
    assert complete.data.metrics.total_queries == 3
    assert complete.data.metrics.gaps_found == 2
    assert complete.data.metrics.gaps_resolved == 1
    assert complete.data.metrics.round2_duration_ms is not None
    assert orchestrator.round2_sub_questions[0].id == "sq-r2-1"
    assert "No cost data" in orchestrator.round2_sub_questions[0].reasoning


@pytest.mark.asyncio
async def test_round2_only_flips_reported_gaps(fake_client_factory, fake_search_factory):
    second_gap = {**HIGH_GAP, "description": "No adoption data", "suggestedQuery": "topic alpha adoption"}
    client = fake_client_factory(
        create_replies=[INDEPENDENT_PLAN],
        stream_replies=[
            _synthesis(ROUND1_ANSWER, [HIGH_GAP, second_gap], confidence=0.4),
            _synthesis("Better [1].", resolvedGaps=["gap-research-test-r1-2"]),
        ],
    )
    orchestrator = ResearchOrchestrator(
        client=client, search=fake_search_factory(), session_id="research-test"
    )

    await _run(orchestrator, TOPIC_QUERY, COMPLEX)

    resolved = {g.id: g.resolved for g in orchestrator.session.gaps}
    assert resolved == {"gap-research-test-r1-1": False, "gap-research-test-r1-2": True}


@pytest.mark.asyncio
async def test_partial_search_failure_still_completes(fake_client_factory, fake_search_factory):
    client = fake_client_factory(
        create_replies=[INDEPENDENT_PLAN],
        stream_replies=[_synthesis("Answer [1] [2].")],
    )
    search = fake_search_factory(fail_on=lambda q: q == Q_USAGE)
    orchestrator = ResearchOrchestrator(client=client, search=search)

    events = await _run(orchestrator, TOPIC_QUERY, COMPLEX)

    assert events[-1].type == "research_complete"
    assert len(orchestrator.session.notes) == 2
    statuses = {q.id: q.status for q in orchestrator.plan.sub_questions}
    assert statuses == {
        "sq-1": SubQuestionStatus.COMPLETED,
        "sq-2": SubQuestionStatus.FAILED,
        "sq-3": SubQuestionStatus.COMPLETED,
    }
    synth_start = next(e for e in events if e.type == "synthesize_start")
    assert synth_start.data.notes_count == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("max_cost", [0.03, 0.0])
async def test_budget_truncates_batch_but_never_to_zero(fake_client_factory, fake_search_factory, max_cost):
    client = fake_client_factory(
        create_replies=[INDEPENDENT_PLAN],
        stream_replies=[_synthesis("Answer [1].")],
    )
    search = fake_search_factory()
    orchestrator = ResearchOrchestrator(client=client, search=search)

    events = await _run(
        orchestrator,
        TOPIC_QUERY,
        ResearchOptions(force_complexity=QueryComplexity.COMPLEX, max_cost=max_cost),
    )

    assert events[-1].type == "research_complete"
    assert search.queries == [Q_HISTORY]
    statuses = [q.status for q in orchestrator.plan.sub_questions]
    assert statuses == [SubQuestionStatus.COMPLETED, SubQuestionStatus.FAILED, SubQuestionStatus.FAILED]


@pytest.mark.asyncio
async def test_budget_still_runs_one_search_per_dependent_batch(fake_client_factory, fake_search_factory):
    client = fake_client_factory(
        create_replies=[CHAINED_PLAN],
        stream_replies=[_synthesis("Answer [1].")],
    )
    search = fake_search_factory()
    orchestrator = ResearchOrchestrator(client=client, search=search)

    events = await _run(
        orchestrator,
        TOPIC_QUERY,
        ResearchOptions(force_complexity=QueryComplexity.COMPLEX, max_cost=0.02),
    )

    assert events[-1].type == "research_complete"
    assert search.queries == [Q_HISTORY, Q_USAGE]
    statuses = [q.status for q in orchestrator.plan.sub_questions]
    assert statuses == [SubQuestionStatus.COMPLETED, SubQuestionStatus.COMPLETED]


@pytest.mark.asyncio
async def test_fast_path_keeps_citations_for_repeated_sources(fake_search_factory):
    first, second = "https://a.example.com/x", "https://b.example.com/y"
    search = fake_search_factory(
        responses={
            EIFFEL_QUERY: SearchResponse(
                content="Built 1887 [1]. Opened 1889 [3].",
                sources=[SearchSource(url=first), SearchSource(url=first), SearchSource(url=second)],
                provider="fake",
            )
        }
    )
    orchestrator = ResearchOrchestrator(search=search)

    await _run(orchestrator, EIFFEL_QUERY)

    assert orchestrator.session.final_answer == "Built 1887 [1]. Opened 1889 [2]."
    assert [c.url for c in orchestrator.session.citations] == [first, second]


@pytest.mark.asyncio
async def test_classify_event_carries_cost_estimate(fake_search_factory):
    events = await _run(ResearchOrchestrator(search=fake_search_factory()), EIFFEL_QUERY)

    classify = events[1]
    assert classify.type == "classify"
    assert classify.data.estimated_cost_usd > 0
    assert classify.to_wire()["data"]["estimatedCostUsd"] == classify.data.estimated_cost_usd


@pytest.mark.asyncio
async def test_total_round1_failure_fails_session(fake_client_factory, fake_search_factory):
    client = fake_client_factory(create_replies=[INDEPENDENT_PLAN])
    search = fake_search_factory(fail_on=lambda q: True)
    orchestrator = ResearchOrchestrator(client=client, search=search)

    events = await _run(orchestrator, TOPIC_QUERY, COMPLEX)

    assert orchestrator.session.status == SessionStatus.FAILED
    assert events[-1].type == "error"
    assert events[-1].data.code == "SEARCH_FAILED"
    assert events[-1].data.recoverable is True
    assert "research_complete" not in _types(events)
    assert client.messages.stream_calls == []


@pytest.mark.asyncio
async def test_fast_path_search_failure_fails_session(fake_search_factory):
    search = fake_search_factory(fail_on=lambda q: True)
    orchestrator = ResearchOrchestrator(search=search)

    events = await _run(orchestrator, EIFFEL_QUERY)

    assert events[-1].data.code == "SEARCH_FAILED"
    assert orchestrator.status_history[-1] == SessionStatus.FAILED


@pytest.mark.asyncio
async def test_round2_total_failure_keeps_round1_answer(fake_client_factory, fake_search_factory):
    client = fake_client_factory(
        create_replies=[INDEPENDENT_PLAN],
        stream_replies=[_synthesis(ROUND1_ANSWER, [HIGH_GAP], confidence=0.5)],
    )
    search = fake_search_factory(fail_on=lambda q: q == GAP_QUERY)
    orchestrator = ResearchOrchestrator(client=client, search=search)

    events = await _run(orchestrator, TOPIC_QUERY, COMPLEX)

    assert events[-1].type == "research_complete"
    assert orchestrator.session.final_answer == "Round one answer citing [1] and [2]."
    assert len(orchestrator.session.citations) == 2
    assert SessionStatus.ROUND2_SEARCHING in orchestrator.status_history
    assert SessionStatus.ROUND2_SYNTHESIZING not in orchestrator.status_history
    assert len(client.messages.stream_calls) == 1
    assert not orchestrator.session.gaps[0].resolved


@pytest.mark.asyncio
async def test_skip_round2_option(fake_client_factory, fake_search_factory):
    client = fake_client_factory(
        create_replies=[INDEPENDENT_PLAN],
        stream_replies=[_synthesis(ROUND1_ANSWER, [HIGH_GAP], confidence=0.3)],
    )
    search = fake_search_factory()
    orchestrator = ResearchOrchestrator(client=client, search=search)

    events = await _run(
        orchestrator,
        TOPIC_QUERY,
        ResearchOptions(force_complexity=QueryComplexity.COMPLEX, skip_round2=True),
    )

    assert "round2_start" not in _types(events)
    gap_event = next(e for e in events if e.type == "gap_found")
    assert gap_event.data.will_start_round2 is False
    assert GAP_QUERY not in search.queries


@pytest.mark.asyncio
async def test_classifier_crash_is_reported_as_unknown(monkeypatch):
    monkeypatch.setattr(
        orchestrator_module, "classify_query", AsyncMock(side_effect=RuntimeError("boom"))
    )
    controller = RecordingController()
    orchestrator = ResearchOrchestrator()

    await orchestrator.execute_research("anything", controller)

    assert controller.close_calls == 1
    assert [e.type for e in controller.events] == ["research_start", "error"]
    error = controller.events[-1].data
    assert error.code == "UNKNOWN"
    assert error.recoverable is False
    assert orchestrator.session.error == "boom"


@pytest.mark.asyncio
async def test_synthesis_failure_is_terminal(fake_client_factory, fake_search_factory):
    client = fake_client_factory(
        create_replies=[INDEPENDENT_PLAN],
        stream_replies=[RuntimeError("provider down")],
    )
    controller = RecordingController()
    orchestrator = ResearchOrchestrator(client=client, search=fake_search_factory())

    await orchestrator.execute_research(TOPIC_QUERY, controller, COMPLEX)

    assert controller.close_calls == 1
    assert controller.events[-1].type == "error"
    assert controller.events[-1].data.code == "SYNTHESIS_FAILED"


@pytest.mark.asyncio
async def test_controller_closed_once_on_success(fake_search_factory):
    controller = RecordingController()
    orchestrator = ResearchOrchestrator(search=fake_search_factory())

    await orchestrator.execute_research(EIFFEL_QUERY, controller)

    assert controller.close_calls == 1
    terminal = [e for e in controller.events if e.type in ("research_complete", "error")]
    assert len(terminal) == 1
