from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncIterator
from uuid import uuid4

from research_engine.config import settings
from research_engine.errors import ErrorCode, ResearchError, error_code_for, error_message
from research_engine.models.events import ResearchStreamEvent
from research_engine.models.research import (
    ClassificationResult,
    Citation,
    ResearchGap,
    ResearchNote,
    ResearchOptions,
    ResearchPlan,
    ResearchSession,
    SearchModel,
    SessionMetrics,
    SessionStatus,
    SubQuestion,
    SubQuestionStatus,
    SynthesisInput,
    SynthesisOutput,
    utc_now,
)
from research_engine.services import logger as log_service
from research_engine.services import streaming
from research_engine.services.citations import merge_citations, renumber_citations
from research_engine.services.classifier import classify_query, should_use_fast_path
from research_engine.services.planner import (
    create_research_plan,
    get_parallel_batch,
    update_sub_question_status,
)
from research_engine.services.pricing import (
    estimate_batch_cost,
    estimate_session_cost,
    estimate_synthesis_cost,
    max_affordable_batch,
)
from research_engine.services.search_executor import (
    BatchSearchResult,
    SearchCallbacks,
    execute_parallel_searches,
)
from research_engine.services.streaming import QueueStreamController, StreamController
from research_engine.services.synthesizer import (
    get_round2_queries,
    select_round2_gaps,
    should_proceed_to_round2,
    synthesize_answer,
)
from research_engine.tools.search_provider import SearchFunction


# Sent before classification; `classify` carries the real estimate.
INITIAL_ESTIMATED_TIME_S = 30


def generate_session_id() -> str:
    return f"research-{int(time.time() * 1000)}-{uuid4().hex[:7]}"


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class ResearchOrchestrator:
    """Runs one research session and streams its progress.

    Flow:
      1. Classify the query (fast path for confidently simple queries)
      2. Plan dependency-ordered sub-questions
      3. Search ready batches in parallel until the plan is exhausted
      4. Synthesize an answer and analyze its gaps
      5. Optionally search the important gaps and re-synthesize
      6. Renumber citations and emit completion

    Every phase reports through the stream controller; the controller is closed
    exactly once whatever happens.
    """

    def __init__(
        self,
        client: Any = None,
        search: SearchFunction | None = None,
        session_id: str | None = None,
    ):
        self.client = client
        self.search = search
        self.session_id = session_id or generate_session_id()
        self.session: ResearchSession | None = None
        self.plan: ResearchPlan | None = None
        self.round2_sub_questions: list[SubQuestion] = []
        self.metrics = SessionMetrics(session_id=self.session_id)
        self.status_history: list[SessionStatus] = []
        self._spent = 0.0
        self._efficiencies: list[float] = []

    # -- session bookkeeping -------------------------------------------------

    def _update_session(self, **changes: Any) -> None:
        assert self.session is not None
        self.session = self.session.model_copy(update=changes)

    def _set_status(self, status: SessionStatus) -> None:
        self._update_session(status=status)
        self.status_history.append(status)
        log_service.log_research_step(self.session_id, "status", status.value)

    def _set_plan(self, plan: ResearchPlan) -> None:
        self.plan = plan
        self._update_session(plan=plan)

    def _mark(self, ids: list[str], status: SubQuestionStatus) -> None:
        plan = self.plan
        assert plan is not None
        for sub_question_id in ids:
            plan = update_sub_question_status(plan, sub_question_id, status)
        self._set_plan(plan)

    async def _emit(self, controller: StreamController, event: ResearchStreamEvent) -> None:
        controller.enqueue(event)
        if settings.stream_delay_ms > 0:
            await asyncio.sleep(settings.stream_delay_ms / 1000)

    def _search_callbacks(self, controller: StreamController) -> SearchCallbacks:
        session_id = self.session_id

        async def on_start(sub_question_id: str, question: str) -> None:
            await self._emit(controller, streaming.search_start(session_id, sub_question_id, question))

        async def on_progress(sub_question_id: str, sources_found: int) -> None:
            await self._emit(
                controller, streaming.search_progress(session_id, sub_question_id, sources_found)
            )

        async def on_complete(sub_question_id: str, note: ResearchNote) -> None:
            await self._emit(controller, streaming.search_complete(session_id, sub_question_id, note))

        return SearchCallbacks(
            on_search_start=on_start,
            on_search_progress=on_progress,
            on_search_complete=on_complete,
        )

    def _synthesis_progress(self, controller: StreamController):
        async def on_progress(progress: int, partial_answer: str | None) -> None:
            await self._emit(
                controller,
                streaming.synthesize_progress(self.session_id, progress, partial_answer),
            )

        return on_progress

    async def _run_searches(
        self,
        controller: StreamController,
        sub_questions: list[SubQuestion],
        model: SearchModel,
        context: str | None = None,
    ) -> BatchSearchResult:
        self._spent += estimate_batch_cost(len(sub_questions), model)
        self.metrics.total_queries += len(sub_questions)
        result = await execute_parallel_searches(
            sub_questions,
            self.session_id,
            model,
            self._search_callbacks(controller),
            context,
            search=self.search,
        )
        self._efficiencies.append(result.parallelization_efficiency)
        return result

    # -- entry points --------------------------------------------------------

    async def execute_research(
        self,
        query: str,
        controller: StreamController,
        options: ResearchOptions | None = None,
    ) -> None:
        """Run the whole pipeline, communicating only through `controller`."""
        options = options or ResearchOptions()
        max_cost = options.max_cost if options.max_cost is not None else settings.research_max_total_cost
        t0 = time.monotonic()
        self.session = ResearchSession(id=self.session_id, query=query)
        self.status_history = [SessionStatus.INITIALIZING]
        log_service.log_research_step(self.session_id, "research", "started", {"query": query})

        try:
            await self._emit(
                controller,
                streaming.research_start(self.session_id, query, INITIAL_ESTIMATED_TIME_S),
            )

            self._set_status(SessionStatus.CLASSIFYING)
            t_classify = time.monotonic()
            classification = await classify_query(
                query,
                use_llm=options.use_llm_classification,
                force_complexity=options.force_complexity,
                client=self.client,
            )
            self.metrics.classification_duration_ms = _elapsed_ms(t_classify)
            self._update_session(complexity=classification.complexity)

            estimate = estimate_session_cost(
                classification.complexity,
                use_pro_model=classification.suggested_model == SearchModel.SONAR_PRO,
            )
            await self._emit(controller, streaming.classify(self.session_id, classification, estimate))

            if should_use_fast_path(classification):
                answer, citations = await self._run_fast_path(controller, query, classification)
            else:
                answer, citations = await self._run_full_pipeline(
                    controller, query, classification, options, max_cost
                )

            await self._complete(controller, answer, citations, t0)
        except Exception as e:
            code = error_code_for(e)
            log_service.log_event(
                event_type="research_failed",
                message=f"Research session failed with {code.value}",
                session_id=self.session_id,
                error=str(e),
            )
            self._update_session(error=str(e), completed_at=utc_now())
            self._set_status(SessionStatus.FAILED)
            message = error_message(code) if code == ErrorCode.UNKNOWN else str(e)
            controller.enqueue(streaming.error(self.session_id, code, message))
        finally:
            controller.close()

    async def research(
        self,
        query: str,
        options: ResearchOptions | None = None,
    ) -> AsyncIterator[ResearchStreamEvent]:
        """Yield the session's events as the pipeline produces them."""
        controller = QueueStreamController()
        task = asyncio.create_task(self.execute_research(query, controller, options))
        try:
            async for event in controller.events():
                yield event
        finally:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # -- phases --------------------------------------------------------------

    async def _run_fast_path(
        self,
        controller: StreamController,
        query: str,
        classification: ClassificationResult,
    ) -> tuple[str, list[Citation]]:
        sub_question = SubQuestion(
            id="sq-1",
            question=query,
            reasoning="Direct search for a simple query",
        )
        t_search = time.monotonic()
        result = await self._run_searches(controller, [sub_question], classification.suggested_model)
        self.metrics.search_duration_ms = _elapsed_ms(t_search)
        if not result.notes:
            raise ResearchError(ErrorCode.SEARCH_FAILED, "Search returned no results")

        note = result.notes[0]
        self._update_session(notes=[note])
        return renumber_citations(note.content, note.citations)

    async def _run_full_pipeline(
        self,
        controller: StreamController,
        query: str,
        classification: ClassificationResult,
        options: ResearchOptions,
        max_cost: float,
    ) -> tuple[str, list[Citation]]:
        model = classification.suggested_model

        self._set_status(SessionStatus.PLANNING)
        t_plan = time.monotonic()
        plan = await create_research_plan(
            query, self.session_id, classification.complexity, client=self.client
        )
        self.metrics.planning_duration_ms = _elapsed_ms(t_plan)
        self._set_plan(plan)
        await self._emit(controller, streaming.plan(self.session_id, plan))

        self._set_status(SessionStatus.SEARCHING)
        t_search = time.monotonic()
        notes = await self._search_plan(controller, model, max_cost)
        self.metrics.search_duration_ms = _elapsed_ms(t_search)
        if not notes:
            raise ResearchError(ErrorCode.SEARCH_FAILED, "All searches failed")
        self._update_session(notes=notes)

        self._set_status(SessionStatus.SYNTHESIZING)
        t_synth = time.monotonic()
        await self._emit(controller, streaming.synthesize_start(self.session_id, notes, round=1))
        first = await synthesize_answer(
            SynthesisInput(query=query, notes=notes),
            self.session_id,
            1,
            self._synthesis_progress(controller),
            client=self.client,
        )
        self._spent += estimate_synthesis_cost(len(notes))
        self.metrics.synthesis_duration_ms = _elapsed_ms(t_synth)
        self._update_session(gaps=first.gaps)
        self.metrics.gaps_found = len(first.gaps)

        selected: list[ResearchGap] = []
        queries: list[str] = []
        if (
            not options.skip_round2
            and self.session.current_round < settings.research_max_rounds
            and should_proceed_to_round2(first)
        ):
            selected = select_round2_gaps(first.gaps)
            queries = get_round2_queries(first.gaps)
            affordable = max_affordable_batch(len(selected), model, self._spent, max_cost, minimum=0)
            if affordable < len(selected):
                log_service.log_event(
                    event_type="budget_truncated",
                    message=f"Round 2 limited to {affordable} of {len(selected)} queries",
                    session_id=self.session_id,
                    spent=round(self._spent, 4),
                    max_cost=max_cost,
                )
            selected, queries = selected[:affordable], queries[:affordable]

        will_start_round2 = bool(selected)
        for gap in first.gaps:
            await self._emit(controller, streaming.gap_found(self.session_id, gap, will_start_round2))

        if not will_start_round2:
            return renumber_citations(first.answer, first.citations)

        answer, citations = await self._run_round2(
            controller, query, notes, first, selected, queries, model
        )
        return renumber_citations(answer, citations)

    async def _search_plan(
        self,
        controller: StreamController,
        model: SearchModel,
        max_cost: float,
    ) -> list[ResearchNote]:
        """Search ready batches until none is left or the budget runs out."""
        notes: list[ResearchNote] = []
        completed_ids: list[str] = []

        while True:
            assert self.plan is not None
            batch = get_parallel_batch(self.plan.sub_questions, completed_ids)
            if not batch:
                break

            # Every batch runs at least one search; the cut remainder is not retried.
            affordable = max_affordable_batch(len(batch), model, self._spent, max_cost)
            if affordable < len(batch):
                log_service.log_event(
                    event_type="budget_truncated",
                    message=f"Batch limited to {affordable} of {len(batch)} sub-questions",
                    session_id=self.session_id,
                    spent=round(self._spent, 4),
                    max_cost=max_cost,
                )
                self._mark([q.id for q in batch[affordable:]], SubQuestionStatus.FAILED)
                batch = batch[:affordable]

            self._mark([q.id for q in batch], SubQuestionStatus.SEARCHING)
            result = await self._run_searches(controller, batch, model)
            notes.extend(result.notes)
            completed = [note.sub_question_id for note in result.notes]
            completed_ids.extend(completed)
            self._mark(completed, SubQuestionStatus.COMPLETED)
            self._mark(result.failed_questions, SubQuestionStatus.FAILED)

        # Dependents of failed questions, or questions the budget never reached.
        assert self.plan is not None
        leftover = [q.id for q in self.plan.sub_questions if q.status == SubQuestionStatus.PENDING]
        if leftover:
            self._mark(leftover, SubQuestionStatus.FAILED)
        return notes

    async def _run_round2(
        self,
        controller: StreamController,
        query: str,
        notes: list[ResearchNote],
        first: SynthesisOutput,
        selected: list[ResearchGap],
        queries: list[str],
        model: SearchModel,
    ) -> tuple[str, list[Citation]]:
        t_round2 = time.monotonic()
        self._update_session(current_round=2)
        self._set_status(SessionStatus.ROUND2_SEARCHING)
        await self._emit(controller, streaming.round2_start(self.session_id, selected, queries))

        sub_questions = [
            SubQuestion(
                id=f"sq-r2-{index}",
                question=follow_up,
                reasoning=f"Addresses gap: {gap.description}",
                priority=gap.priority,
            )
            for index, (gap, follow_up) in enumerate(zip(selected, queries), start=1)
        ]
        result = await self._run_searches(controller, sub_questions, model, context=first.answer)
        succeeded = {note.sub_question_id for note in result.notes}
        self.round2_sub_questions = [
            q.model_copy(
                update={
                    "status": SubQuestionStatus.COMPLETED if q.id in succeeded else SubQuestionStatus.FAILED
                }
            )
            for q in sub_questions
        ]

        if not result.notes:
            log_service.log_event(
                event_type="round2_failed",
                message="Round 2 produced no notes; keeping the round 1 answer",
                session_id=self.session_id,
            )
            self.metrics.round2_duration_ms = _elapsed_ms(t_round2)
            return first.answer, first.citations

        all_notes = [*notes, *result.notes]
        self._update_session(notes=all_notes)
        self._set_status(SessionStatus.ROUND2_SYNTHESIZING)
        await self._emit(controller, streaming.synthesize_start(self.session_id, all_notes, round=2))
        second = await synthesize_answer(
            SynthesisInput(
                query=query,
                notes=all_notes,
                previous_answer=first.answer,
                gaps=selected,
            ),
            self.session_id,
            2,
            self._synthesis_progress(controller),
            client=self.client,
        )
        self._spent += estimate_synthesis_cost(len(all_notes))

        if second.resolved_gap_ids is None:
            resolved = {gap.id for gap in selected}
        else:
            resolved = set(second.resolved_gap_ids)
        gaps = [
            gap.model_copy(update={"resolved": True}) if gap.id in resolved else gap
            for gap in self.session.gaps
        ]
        self._update_session(gaps=gaps)
        self.metrics.gaps_resolved = sum(1 for gap in gaps if gap.resolved)
        self.metrics.round2_duration_ms = _elapsed_ms(t_round2)

        # Round 1 sources are a prefix of round 2's numbered list.
        return second.answer, merge_citations(first.citations, second.citations)

    async def _complete(
        self,
        controller: StreamController,
        answer: str,
        citations: list[Citation],
        started: float,
    ) -> None:
        total_ms = _elapsed_ms(started)
        self.metrics.total_duration_ms = total_ms
        self.metrics.total_citations = len(citations)
        self.metrics.estimated_cost_usd = round(self._spent, 4)
        if self._efficiencies:
            self.metrics.parallelization_efficiency = round(
                sum(self._efficiencies) / len(self._efficiencies), 3
            )

        self._update_session(
            final_answer=answer,
            citations=citations,
            completed_at=utc_now(),
        )
        self._set_status(SessionStatus.COMPLETED)
        await self._emit(
            controller,
            streaming.research_complete(self.session_id, answer, citations, total_ms, self.metrics),
        )
        log_service.log_research_step(
            self.session_id,
            "research",
            "completed",
            {
                "duration_ms": total_ms,
                "citations": len(citations),
                "queries": self.metrics.total_queries,
                "cost_usd": self.metrics.estimated_cost_usd,
            },
        )
