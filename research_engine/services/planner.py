"""Research planning: decomposes a query into dependency-ordered sub-questions."""
from __future__ import annotations

import json
import math
import re
import time
from typing import Any, Iterable

from research_engine.config import settings
from research_engine.llm_client import client as llm_client, get_model, response_text
from research_engine.models.research import (
    Priority,
    QueryComplexity,
    ResearchPlan,
    SubQuestion,
    SubQuestionStatus,
)
from research_engine.services import logger as log_service
from research_engine.services.classifier import ESTIMATED_TIME_BY_COMPLEXITY
from research_engine.services.prompt_store import render_prompt

MIN_QUESTION_CHARS = 11
BASE_SECONDS_PER_SEARCH = 5
PRIORITY_TIME_WEIGHTS: dict[Priority, float] = {
    Priority.HIGH: 1.5,
    Priority.MEDIUM: 1.0,
    Priority.LOW: 0.8,
}


def max_questions_for(complexity: QueryComplexity) -> int:
    caps = {
        QueryComplexity.SIMPLE: 2,
        QueryComplexity.MODERATE: 3,
        QueryComplexity.COMPLEX: settings.max_sub_questions,
    }
    return max(1, min(caps[complexity], settings.max_sub_questions))


def _parse_priority(value: Any) -> Priority:
    try:
        return Priority(str(value).lower().strip())
    except ValueError:
        return Priority.MEDIUM


def _normalize_dependency(raw: Any) -> str:
    text = str(raw).strip()
    if re.fullmatch(r"\d+", text):
        return f"sq-{int(text)}"
    return text


def validate_sub_questions(raw_questions: Any, complexity: QueryComplexity) -> list[SubQuestion]:
    """Turn raw planner output into sub-questions with a well-formed dependency graph.

    Ids are assigned positionally (`sq-1`...). Dependencies are kept only when
    they point at an earlier sub-question, so the result is always acyclic.
    """
    if not isinstance(raw_questions, list):
        return []

    valid = [
        q
        for q in raw_questions
        if isinstance(q, dict)
        and isinstance(q.get("question"), str)
        and len(q["question"].strip()) >= MIN_QUESTION_CHARS
    ][: max_questions_for(complexity)]

    minimum = settings.min_sub_questions_complex if complexity == QueryComplexity.COMPLEX else 1
    if len(valid) < minimum:
        log_service.logger.warning(
            f"Planner produced {len(valid)} valid sub-questions, minimum for {complexity.value} is {minimum}"
        )

    sub_questions: list[SubQuestion] = []
    for index, raw in enumerate(valid):
        sq_id = f"sq-{index + 1}"
        earlier = {sq.id for sq in sub_questions}
        depends_on: list[str] = []
        raw_deps = raw.get("dependsOn") or raw.get("depends_on") or []
        if not isinstance(raw_deps, list):
            raw_deps = [raw_deps]
        for dep in raw_deps:
            dep_id = _normalize_dependency(dep)
            if dep_id in earlier and dep_id not in depends_on:
                depends_on.append(dep_id)

        reasoning = raw.get("reasoning")
        sub_questions.append(
            SubQuestion(
                id=sq_id,
                question=raw["question"].strip(),
                reasoning=reasoning.strip()
                if isinstance(reasoning, str) and reasoning.strip()
                else "Addresses a key aspect of the research query",
                priority=_parse_priority(raw.get("priority", "medium")),
                depends_on=depends_on,
            )
        )
    return sub_questions


def calculate_estimated_time(sub_questions: list[SubQuestion]) -> int:
    search_time = sum(BASE_SECONDS_PER_SEARCH * PRIORITY_TIME_WEIGHTS[q.priority] for q in sub_questions)
    synthesis_time = 5 + len(sub_questions) * 2
    return math.ceil(search_time + synthesis_time)


def create_fallback_plan(query: str, session_id: str, complexity: QueryComplexity) -> ResearchPlan:
    sub_questions = [
        SubQuestion(
            id="sq-1",
            question=query,
            reasoning="Direct search for the research query",
            priority=Priority.HIGH,
        )
    ]
    if complexity != QueryComplexity.SIMPLE:
        sub_questions.append(
            SubQuestion(
                id="sq-2",
                question=f"What are the key considerations and implications of {query}?",
                reasoning="Exploring implications and considerations",
                priority=Priority.MEDIUM,
            )
        )
    if complexity == QueryComplexity.COMPLEX:
        sub_questions.append(
            SubQuestion(
                id="sq-3",
                question=f"What are the most recent developments regarding {query}?",
                reasoning="Covering recent developments",
                priority=Priority.MEDIUM,
            )
        )
    return ResearchPlan(
        id=f"plan-{session_id}",
        session_id=session_id,
        original_query=query,
        sub_questions=sub_questions,
        total_estimated_time=ESTIMATED_TIME_BY_COMPLEXITY[complexity],
    )


async def create_research_plan(
    query: str,
    session_id: str,
    complexity: QueryComplexity,
    *,
    client: Any = None,
) -> ResearchPlan:
    """Ask the completion provider for a plan; any failure yields the fallback plan."""
    active_client = client or llm_client()
    model = get_model(settings.planner_model)
    t0 = time.monotonic()
    try:
        response = await active_client.messages.create(
            model=model,
            max_tokens=1000,
            system=render_prompt("planner.system_prompt"),
            messages=[
                {
                    "role": "user",
                    "content": render_prompt(
                        "planner.user_prompt",
                        query=query,
                        complexity=complexity.value,
                        count_instruction=render_prompt(f"planner.count_{complexity.value}"),
                    ),
                }
            ],
        )
        elapsed_ms = int((time.monotonic() - t0) * 1000)
        usage = getattr(response, "usage", None)
        log_service.log_llm_call(
            model=model,
            caller="planner",
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            duration_ms=elapsed_ms,
        )

        match = re.search(r"\{[\s\S]*\}", response_text(response))
        if not match:
            raise ValueError("No JSON in planner response")
        payload = json.loads(match.group(0))
        sub_questions = validate_sub_questions(payload.get("subQuestions"), complexity)
        if not sub_questions:
            raise ValueError("Planner returned no usable sub-questions")
    except Exception as e:
        log_service.log_event(
            event_type="planner_failed",
            message="Falling back to single-question plan",
            session_id=session_id,
            error=str(e),
        )
        return create_fallback_plan(query, session_id, complexity)

    log_service.log_research_step(
        session_id,
        "plan",
        "completed",
        {"sub_questions": len(sub_questions), "duration_ms": elapsed_ms},
    )
    return ResearchPlan(
        id=f"plan-{session_id}",
        session_id=session_id,
        original_query=query,
        sub_questions=sub_questions,
        total_estimated_time=calculate_estimated_time(sub_questions),
    )


def get_parallel_batch(sub_questions: list[SubQuestion], completed_ids: Iterable[str]) -> list[SubQuestion]:
    """Pending sub-questions whose dependencies are all completed, in plan order."""
    completed = set(completed_ids)
    return [
        q
        for q in sub_questions
        if q.status == SubQuestionStatus.PENDING and all(dep in completed for dep in q.depends_on)
    ]


def update_sub_question_status(
    plan: ResearchPlan,
    sub_question_id: str,
    status: SubQuestionStatus,
) -> ResearchPlan:
    """Return a new plan with one sub-question's status replaced."""
    return plan.model_copy(
        update={
            "sub_questions": [
                q.model_copy(update={"status": status}) if q.id == sub_question_id else q
                for q in plan.sub_questions
            ]
        }
    )
