"""Query complexity classification.

Picks the research strategy for a query: a cheap keyword/length/structure
heuristic by default, with an optional completion-provider judgment for
low-confidence cases.
"""
from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

from research_engine.config import settings
from research_engine.llm_client import client as llm_client, get_model, response_text
from research_engine.models.research import ClassificationResult, QueryComplexity
from research_engine.services import logger as log_service
from research_engine.services.pricing import get_recommended_model
from research_engine.services.prompt_store import render_prompt

COMPLEXITY_INDICATORS: dict[QueryComplexity, tuple[str, ...]] = {
    QueryComplexity.SIMPLE: (
        "what is",
        "who is",
        "define",
        "meaning of",
        "when did",
        "where is",
    ),
    QueryComplexity.MODERATE: (
        "compare",
        "difference between",
        "how does",
        "explain",
        "why does",
        "benefits of",
        "pros and cons",
    ),
    QueryComplexity.COMPLEX: (
        "analyze",
        "evaluate",
        "comprehensive",
        "in-depth",
        "deep dive",
        "research",
        "investigate",
        "thorough",
        "detailed comparison",
        "implications of",
        "impact on",
        "factors affecting",
    ),
}

SIMPLE_LENGTH_THRESHOLD = 50
MODERATE_LENGTH_THRESHOLD = 150

ESTIMATED_TIME_BY_COMPLEXITY: dict[QueryComplexity, int] = {
    QueryComplexity.SIMPLE: 10,
    QueryComplexity.MODERATE: 30,
    QueryComplexity.COMPLEX: 60,
}

CONJUNCTIONS = ("and", "as well as", "along with", "including")
TEMPORAL_WORDS = ("over time", "historically", "evolution", "trend")
QUANTITATIVE_WORDS = ("statistics", "data", "numbers", "metrics", "percentage")


@dataclass
class HeuristicScore:
    simple: int = 0
    moderate: int = 0
    complex: int = 0

    def __add__(self, other: "HeuristicScore") -> "HeuristicScore":
        return HeuristicScore(
            simple=self.simple + other.simple,
            moderate=self.moderate + other.moderate,
            complex=self.complex + other.complex,
        )


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


def score_by_keywords(query: str) -> HeuristicScore:
    lowered = query.lower()
    score = HeuristicScore()
    for indicator in COMPLEXITY_INDICATORS[QueryComplexity.SIMPLE]:
        if indicator in lowered:
            score.simple += 2
    for indicator in COMPLEXITY_INDICATORS[QueryComplexity.MODERATE]:
        if indicator in lowered:
            score.moderate += 2
    for indicator in COMPLEXITY_INDICATORS[QueryComplexity.COMPLEX]:
        if indicator in lowered:
            score.complex += 3  # complex indicators weigh more
    return score


def score_by_length(query: str) -> HeuristicScore:
    length = len(query.strip())
    if length < SIMPLE_LENGTH_THRESHOLD:
        return HeuristicScore(simple=3)
    if length < MODERATE_LENGTH_THRESHOLD:
        return HeuristicScore(moderate=2)
    return HeuristicScore(complex=2)


def score_by_structure(query: str) -> HeuristicScore:
    lowered = query.lower()
    score = HeuristicScore()
    if query.count("?") > 1:
        score.complex += 2
    for conjunction in CONJUNCTIONS:
        if _contains_phrase(lowered, conjunction):
            score.moderate += 1
    for word in TEMPORAL_WORDS:
        if word in lowered:
            score.complex += 2
    for word in QUANTITATIVE_WORDS:
        if _contains_phrase(lowered, word):
            score.moderate += 1
    return score


def combine_scores(*scores: HeuristicScore) -> tuple[QueryComplexity, float]:
    totals = sum(scores, HeuristicScore())
    total = totals.simple + totals.moderate + totals.complex

    # Ties go to the higher tier.
    if totals.complex >= totals.moderate and totals.complex >= totals.simple:
        complexity, winning = QueryComplexity.COMPLEX, totals.complex
    elif totals.moderate >= totals.simple:
        complexity, winning = QueryComplexity.MODERATE, totals.moderate
    else:
        complexity, winning = QueryComplexity.SIMPLE, totals.simple

    confidence = min(0.95, 0.5 + (winning / total) * 0.45) if total > 0 else 0.5
    return complexity, confidence


def _result(complexity: QueryComplexity, confidence: float, reasoning: str) -> ClassificationResult:
    return ClassificationResult(
        complexity=complexity,
        confidence=confidence,
        reasoning=reasoning,
        estimated_time=ESTIMATED_TIME_BY_COMPLEXITY[complexity],
        suggested_model=get_recommended_model(complexity),
    )


def classify_query_heuristic(query: str) -> ClassificationResult:
    complexity, confidence = combine_scores(
        score_by_keywords(query),
        score_by_length(query),
        score_by_structure(query),
    )
    return _result(
        complexity,
        confidence,
        "Heuristic classification based on keywords, length, and structure",
    )


def _extract_json_object(text: str) -> dict[str, Any]:
    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        raise ValueError("No JSON in classifier response")
    payload = json.loads(match.group(0))
    if not isinstance(payload, dict):
        raise ValueError("Classifier response is not a JSON object")
    return payload


async def classify_query_with_llm(query: str, client: Any = None) -> ClassificationResult:
    """Ask the completion provider for a complexity judgment.

    Falls back to the heuristic when the call fails or returns garbage.
    """
    active_client = client or llm_client()
    model = get_model(settings.classifier_model)
    t0 = time.monotonic()
    try:
        response = await active_client.messages.create(
            model=model,
            max_tokens=200,
            system=render_prompt("classifier.system_prompt"),
            messages=[{"role": "user", "content": query}],
        )
        usage = getattr(response, "usage", None)
        log_service.log_llm_call(
            model=model,
            caller="classifier",
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        payload = _extract_json_object(response_text(response))
        complexity = QueryComplexity(str(payload.get("complexity", "")).lower().strip())
        confidence = max(0.0, min(1.0, float(payload.get("confidence", 0.5))))
        reasoning = str(payload.get("reasoning", "")).strip() or "LLM classification"
        return _result(complexity, confidence, reasoning)
    except Exception as e:
        log_service.log_llm_call(
            model=model,
            caller="classifier",
            duration_ms=int((time.monotonic() - t0) * 1000),
            status="error",
            error=str(e),
        )
        return classify_query_heuristic(query)


async def classify_query(
    query: str,
    *,
    use_llm: bool = False,
    force_complexity: Optional[QueryComplexity] = None,
    client: Any = None,
) -> ClassificationResult:
    if force_complexity is not None:
        return _result(QueryComplexity(force_complexity), 1.0, "Forced complexity")

    heuristic = classify_query_heuristic(query)
    if not use_llm or heuristic.confidence >= settings.llm_classification_confidence:
        log_service.logger.debug(f"Using heuristic classification: {heuristic.complexity.value}")
        return heuristic

    log_service.logger.debug("Low confidence heuristic, using LLM classification")
    return await classify_query_with_llm(query, client=client)


def should_use_fast_path(result: ClassificationResult) -> bool:
    """Single-search shortcut for confidently simple queries."""
    return (
        result.complexity == QueryComplexity.SIMPLE
        and result.confidence >= settings.fast_path_min_confidence
    )
