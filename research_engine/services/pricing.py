"""Pure pricing and model-tier helpers for budget enforcement."""
from __future__ import annotations

import math

from research_engine.config import settings
from research_engine.models.research import QueryComplexity, SearchModel

# Token estimates per operation
SYNTHESIS_INPUT_TOKENS_PER_1K_CHARS = 300
SYNTHESIS_CHARS_PER_NOTE_K = 5
SYNTHESIS_OUTPUT_TOKENS = 2000

QUERIES_PER_COMPLEXITY: dict[QueryComplexity, int] = {
    QueryComplexity.SIMPLE: 1,
    QueryComplexity.MODERATE: 3,
    QueryComplexity.COMPLEX: 5,
}


def get_recommended_model(complexity: QueryComplexity) -> SearchModel:
    return SearchModel.SONAR_PRO if complexity == QueryComplexity.COMPLEX else SearchModel.SONAR


def cost_per_query(model: SearchModel) -> float:
    if model == SearchModel.SONAR_PRO:
        return float(settings.sonar_pro_cost_per_query)
    return float(settings.sonar_cost_per_query)


def estimate_batch_cost(batch_size: int, model: SearchModel) -> float:
    """Estimated USD cost of running `batch_size` searches on `model`."""
    return max(batch_size, 0) * cost_per_query(model)


def max_affordable_batch(
    batch_size: int,
    model: SearchModel,
    spent: float,
    max_cost: float,
    *,
    minimum: int = 1,
) -> int:
    """Largest prefix length of a batch that keeps cumulative spend within `max_cost`.

    Never returns less than `minimum` (capped by `batch_size`).
    """
    if batch_size <= 0:
        return 0
    if spent + estimate_batch_cost(batch_size, model) <= max_cost:
        return batch_size
    unit = cost_per_query(model)
    remaining = max_cost - spent
    affordable = math.floor(remaining / unit + 1e-9) if unit > 0 and remaining > 0 else 0
    return min(batch_size, max(affordable, minimum))


def estimate_synthesis_cost(notes_count: int) -> float:
    """Estimated completion cost of one synthesis call over `notes_count` notes."""
    input_tokens = SYNTHESIS_INPUT_TOKENS_PER_1K_CHARS * SYNTHESIS_CHARS_PER_NOTE_K * max(notes_count, 1)
    return (
        input_tokens * settings.llm_input_cost_per_1k
        + SYNTHESIS_OUTPUT_TOKENS * settings.llm_output_cost_per_1k
    ) / 1000


def estimate_session_cost(complexity: QueryComplexity, use_pro_model: bool = False) -> float:
    """Up-front estimate of a whole session, before any search runs."""
    model = SearchModel.SONAR_PRO if use_pro_model else SearchModel.SONAR
    search_cost = estimate_batch_cost(QUERIES_PER_COMPLEXITY[complexity], model)
    synthesis_cost = estimate_synthesis_cost(1)
    # Round 2 adds ~50% for complex sessions
    multiplier = 1.5 if complexity == QueryComplexity.COMPLEX else 1.0
    return (search_cost + synthesis_cost) * multiplier
