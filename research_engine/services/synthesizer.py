"""Answer synthesis and gap analysis over research notes."""
from __future__ import annotations

import json
import re
import time
from typing import Any, Awaitable, Callable, Optional

from research_engine.config import settings
from research_engine.errors import ErrorCode, ResearchError
from research_engine.llm_client import client as llm_client, get_model
from research_engine.models.research import (
    PRIORITY_WEIGHTS,
    Citation,
    Priority,
    ResearchGap,
    ResearchNote,
    SynthesisInput,
    SynthesisOutput,
)
from research_engine.services import logger as log_service
from research_engine.services.citations import CITATION_MARKER
from research_engine.services.prompt_store import render_prompt

ProgressCallback = Callable[[int, Optional[str]], Awaitable[None]]

EXPECTED_ANSWER_CHARS = 4000
MAX_STREAMING_PROGRESS = 90
SYNTHESIS_MAX_TOKENS = 4000

JSON_FENCE = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")


def collect_citations(notes: list[ResearchNote]) -> list[Citation]:
    """One numbered source list over all notes, deduplicated by URL in note order."""
    catalog: list[Citation] = []
    seen: set[str] = set()
    for note in notes:
        for citation in note.citations:
            if citation.url in seen:
                continue
            seen.add(citation.url)
            catalog.append(citation)
    return catalog


def _globalize_markers(note: ResearchNote, positions: dict[str, int]) -> str:
    """Rewrite a note's own `[n]` markers to source-list numbers; drop unresolvable ones."""

    def replace(match: re.Match[str]) -> str:
        local = int(match.group(1))
        if 1 <= local <= len(note.citations):
            return f"[{positions[note.citations[local - 1].url]}]"
        return ""

    return CITATION_MARKER.sub(replace, note.content)


def build_synthesis_prompt(synthesis_input: SynthesisInput, catalog: list[Citation]) -> str:
    positions = {c.url: index for index, c in enumerate(catalog, start=1)}
    parts = [f'Original Query: "{synthesis_input.query}"', ""]

    parts.append("Sources:")
    if catalog:
        parts.extend(f"[{i}] {c.title} - {c.url}" for i, c in enumerate(catalog, start=1))
    else:
        parts.append("(none)")
    parts.append("")

    parts.append("Research Notes:")
    for index, note in enumerate(synthesis_input.notes, start=1):
        parts.append("")
        parts.append(f"### Note {index} (confidence: {note.confidence:.2f})")
        parts.append(_globalize_markers(note, positions))

    if synthesis_input.previous_answer:
        parts.extend(["", "Previous Answer:", synthesis_input.previous_answer])
        if synthesis_input.gaps:
            parts.extend(["", "Gaps to address:"])
            parts.extend(
                f"- [{gap.id}] ({gap.priority.value}) {gap.description}"
                for gap in synthesis_input.gaps
            )
        parts.extend(["", render_prompt("synthesis.round2_instruction")])
    else:
        parts.extend(["", render_prompt("synthesis.final_instruction")])

    return "\n".join(parts)


def parse_response(text: str) -> tuple[str, dict[str, Any] | None]:
    """Split the answer from its trailing JSON analysis block."""
    fenced = list(JSON_FENCE.finditer(text))
    if fenced:
        match = fenced[-1]
        try:
            payload = json.loads(match.group(1))
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            answer = text[: match.start()] + text[match.end():]
            return answer.strip(), payload

    for brace in reversed([m.start() for m in re.finditer(r"\{", text)]):
        try:
            payload = json.loads(text[brace:].strip())
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and ("gaps" in payload or "confidence" in payload):
            return text[:brace].strip(), payload

    return text.strip(), None


def _parse_priority(value: Any) -> Priority:
    try:
        return Priority(str(value).lower().strip())
    except ValueError:
        return Priority.MEDIUM


def transform_gaps(raw_gaps: Any, session_id: str, round: int) -> list[ResearchGap]:
    if not isinstance(raw_gaps, list):
        return []
    gaps: list[ResearchGap] = []
    for raw in raw_gaps:
        if not isinstance(raw, dict):
            continue
        description = str(raw.get("description", "")).strip()
        suggested = str(raw.get("suggestedQuery") or raw.get("suggested_query") or "").strip()
        if not description:
            continue
        gaps.append(
            ResearchGap(
                id=f"gap-{session_id}-r{round}-{len(gaps) + 1}",
                session_id=session_id,
                round=round,
                description=description,
                suggested_query=suggested or description,
                priority=_parse_priority(raw.get("priority")),
            )
        )
        if len(gaps) >= settings.max_gaps_to_address:
            break
    return gaps


def extract_used_citations(answer: str, citations: list[Citation]) -> list[Citation]:
    used: list[Citation] = []
    seen: set[int] = set()
    for match in CITATION_MARKER.finditer(answer):
        number = int(match.group(1))
        if 1 <= number <= len(citations) and number not in seen:
            seen.add(number)
            used.append(citations[number - 1])
    return used


def calculate_confidence(answer: str, used_citations: int, gaps: list[ResearchGap]) -> float:
    """Fallback answer confidence when the model does not report one."""
    confidence = 0.5
    if len(answer) > 1000:
        confidence += 0.1
    if len(answer) > 2000:
        confidence += 0.1
    if used_citations >= 3:
        confidence += 0.1
    if used_citations >= 5:
        confidence += 0.1
    for gap in gaps:
        if gap.priority == Priority.HIGH:
            confidence -= 0.05
        elif gap.priority == Priority.MEDIUM:
            confidence -= 0.02
    return round(min(max(confidence, 0.1), 0.95), 2)


def _reported_confidence(payload: dict[str, Any] | None) -> float | None:
    if not payload:
        return None
    value = payload.get("confidence")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return min(max(float(value), 0.0), 1.0)


def _resolved_gap_ids(payload: dict[str, Any] | None, gaps: list[ResearchGap]) -> list[str] | None:
    if not payload or not gaps or not isinstance(payload.get("resolvedGaps"), list):
        return None
    known = {gap.id for gap in gaps}
    return [str(gap_id) for gap_id in payload["resolvedGaps"] if str(gap_id) in known]


async def synthesize_answer(
    synthesis_input: SynthesisInput,
    session_id: str,
    round: int = 1,
    on_progress: ProgressCallback | None = None,
    *,
    client: Any = None,
) -> SynthesisOutput:
    """Stream a synthesized answer with inline `[n]` markers and analyze its gaps.

    Returned citations are the numbered source list the markers index. Progress
    percentages are non-decreasing and end with a final 100.
    """
    active_client = client or llm_client()
    model = get_model(settings.synthesis_model)
    catalog = collect_citations(synthesis_input.notes)
    prompt = build_synthesis_prompt(synthesis_input, catalog)
    interval_s = settings.progress_update_interval_ms / 1000

    t0 = time.monotonic()
    chunks: list[str] = []
    last_progress = 0
    last_emit = t0
    try:
        async with active_client.messages.stream(
            model=model,
            max_tokens=SYNTHESIS_MAX_TOKENS,
            system=render_prompt("synthesis.system_prompt"),
            messages=[{"role": "user", "content": prompt}],
        ) as stream:
            async for text in stream.text_stream:
                chunks.append(text)
                if on_progress is None:
                    continue
                now = time.monotonic()
                generated = sum(len(c) for c in chunks)
                progress = min(
                    MAX_STREAMING_PROGRESS,
                    int(generated / EXPECTED_ANSWER_CHARS * MAX_STREAMING_PROGRESS),
                )
                if now - last_emit >= interval_s and progress > last_progress:
                    last_progress = progress
                    last_emit = now
                    await on_progress(progress, "".join(chunks))
            final = await stream.get_final_message()
    except Exception as e:
        log_service.log_llm_call(
            model=model,
            caller=f"synthesizer_round{round}",
            duration_ms=int((time.monotonic() - t0) * 1000),
            status="error",
            error=str(e),
        )
        raise ResearchError(ErrorCode.SYNTHESIS_FAILED, str(e)) from e

    usage = getattr(final, "usage", None)
    log_service.log_llm_call(
        model=model,
        caller=f"synthesizer_round{round}",
        input_tokens=getattr(usage, "input_tokens", 0) or 0,
        output_tokens=getattr(usage, "output_tokens", 0) or 0,
        duration_ms=int((time.monotonic() - t0) * 1000),
    )

    answer, payload = parse_response("".join(chunks))
    if not answer:
        raise ResearchError(ErrorCode.SYNTHESIS_FAILED, "Synthesis produced an empty answer")

    gaps = transform_gaps((payload or {}).get("gaps"), session_id, round)
    confidence = _reported_confidence(payload)
    if confidence is None:
        used = extract_used_citations(answer, catalog)
        confidence = calculate_confidence(answer, len(used), gaps)

    if on_progress is not None:
        await on_progress(100, answer)

    return SynthesisOutput(
        answer=answer,
        citations=catalog,
        gaps=gaps,
        confidence=confidence,
        resolved_gap_ids=_resolved_gap_ids(payload, synthesis_input.gaps),
    )


def should_proceed_to_round2(result: SynthesisOutput) -> bool:
    if not result.gaps:
        return False
    if result.confidence >= settings.min_confidence_to_complete:
        return False
    has_important_gap = any(g.priority in (Priority.HIGH, Priority.MEDIUM) for g in result.gaps)
    return has_important_gap or result.confidence < settings.research_gap_threshold


def select_round2_gaps(gaps: list[ResearchGap]) -> list[ResearchGap]:
    """Non-low gaps, highest priority first (stable), capped to one round's budget."""
    limit = min(settings.max_gaps_to_address, settings.research_max_queries_per_round)
    important = [g for g in gaps if g.priority != Priority.LOW]
    important.sort(key=lambda g: PRIORITY_WEIGHTS[g.priority], reverse=True)
    return important[:limit]


def get_round2_queries(gaps: list[ResearchGap]) -> list[str]:
    """Follow-up queries index-aligned with `select_round2_gaps(gaps)`."""
    return [gap.suggested_query for gap in select_round2_gaps(gaps)]
