"""Citation reconciliation across research rounds."""
from __future__ import annotations

import hashlib
import re

from research_engine.models.research import Citation

CITATION_MARKER = re.compile(r"\[(\d+)\]")


def citation_id_for(url: str) -> str:
    """Stable citation id derived from the source URL."""
    return "src-" + hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]


def merge_citations(first: list[Citation], second: list[Citation]) -> list[Citation]:
    """Concatenate and dedupe; a citation is a duplicate when its id or url was already seen."""
    merged: list[Citation] = []
    seen_ids: set[str] = set()
    seen_urls: set[str] = set()
    for citation in [*first, *second]:
        if citation.id in seen_ids or citation.url in seen_urls:
            continue
        seen_ids.add(citation.id)
        seen_urls.add(citation.url)
        merged.append(citation)
    return merged


def renumber_citations(answer: str, citations: list[Citation]) -> tuple[str, list[Citation]]:
    """Rewrite `[n]` markers to be contiguous from 1 in first-appearance order.

    Markers outside `1..len(citations)` are left as literal text. Citations the
    answer never references are dropped; the rest are re-identified
    `citation-1..n` to match their markers.
    """
    mapping: dict[int, int] = {}
    for match in CITATION_MARKER.finditer(answer):
        original = int(match.group(1))
        if 1 <= original <= len(citations) and original not in mapping:
            mapping[original] = len(mapping) + 1

    def replace(match: re.Match[str]) -> str:
        original = int(match.group(1))
        if original not in mapping:
            return match.group(0)
        return f"[{mapping[original]}]"

    renumbered = CITATION_MARKER.sub(replace, answer)
    ordered = sorted(mapping.items(), key=lambda item: item[1])
    reordered = [
        citations[original - 1].model_copy(update={"id": f"citation-{new}"})
        for original, new in ordered
    ]
    return renumbered, reordered
