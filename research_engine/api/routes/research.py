from __future__ import annotations

import asyncio
import time

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from research_engine.agents.orchestrator import ResearchOrchestrator
from research_engine.api.deps import get_orchestrator, get_store
from research_engine.api.schemas import ResearchRequest
from research_engine.config import settings
from research_engine.errors import ErrorCode
from research_engine.models.research import SessionStatus, utc_now
from research_engine.services import logger as log_service
from research_engine.services import streaming
from research_engine.services.session_store import SessionStore
from research_engine.tools.search_provider import search_configured

router = APIRouter(prefix="/api/research", tags=["research"])

DONE_SENTINEL = "[DONE]"


def _validate_query(query: str) -> str:
    cleaned = query.strip()
    if not cleaned:
        raise HTTPException(status_code=400, detail="Query is required")
    if len(cleaned) > settings.max_query_chars:
        raise HTTPException(
            status_code=400,
            detail=f"Query must be at most {settings.max_query_chars} characters",
        )
    return cleaned


def _check_providers() -> None:
    if not settings.openrouter_api_key:
        raise HTTPException(status_code=503, detail="Completion provider is not configured")
    if not search_configured():
        raise HTTPException(status_code=503, detail="Search provider is not configured")


async def _persist(store: SessionStore, orchestrator: ResearchOrchestrator) -> None:
    session = orchestrator.session
    if session is None:
        return
    try:
        await store.save_run(
            session,
            plan=orchestrator.plan,
            round2_sub_questions=orchestrator.round2_sub_questions,
            metrics=orchestrator.metrics,
        )
    except Exception as e:
        log_service.log_db_operation(
            "save_run", "research_sessions", "failed", session.id, error=str(e)
        )


@router.post("")
async def start_research(
    request: ResearchRequest,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
    store: SessionStore = Depends(get_store),
):
    """Run a research session, streaming its events over SSE."""
    query = _validate_query(request.query)
    _check_providers()
    timeout_s = settings.research_timeout_ms / 1000

    async def event_generator():
        session_id = orchestrator.session_id
        log_service.log_event(
            event_type="research_started",
            message="Research started",
            session_id=session_id,
            query=query[:100],
        )
        events = orchestrator.research(query, request.options)
        deadline = time.monotonic() + timeout_s
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError
                try:
                    event = await asyncio.wait_for(anext(events), timeout=remaining)
                except StopAsyncIteration:
                    break
                yield {"event": event.type, "data": event.to_json()}
        except TimeoutError:
            log_service.log_event(
                event_type="research_timeout_error",
                message=f"Research exceeded {settings.research_timeout_ms}ms",
                session_id=session_id,
            )
            if orchestrator.session is not None:
                orchestrator.session = orchestrator.session.model_copy(
                    update={
                        "status": SessionStatus.FAILED,
                        "error": "timeout",
                        "completed_at": utc_now(),
                    }
                )
            timeout_event = streaming.error(session_id, ErrorCode.TIMEOUT)
            yield {"event": timeout_event.type, "data": timeout_event.to_json()}
        finally:
            await events.aclose()
            await _persist(store, orchestrator)

        yield {"data": DONE_SENTINEL}

    return EventSourceResponse(event_generator())
