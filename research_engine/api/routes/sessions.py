from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from research_engine.api.deps import get_store
from research_engine.api.schemas import SessionDetailResponse, SessionListResponse, SessionSummary
from research_engine.services.session_store import SessionStore

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.get("", response_model=SessionListResponse)
async def list_sessions(store: SessionStore = Depends(get_store)):
    sessions = await store.list_sessions()
    return SessionListResponse(sessions=[SessionSummary.from_session(s) for s in sessions])


@router.get("/{session_id}", response_model=SessionDetailResponse)
async def get_session(session_id: str, store: SessionStore = Depends(get_store)):
    run = await store.get_run(session_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionDetailResponse(run=run.to_wire())
