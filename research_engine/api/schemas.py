from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel

from research_engine.models.research import ResearchOptions, ResearchSession


# --- Requests ---


class ResearchRequest(BaseModel):
    query: str
    options: Optional[ResearchOptions] = None


# --- Responses ---


class SessionSummary(BaseModel):
    id: str
    query: str
    status: str
    complexity: Optional[str] = None
    started_at: str
    completed_at: Optional[str] = None
    citations_count: int = 0
    error: Optional[str] = None

    @classmethod
    def from_session(cls, session: ResearchSession) -> "SessionSummary":
        return cls(
            id=session.id,
            query=session.query,
            status=session.status.value,
            complexity=session.complexity.value if session.complexity else None,
            started_at=session.started_at.isoformat(),
            completed_at=session.completed_at.isoformat() if session.completed_at else None,
            citations_count=len(session.citations),
            error=session.error,
        )


class SessionListResponse(BaseModel):
    sessions: list[SessionSummary]


class SessionDetailResponse(BaseModel):
    run: dict[str, Any]
