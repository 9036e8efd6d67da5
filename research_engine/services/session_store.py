"""In-memory persistence for finished research runs."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from research_engine.models.research import (
    ResearchGap,
    ResearchNote,
    ResearchPlan,
    ResearchSession,
    SessionMetrics,
    SubQuestion,
)
from research_engine.services import logger as log_service


@dataclass
class StoredRun:
    session: ResearchSession
    plan: ResearchPlan | None = None
    round2_sub_questions: list[SubQuestion] = field(default_factory=list)
    notes: list[ResearchNote] = field(default_factory=list)
    gaps: list[ResearchGap] = field(default_factory=list)
    metrics: SessionMetrics | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "session": self.session.to_wire(),
            "plan": self.plan.to_wire() if self.plan else None,
            "round2SubQuestions": [q.to_wire() for q in self.round2_sub_questions],
            "notes": [n.to_wire() for n in self.notes],
            "gaps": [g.to_wire() for g in self.gaps],
            "metrics": self.metrics.to_wire() if self.metrics else None,
        }


class SessionStore:
    def __init__(self) -> None:
        self._runs: dict[str, StoredRun] = {}
        self._lock = asyncio.Lock()

    async def upsert_session(self, session: ResearchSession) -> None:
        async with self._lock:
            run = self._runs.get(session.id)
            if run is None:
                self._runs[session.id] = StoredRun(session=session)
            else:
                run.session = session
        log_service.log_db_operation("upsert", "research_sessions", "success", session.id)

    async def save_run(
        self,
        session: ResearchSession,
        *,
        plan: ResearchPlan | None = None,
        round2_sub_questions: list[SubQuestion] | None = None,
        metrics: SessionMetrics | None = None,
    ) -> StoredRun:
        """Store every record of a finished run, replacing any earlier copy."""
        run = StoredRun(
            session=session,
            plan=plan,
            round2_sub_questions=list(round2_sub_questions or []),
            notes=list(session.notes),
            gaps=list(session.gaps),
            metrics=metrics,
        )
        async with self._lock:
            self._runs[session.id] = run
        log_service.log_db_operation(
            "save_run",
            "research_sessions",
            "success",
            f"{session.id} status={session.status.value} notes={len(run.notes)} gaps={len(run.gaps)}",
        )
        return run

    async def get_run(self, session_id: str) -> StoredRun | None:
        async with self._lock:
            return self._runs.get(session_id)

    async def get_session(self, session_id: str) -> ResearchSession | None:
        run = await self.get_run(session_id)
        return run.session if run else None

    async def list_sessions(self) -> list[ResearchSession]:
        """Stored sessions, newest first."""
        async with self._lock:
            sessions = [run.session for run in self._runs.values()]
        return sorted(sessions, key=lambda s: s.started_at, reverse=True)

    async def clear(self) -> None:
        async with self._lock:
            self._runs.clear()


_store: SessionStore | None = None


def get_session_store() -> SessionStore:
    global _store
    if _store is None:
        _store = SessionStore()
    return _store
