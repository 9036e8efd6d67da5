from __future__ import annotations

from research_engine.agents.orchestrator import ResearchOrchestrator
from research_engine.services.session_store import SessionStore, get_session_store


def get_orchestrator() -> ResearchOrchestrator:
    """A fresh orchestrator per request, using the shared completion client."""
    return ResearchOrchestrator()


def get_store() -> SessionStore:
    return get_session_store()
