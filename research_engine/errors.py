from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    CLASSIFICATION_FAILED = "CLASSIFICATION_FAILED"
    PLANNING_FAILED = "PLANNING_FAILED"
    SEARCH_FAILED = "SEARCH_FAILED"
    SYNTHESIS_FAILED = "SYNTHESIS_FAILED"
    TIMEOUT = "TIMEOUT"
    COST_LIMIT_EXCEEDED = "COST_LIMIT_EXCEEDED"
    RATE_LIMITED = "RATE_LIMITED"
    UNKNOWN = "UNKNOWN"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.CLASSIFICATION_FAILED: "Unable to analyze the complexity of your query. Please try again.",
    ErrorCode.PLANNING_FAILED: "Unable to plan the research approach. Please try rephrasing your question.",
    ErrorCode.SEARCH_FAILED: "Some searches failed. Continuing with available results.",
    ErrorCode.SYNTHESIS_FAILED: "Unable to synthesize the research results. Please try again.",
    ErrorCode.TIMEOUT: "Research took too long. Returning partial results.",
    ErrorCode.COST_LIMIT_EXCEEDED: "Research cost limit reached. Returning available results.",
    ErrorCode.RATE_LIMITED: "API rate limit reached. Please try again in a moment.",
    ErrorCode.UNKNOWN: "An unexpected error occurred during research.",
}


class ResearchError(Exception):
    """A pipeline failure with a known error code."""

    def __init__(self, code: ErrorCode, detail: str | None = None):
        self.code = code
        self.detail = detail
        super().__init__(detail or code.value)


def error_code_for(exc: BaseException) -> ErrorCode:
    if isinstance(exc, ResearchError):
        return exc.code
    return ErrorCode.UNKNOWN


def error_message(code: ErrorCode) -> str:
    return ERROR_MESSAGES.get(code, ERROR_MESSAGES[ErrorCode.UNKNOWN])


def is_recoverable(code: ErrorCode) -> bool:
    return code != ErrorCode.UNKNOWN
