"""Error types raised across the pitch deck pipeline."""
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    OVERLOADED = "overloaded"
    CONNECTION_RESET = "connection_reset"
    DNS_FAILURE = "dns_failure"
    UNAVAILABLE = "unavailable"
    UNSUPPORTED = "unsupported"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMIT,
        ErrorKind.TIMEOUT,
        ErrorKind.SERVER_ERROR,
        ErrorKind.OVERLOADED,
        ErrorKind.CONNECTION_RESET,
        ErrorKind.DNS_FAILURE,
        ErrorKind.UNAVAILABLE,
    }
)


class PipelineError(Exception):
    """Base class for every error the pipeline reports to the operator."""


class AgentError(PipelineError):
    """An agent step failed; carries the underlying error and call context."""

    def __init__(
        self,
        message: str,
        original: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.original = original
        self.context = dict(context or {})


class InputValidationError(AgentError):
    """Missing input files, credentials or malformed configuration."""

    def __init__(self, issues: List[str]) -> None:
        self.issues = [str(i).strip() for i in issues if str(i).strip()]
        if not self.issues:
            self.issues = ["Invalid input"]
        super().__init__(self._format())

    def _format(self) -> str:
        lines = ["Input validation failed:"]
        for issue in self.issues:
            lines.append(f"- {issue}")
        return "\n".join(lines)


class CostLimitError(AgentError):
    def __init__(self, total_cost: float, max_cost: float) -> None:
        super().__init__(
            f"Cost limit exceeded: ${total_cost:.4f} > ${max_cost:.2f}",
            context={"total_cost": total_cost, "max_cost": max_cost},
        )
        self.total_cost = total_cost
        self.max_cost = max_cost


class ProviderError(AgentError):
    """A provider call failed; ``kind`` is the structured classification."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        status_code: Optional[int] = None,
        original: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, original=original, context={"kind": kind.value, "status_code": status_code})
        self.kind = kind
        self.status_code = status_code


class RetryExhaustedError(AgentError):
    def __init__(self, attempts: int, last_error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            f"All {attempts} attempts failed: {last_error}",
            original=last_error,
            context=context,
        )
        self.attempts = attempts
        self.last_error = last_error


class ResponseParseError(AgentError):
    """Model output could not be parsed even after repair."""

    def __init__(self, message: str, scratch_path: Optional[Path] = None, original: Optional[BaseException] = None) -> None:
        if scratch_path is not None:
            message = f"{message} (raw response saved to {scratch_path})"
        super().__init__(message, original=original)
        self.scratch_path = scratch_path


class ImageValidationError(AgentError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid image data: {reason}")
        self.reason = reason
