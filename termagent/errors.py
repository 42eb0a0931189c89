"""Error taxonomy shared by adapters, the agent loop and the conversation layer."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

_ABORT_PATTERNS = (re.compile(r"abort", re.IGNORECASE), re.compile(r"cancel", re.IGNORECASE))


class TermAgentError(Exception):
    """Base class for every error raised by termagent."""


class ProviderError(TermAgentError):
    """Upstream HTTP or in-stream failure reported by a provider."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        headers: Mapping[str, str] | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        # Header names are lowercased so lookups do not depend on the server
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.response_body = response_body


class ConfigurationError(TermAgentError):
    """Provider credentials or settings are missing or invalid."""


class CancellationError(TermAgentError):
    """The user aborted the in-flight operation."""


class UserError(TermAgentError):
    """Invalid usage of the agent loop (e.g. a malformed run state)."""


class ModelBehaviorError(TermAgentError):
    """The model produced output the agent loop cannot act on."""


class HallucinatedToolError(ModelBehaviorError):
    """The model kept calling a tool the agent does not have."""

    def __init__(self, message: str, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class MaxTurnsExceededError(TermAgentError):
    """The agent loop ran out of model turns before finishing."""

    def __init__(
        self,
        message: str,
        max_turns: int = 0,
        last_response_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.max_turns = max_turns
        self.last_response_id = last_response_id


class ConsecutiveFailureThresholdError(TermAgentError):
    """Too many tool executions failed in a row."""

    def __init__(self, failures: int) -> None:
        super().__init__(
            f"Stopped after {failures} consecutive tool failures. "
            "Send a new message to continue."
        )
        self.failures = failures


def is_abort_like_error(error: Any) -> bool:
    """Return True if *error* (or anything it wraps) represents a user abort."""
    return _is_abort_like(error, set())


def _is_abort_like(error: Any, seen: set[int]) -> bool:
    if error is None or id(error) in seen:
        return False
    seen.add(id(error))

    if isinstance(error, (CancellationError, KeyboardInterrupt)):
        return True
    if type(error).__name__ in ("CancelledError", "AbortError"):
        return True

    if isinstance(error, BaseExceptionGroup):
        if any(_is_abort_like(inner, seen) for inner in error.exceptions):
            return True

    if isinstance(error, BaseException):
        if _is_abort_like(error.__cause__, seen) or _is_abort_like(error.__context__, seen):
            return True
        message = str(error)
    else:
        message = str(error or "")

    return any(pattern.search(message) for pattern in _ABORT_PATTERNS)


def is_max_turns_error(error: Any) -> bool:
    if isinstance(error, MaxTurnsExceededError):
        return True
    message = str(error or "")
    return "Max turns" in message and "exceeded" in message
