"""Provider-neutral request, response and stream-event types.

Every provider adapter consumes a ModelRequest and produces either a
ModelResponse or a stream of the events below.  Exactly one ResponseDone
terminates a successful stream; raw provider payloads never escape the
adapter.

Items in ``ModelRequest.input`` and ``ModelResponse.output`` are plain dicts:

    {"type": "message", "role": "user", "content": "..."}
    {"type": "message", "role": "assistant",
     "content": [{"type": "output_text", "text": "..."}]}
    {"type": "function_call", "call_id": ..., "name": ..., "arguments": "..."}
    {"type": "function_call_output", "call_id": ..., "output": "..."}
    {"type": "reasoning", "id": ..., "content": [...], "provider_data": {...}}
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from termagent.cancellation import CancellationToken
from termagent.usage import Usage

Item = dict[str, Any]


@dataclass
class ModelSettings:
    """Sampling settings forwarded to the provider."""

    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    top_k: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    reasoning_effort: str | None = None  # default, none, minimal, low, medium, high


@dataclass
class ModelRequest:
    system_instructions: str
    input: str | list[Item]
    model_settings: ModelSettings = field(default_factory=ModelSettings)
    tools: list[dict[str, Any]] = field(default_factory=list)
    signal: CancellationToken | None = None
    previous_response_id: str | None = None


@dataclass
class ModelResponse:
    id: str
    output: list[Item] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass
class TextDelta:
    delta: str
    type: str = field(default="text_delta", init=False)


@dataclass
class ReasoningDelta:
    delta: str
    type: str = field(default="reasoning_delta", init=False)


@dataclass
class ToolCallStart:
    call_id: str
    name: str
    type: str = field(default="tool_call_start", init=False)


@dataclass
class ToolCallComplete:
    call_id: str
    name: str
    arguments: str
    type: str = field(default="tool_call_complete", init=False)


@dataclass
class ResponseDone:
    response: ModelResponse
    type: str = field(default="response_done", init=False)


@dataclass
class ErrorEvent:
    message: str
    status: int | None = None
    type: str = field(default="error", init=False)


StreamEvent = TextDelta | ReasoningDelta | ToolCallStart | ToolCallComplete | ResponseDone | ErrorEvent


class Model(Protocol):
    """What the agent loop needs from a provider adapter."""

    async def get_response(self, request: ModelRequest) -> ModelResponse: ...

    def stream_response(self, request: ModelRequest) -> AsyncIterator[StreamEvent]: ...


class ModelProvider(Protocol):
    def get_model(self, name: str | None = None) -> Model: ...


# ---------------------------------------------------------------------------
# Item helpers
# ---------------------------------------------------------------------------


def user_message(text: str) -> Item:
    return {"type": "message", "role": "user", "content": text}


def assistant_message(text: str) -> Item:
    return {"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": text}]}


def call_id_of(item: Item) -> str | None:
    """Provider call id of a tool call or tool output item."""
    for key in ("call_id", "callId", "tool_call_id", "id"):
        value = item.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def message_text(item: Item) -> str:
    """Concatenated text of a message item (string or content-part list)."""
    content = item.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return ""


def output_text(items: list[Item]) -> str:
    """Text of the last assistant message in *items*."""
    for item in reversed(items):
        if item.get("type") == "message" and item.get("role") == "assistant":
            return message_text(item)
    return ""
