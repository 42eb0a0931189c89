"""Shared test fixtures: settings, logging and scripted model providers."""

import json
import logging
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from termagent.agent.client import AgentRunClient
from termagent.agent.runner import Runner
from termagent.config import Settings, SettingsService
from termagent.conversation.session import ConversationSession
from termagent.conversation.store import ConversationStore
from termagent.logging_service import LoggingService
from termagent.protocol import (
    ModelRequest,
    ModelResponse,
    ReasoningDelta,
    ResponseDone,
    StreamEvent,
    TextDelta,
    ToolCallComplete,
    ToolCallStart,
    assistant_message,
)
from termagent.providers.registry import ProviderDefinition, ProviderRegistry
from termagent.tools.base import Tool
from termagent.usage import Usage

SCRIPTED_PROVIDER = "scripted"


# ---------------------------------------------------------------------------
# Settings / logging
# ---------------------------------------------------------------------------


def make_settings_service(**agent_overrides: Any) -> SettingsService:
    """SettingsService with no .env file and explicit agent overrides."""
    settings = Settings(_env_file=None)
    settings.agent.openai.api_key = ""
    settings.agent.openrouter.api_key = ""
    for key, value in agent_overrides.items():
        setattr(settings.agent, key, value)
    return SettingsService(settings)


@pytest.fixture
def settings_service() -> SettingsService:
    return make_settings_service()


@pytest.fixture
def logging_service() -> LoggingService:
    return LoggingService(logging.getLogger("termagent.tests"))


# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


def text_turn(
    text: str,
    response_id: str = "resp_1",
    reasoning: str | None = None,
    usage: Usage | None = None,
) -> list[StreamEvent]:
    """Events of a model turn that answers with plain text."""
    events: list[StreamEvent] = []
    if reasoning:
        events.append(ReasoningDelta(reasoning))
    events.append(TextDelta(text))
    events.append(
        ResponseDone(
            ModelResponse(
                id=response_id,
                output=[assistant_message(text)],
                usage=usage or Usage(10, 5, 15),
            )
        )
    )
    return events


def tool_turn(
    name: str,
    arguments: dict[str, Any] | None = None,
    call_id: str = "call_1",
    response_id: str = "resp_1",
    text: str = "",
    reasoning: str | None = None,
) -> list[StreamEvent]:
    """Events of a model turn that (optionally says something and) calls one tool."""
    args = json.dumps(arguments or {})
    events: list[StreamEvent] = []
    output = []
    if reasoning:
        events.append(ReasoningDelta(reasoning))
    if text:
        events.append(TextDelta(text))
        output.append(assistant_message(text))
    output.append({"type": "function_call", "call_id": call_id, "name": name, "arguments": args})
    events.append(ToolCallStart(call_id=call_id, name=name))
    events.append(ToolCallComplete(call_id=call_id, name=name, arguments=args))
    events.append(ResponseDone(ModelResponse(id=response_id, output=output, usage=Usage(10, 5, 15))))
    return events


class ScriptedModel:
    """Model that replays one scripted turn per request.

    A turn is a list of stream events; an exception instance in the list
    is raised when reached.  Every request is recorded.
    """

    def __init__(self, turns: list[list[Any]] | None = None) -> None:
        self.turns = list(turns or [])
        self.requests: list[ModelRequest] = []

    async def get_response(self, request: ModelRequest) -> ModelResponse:
        async for event in self.stream_response(request):
            if isinstance(event, ResponseDone):
                return event.response
        raise AssertionError("scripted turn has no ResponseDone")

    async def stream_response(self, request: ModelRequest):
        self.requests.append(request)
        if not self.turns:
            raise AssertionError("no scripted turn left")
        for event in self.turns.pop(0):
            if isinstance(event, BaseException):
                raise event
            yield event


class ScriptedProvider:
    def __init__(self, model: ScriptedModel) -> None:
        self.model = model
        self.requested_names: list[str | None] = []

    def get_model(self, name: str | None = None) -> ScriptedModel:
        self.requested_names.append(name)
        return self.model


def make_tool(
    name: str = "shell",
    output: Any = "ok",
    needs_approval: bool = False,
    error: Exception | None = None,
) -> Tool:
    """Tool whose executor is a MagicMock returning *output* (or raising *error*)."""
    execute = MagicMock(side_effect=error) if error else MagicMock(return_value=output)
    return Tool(
        name=name,
        description=f"Test tool {name}",
        parameters={"type": "object", "properties": {"command": {"type": "string"}}},
        execute=execute,
        needs_approval=lambda params, context: needs_approval,
    )


def make_registry(model: ScriptedModel, *, runner: bool = True) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(
        ProviderDefinition(
            id=SCRIPTED_PROVIDER,
            label="Scripted",
            create_runner=(lambda deps: Runner(ScriptedProvider(model))) if runner else (lambda deps: None),
            supports_conversation_chaining=False,
            clear_conversations=MagicMock(),
        )
    )
    return registry


def make_client(
    model: ScriptedModel,
    /,
    tools: list[Tool] | None = None,
    logging_service: LoggingService | None = None,
    **agent_overrides: Any,
) -> AgentRunClient:
    agent_overrides.setdefault("provider", SCRIPTED_PROVIDER)
    agent_overrides.setdefault("retry_attempts", 0)
    return AgentRunClient(
        settings_service=make_settings_service(**agent_overrides),
        logging_service=logging_service or LoggingService(logging.getLogger("termagent.tests")),
        registry=make_registry(model),
        conversation_store=ConversationStore(),
        tools=tools,
    )


def make_session(
    model: ScriptedModel,
    tools: list[Tool] | None = None,
    max_consecutive_tool_failures: int = 3,
    **agent_overrides: Any,
) -> ConversationSession:
    logging_service = LoggingService(logging.getLogger("termagent.tests"))
    return ConversationSession(
        agent_client=make_client(model, tools, logging_service, **agent_overrides),
        logging_service=logging_service,
        max_consecutive_tool_failures=max_consecutive_tool_failures,
    )


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def sse_body(*payloads: Any) -> bytes:
    """Server-sent-events body with one ``data:`` line per payload."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


def mock_http_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
