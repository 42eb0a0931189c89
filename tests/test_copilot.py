"""Tests for the SDK-driven (Copilot-style) adapter.

Tests cover:
- extract_text_delta overlap handling for resent chunks
- SuspendedToolCalls resolve-once semantics
- Streaming a plain answer through a fake SDK session
- Tool execution detaches the stream and resumes on function_call_output
- SDK-internal tools are left to the SDK
- Session errors and forgetting sessions
- Usage from session.usage and assistant.usage events
- github-copilot-sdk binding: tool trampolines, event conversion, client factory
"""

import asyncio
import sys
import types
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest

from termagent.logging_service import LoggingService
from termagent.protocol import (
    ErrorEvent,
    ModelRequest,
    ResponseDone,
    TextDelta,
    ToolCallComplete,
    ToolCallStart,
)
from termagent.providers import copilot_sdk
from termagent.providers.copilot import (
    CopilotModel,
    CopilotSessions,
    SuspendedToolCalls,
    extract_text_delta,
)
from termagent.providers.copilot_sdk import SdkCopilotClient, create_sdk_client_factory
from tests.conftest import make_settings_service

SHELL_TOOL = {"type": "function", "name": "shell", "description": "run", "parameters": {"type": "object"}}


# ---------------------------------------------------------------------------
# Fake SDK
# ---------------------------------------------------------------------------


class FakeCopilotSession:
    """Scripted SDK session.

    ``script`` holds one list of events per ``send``.  An event is either
    ``(type, data)`` or ``("tool", name, call_id, args, after)``, which
    emits ``tool.execution_start``, calls the registered handler and emits
    *after* once the handler returns.
    """

    def __init__(self, session_id: str, tools: list[dict[str, Any]], script: list[list[tuple]]) -> None:
        self.session_id = session_id
        self.tools = tools
        self.script = script
        self.handlers: list = []
        self.sent: list[dict[str, Any]] = []
        self.tool_results: dict[str, Any] = {}
        self.tasks: list[asyncio.Task] = []
        self.aborted = False

    def on(self, handler):
        self.handlers.append(handler)
        return lambda: self.handlers.remove(handler)

    def register_tools(self, tools):
        self.tools = tools

    def emit(self, kind: str, data: dict[str, Any]) -> None:
        for handler in list(self.handlers):
            handler({"type": kind, "data": data})

    def _dispatch(self, event: tuple) -> None:
        if event[0] != "tool":
            self.emit(event[0], event[1])
            return
        _, name, call_id, args, after = event
        self.emit("tool.execution_start", {"toolName": name, "toolCallId": call_id, "arguments": args})
        tool = next((t for t in self.tools if t["name"] == name), None)
        if tool is not None:
            self.tasks.append(asyncio.create_task(self._run_tool(tool, call_id, args, after)))
        else:
            for follow_up in after:
                self._dispatch(follow_up)

    async def _run_tool(self, tool, call_id, args, after) -> None:
        result = await tool["handler"](args, {"sessionId": self.session_id, "toolCallId": call_id})
        self.tool_results[call_id] = result
        for event in after:
            self._dispatch(event)

    async def send(self, message):
        self.sent.append(message)
        for event in self.script.pop(0):
            self._dispatch(event)

    async def abort(self):
        self.aborted = True


class FakeCopilotClient:
    def __init__(self, script: list[list[tuple]]) -> None:
        self.script = script
        self.sessions: list[FakeCopilotSession] = []
        self.configs: list[dict[str, Any]] = []

    async def create_session(self, config):
        self.configs.append(config)
        session = FakeCopilotSession(f"sess-{len(self.sessions) + 1}", config["tools"], self.script)
        self.sessions.append(session)
        return session

    async def resume_session(self, session_id, config):
        raise AssertionError("resume_session should not be needed for an active session")

    async def list_models(self):
        return [{"id": "gpt-4.1"}]


def _make_model(script: list[list[tuple]]):
    client = FakeCopilotClient(script)

    async def factory():
        return client

    sessions = CopilotSessions()
    model = CopilotModel(
        client_factory=factory,
        settings_service=make_settings_service(),
        logging_service=LoggingService(),
        sessions=sessions,
    )
    return model, client, sessions


async def _collect(model, request):
    return [event async for event in model.stream_response(request)]


# ---------------------------------------------------------------------------
# extract_text_delta
# ---------------------------------------------------------------------------


class TestExtractTextDelta:
    def test_resent_prefix_yields_only_suffix(self):
        accumulated = ""
        deltas = []
        for chunk in ["Hel", "Hello", "Hello!"]:
            delta = extract_text_delta(accumulated, chunk)
            accumulated += delta
            deltas.append(delta)
        assert deltas == ["Hel", "lo", "!"]
        assert accumulated == "Hello!"

    def test_tail_overlap(self):
        assert extract_text_delta("Hello wor", "world") == "ld"

    def test_no_overlap_is_fresh(self):
        assert extract_text_delta("Hello", " there") == " there"

    def test_empty_incoming(self):
        assert extract_text_delta("Hello", "") == ""

    def test_exact_repeat_is_dropped(self):
        assert extract_text_delta("Hello", "Hello") == ""


# ---------------------------------------------------------------------------
# SuspendedToolCalls
# ---------------------------------------------------------------------------


class TestSuspendedToolCalls:
    @pytest.mark.asyncio
    async def test_resolve_wakes_suspended_handler(self):
        calls = SuspendedToolCalls()
        waiter = asyncio.create_task(calls.suspend("s", "c"))
        await asyncio.sleep(0)
        assert calls.is_pending("s", "c")
        assert calls.resolve("s", "c", "result")
        assert await waiter == "result"

    @pytest.mark.asyncio
    async def test_resolve_before_suspend_is_kept(self):
        calls = SuspendedToolCalls()
        assert calls.resolve("s", "c", "early")
        assert await calls.suspend("s", "c") == "early"

    @pytest.mark.asyncio
    async def test_second_resolve_is_rejected(self):
        calls = SuspendedToolCalls()
        assert calls.resolve("s", "c", 1)
        assert not calls.resolve("s", "c", 2)

    @pytest.mark.asyncio
    async def test_discard_cancels_handlers(self):
        calls = SuspendedToolCalls()
        waiter = asyncio.create_task(calls.suspend("s", "c"))
        await asyncio.sleep(0)
        assert calls.pending("s") == ["c"]
        calls.discard("s")
        with pytest.raises(asyncio.CancelledError):
            await waiter


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestCopilotStream:
    @pytest.mark.asyncio
    async def test_plain_answer_dedupes_resent_text(self):
        model, client, _ = _make_model(
            [
                [
                    ("assistant.message_delta", {"deltaContent": "Hel"}),
                    ("assistant.message_delta", {"deltaContent": "Hello"}),
                    ("assistant.message_delta", {"deltaContent": "!"}),
                    ("session.usage", {"inputTokens": 10, "outputTokens": 5}),
                    ("session.idle", {}),
                ]
            ]
        )
        events = await _collect(model, ModelRequest(system_instructions="sys", input="hi", tools=[SHELL_TOOL]))

        assert [e.delta for e in events if isinstance(e, TextDelta)] == ["Hel", "lo", "!"]
        done = events[-1]
        assert isinstance(done, ResponseDone)
        assert done.response.output[-1]["content"][0]["text"] == "Hello!"
        assert done.response.usage.total_tokens == 15
        assert client.sessions[0].sent == [{"prompt": "hi"}]
        assert client.configs[0]["system_message"] == {"mode": "replace", "content": "sys"}

    @pytest.mark.asyncio
    async def test_tool_call_detaches_and_resumes(self):
        model, client, sessions = _make_model(
            [
                [
                    (
                        "tool",
                        "shell",
                        "tc1",
                        {"command": "ls"},
                        [("assistant.message_delta", {"deltaContent": "Listed."}), ("session.idle", {})],
                    )
                ]
            ]
        )
        first = await _collect(model, ModelRequest(system_instructions="", input="list", tools=[SHELL_TOOL]))

        assert isinstance(first[0], ToolCallStart)
        assert isinstance(first[1], ToolCallComplete)
        assert first[1].arguments == '{"command": "ls"}'
        response = first[-1].response
        assert response.output[-1]["type"] == "function_call"

        second = await _collect(
            model,
            ModelRequest(
                system_instructions="",
                input=[{"type": "function_call_output", "call_id": "tc1", "output": "file.txt"}],
                tools=[SHELL_TOOL],
                previous_response_id=response.id,
            ),
        )
        session = client.sessions[0]
        assert session.tool_results == {"tc1": "file.txt"}
        assert [e.delta for e in second if isinstance(e, TextDelta)] == ["Listed."]
        assert isinstance(second[-1], ResponseDone)
        # The output resolved the handler; no new prompt was sent
        assert session.sent == [{"prompt": "list"}]
        assert len(client.sessions) == 1
        assert sessions.session_map[second[-1].response.id] == session.session_id

    @pytest.mark.asyncio
    async def test_sdk_internal_tool_is_not_surfaced(self):
        model, _, _ = _make_model(
            [
                [
                    ("tool", "report_intent", "int1", {}, []),
                    ("assistant.message_delta", {"deltaContent": "ok"}),
                    ("session.idle", {}),
                ]
            ]
        )
        events = await _collect(model, ModelRequest(system_instructions="", input="hi", tools=[SHELL_TOOL]))
        assert not any(isinstance(e, (ToolCallStart, ToolCallComplete)) for e in events)
        assert isinstance(events[-1], ResponseDone)

    @pytest.mark.asyncio
    async def test_session_error(self):
        model, _, sessions = _make_model([[("session.error", {"message": "auth expired"})]])
        events = await _collect(model, ModelRequest(system_instructions="", input="hi"))
        assert events == [ErrorEvent(message="auth expired")]
        assert sessions.active == {}

    @pytest.mark.asyncio
    async def test_forget_drops_session_mapping(self):
        model, _, sessions = _make_model([[("session.idle", {})]])
        events = await _collect(model, ModelRequest(system_instructions="", input="hi"))
        response_id = events[-1].response.id
        assert response_id in sessions.session_map

        sessions.forget(response_id)
        assert sessions.session_map == {}
        assert sessions.active == {}

    @pytest.mark.asyncio
    async def test_assistant_usage_is_reported(self):
        model, _, _ = _make_model(
            [
                [
                    ("assistant.message_delta", {"deltaContent": "ok"}),
                    ("assistant.usage", {"inputTokens": 120, "outputTokens": 30}),
                    ("session.idle", {}),
                ]
            ]
        )
        events = await _collect(model, ModelRequest(system_instructions="", input="hi"))
        usage = events[-1].response.usage
        assert (usage.input_tokens, usage.output_tokens, usage.total_tokens) == (120, 30, 150)


# ---------------------------------------------------------------------------
# github-copilot-sdk binding
# ---------------------------------------------------------------------------


@dataclass
class FakeSdkTool:
    name: str
    description: str
    parameters: Any
    handler: Any


class FakeSdkEvent:
    def __init__(self, kind: str, data: dict[str, Any]) -> None:
        self.kind = kind
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        return {"id": "evt-1", "type": self.kind, "data": self.data}


class FakeSdkSession:
    def __init__(self, events: list[FakeSdkEvent]) -> None:
        self.session_id = "sdk-1"
        self.events = events
        self.handlers: list = []
        self.sent: list[dict[str, Any]] = []
        self.aborted = False

    def on(self, handler):
        self.handlers.append(handler)
        return lambda: self.handlers.remove(handler)

    async def send(self, message):
        self.sent.append(message)
        for event in self.events:
            for handler in list(self.handlers):
                handler(event)

    async def abort(self):
        self.aborted = True


class FakeSdkClient:
    def __init__(self, events: list[FakeSdkEvent] | None = None) -> None:
        self.session = FakeSdkSession(events or [])
        self.configs: list[dict[str, Any]] = []
        self.started = 0

    async def start(self):
        self.started += 1

    async def create_session(self, config):
        self.configs.append(config)
        return self.session

    async def resume_session(self, session_id, config):
        self.configs.append(config)
        return self.session

    async def list_models(self):
        return [SimpleNamespace(id="gpt-4.1", name="GPT-4.1")]


def _shell_spec(handler) -> dict[str, Any]:
    return {"name": "shell", "description": "run", "parameters": {"type": "object"}, "handler": handler}


class TestSdkBinding:
    @pytest.mark.asyncio
    async def test_tools_are_registered_as_sdk_tools(self):
        sdk = FakeSdkClient()
        handler = AsyncMock(return_value="file.txt")
        client = SdkCopilotClient(sdk, FakeSdkTool)
        await client.create_session({"model": "gpt-4.1", "tools": [_shell_spec(handler)]})

        [tool] = sdk.configs[0]["tools"]
        assert isinstance(tool, FakeSdkTool)
        assert (tool.name, tool.description, sdk.configs[0]["model"]) == ("shell", "run", "gpt-4.1")

        result = await tool.handler(
            {"session_id": "sdk-1", "tool_call_id": "tc1", "tool_name": "shell", "arguments": {"command": "ls"}}
        )
        handler.assert_awaited_once_with({"command": "ls"}, {"sessionId": "sdk-1", "toolCallId": "tc1"})
        assert result == {"textResultForLlm": "file.txt", "resultType": "success"}

    @pytest.mark.asyncio
    async def test_register_tools_retargets_handlers(self):
        sdk = FakeSdkClient()
        client = SdkCopilotClient(sdk, FakeSdkTool)
        session = await client.create_session({"tools": [_shell_spec(AsyncMock(return_value="old"))]})

        session.register_tools([_shell_spec(AsyncMock(return_value={"ok": True}))])
        [tool] = sdk.configs[0]["tools"]
        result = await tool.handler({"session_id": "sdk-1", "tool_call_id": "tc2", "arguments": {}})
        assert result["textResultForLlm"] == '{"ok": true}'

    @pytest.mark.asyncio
    async def test_events_are_plain_dicts(self):
        sdk = FakeSdkClient()
        session = await SdkCopilotClient(sdk, FakeSdkTool).create_session({})
        seen = []
        unsubscribe = session.on(seen.append)

        sdk.session.handlers[0](FakeSdkEvent("assistant.message_delta", {"deltaContent": "Hi"}))
        assert seen == [{"type": "assistant.message_delta", "data": {"deltaContent": "Hi"}}]
        unsubscribe()
        assert sdk.session.handlers == []

    @pytest.mark.asyncio
    async def test_list_models(self):
        models = await SdkCopilotClient(FakeSdkClient(), FakeSdkTool).list_models()
        assert models == [{"id": "gpt-4.1", "name": "GPT-4.1"}]

    @pytest.mark.asyncio
    async def test_stream_through_sdk_client(self):
        sdk = FakeSdkClient(
            [
                FakeSdkEvent("assistant.message_delta", {"deltaContent": "Hello"}),
                FakeSdkEvent("assistant.usage", {"inputTokens": 7, "outputTokens": 3}),
                FakeSdkEvent("session.idle", {}),
            ]
        )
        client = SdkCopilotClient(sdk, FakeSdkTool)

        async def factory():
            return client

        model = CopilotModel(
            client_factory=factory,
            settings_service=make_settings_service(),
            logging_service=LoggingService(),
            sessions=CopilotSessions(),
        )
        events = await _collect(model, ModelRequest(system_instructions="sys", input="hi", tools=[SHELL_TOOL]))

        assert [e.delta for e in events if isinstance(e, TextDelta)] == ["Hello"]
        assert events[-1].response.usage.total_tokens == 10
        assert sdk.session.sent == [{"prompt": "hi"}]
        assert sdk.session.handlers == []


class TestSdkClientFactory:
    def test_missing_sdk_leaves_provider_unconfigured(self, monkeypatch):
        monkeypatch.setattr(copilot_sdk, "find_spec", lambda name: None)
        assert create_sdk_client_factory(LoggingService()) is None

    @pytest.mark.asyncio
    async def test_client_is_started_once(self, monkeypatch):
        sdk = FakeSdkClient()
        package = types.ModuleType("copilot")
        package.CopilotClient = lambda: sdk
        sdk_types = types.ModuleType("copilot.types")
        sdk_types.Tool = FakeSdkTool
        monkeypatch.setitem(sys.modules, "copilot", package)
        monkeypatch.setitem(sys.modules, "copilot.types", sdk_types)
        monkeypatch.setattr(copilot_sdk, "find_spec", lambda name: object())

        factory = create_sdk_client_factory(LoggingService())
        first = await factory()
        second = await factory()

        assert first is second
        assert isinstance(first, SdkCopilotClient)
        assert sdk.started == 1
