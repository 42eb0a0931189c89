"""Adapter for a session-oriented agent SDK (GitHub Copilot style).

The SDK runs its own tool loop: it calls a registered handler for each
tool and waits for the handler's result.  Tools that need our approval gate
are registered with handlers that suspend on a SuspendedToolCalls entry.
When the SDK starts such a tool, the adapter closes the current stream
segment with a ResponseDone carrying the function call.  The agent loop
then runs (or rejects) the tool and sends the output back as a
``function_call_output`` item on the next request, which resolves the
suspended handler and lets the SDK carry on in the same session.

The SDK client is injected (``CopilotSessionClient``); it owns process
management and authentication.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from termagent.config import SettingsService
from termagent.errors import CancellationError, ProviderError
from termagent.logging_service import LoggingService
from termagent.protocol import (
    ErrorEvent,
    Item,
    ModelRequest,
    ModelResponse,
    ReasoningDelta,
    ResponseDone,
    StreamEvent,
    TextDelta,
    ToolCallComplete,
    ToolCallStart,
    message_text,
)
from termagent.providers.openrouter import build_output
from termagent.usage import Usage, normalize_usage


class CopilotSession(Protocol):
    session_id: str

    def on(self, handler: Callable[[dict[str, Any]], None]) -> Callable[[], None]: ...

    def register_tools(self, tools: list[dict[str, Any]]) -> None: ...

    async def send(self, message: dict[str, Any]) -> None: ...

    async def abort(self) -> None: ...


class CopilotSessionClient(Protocol):
    async def create_session(self, config: dict[str, Any]) -> CopilotSession: ...

    async def resume_session(self, session_id: str, config: dict[str, Any]) -> CopilotSession: ...

    async def list_models(self) -> list[dict[str, Any]]: ...


CopilotClientFactory = Callable[[], Awaitable[CopilotSessionClient]]


def extract_text_delta(accumulated: str, incoming: str) -> str:
    """Return the part of *incoming* not already present in *accumulated*.

    The SDK sometimes resends text it already delivered.  If *incoming*
    extends the whole accumulated text, or overlaps its tail, only the new
    suffix is returned; with no overlap the chunk is a fresh delta.
    """
    if not incoming:
        return ""
    if not accumulated:
        return incoming
    if incoming.startswith(accumulated):
        return incoming[len(accumulated):]

    for size in range(min(len(accumulated), len(incoming)), 0, -1):
        if accumulated.endswith(incoming[:size]):
            return incoming[size:]
    return incoming


# ---------------------------------------------------------------------------
# Suspended tool calls
# ---------------------------------------------------------------------------


class SuspensionState(StrEnum):
    PENDING = "pending"
    RESOLVED = "resolved"


@dataclass
class SuspendedCall:
    session_id: str
    call_id: str
    future: asyncio.Future
    state: SuspensionState = SuspensionState.PENDING


class SuspendedToolCalls:
    """Tool handlers waiting on an externally supplied result.

    Each (session, call) entry resolves at most once.  A result that
    arrives before the SDK has invoked the handler is kept, and the
    handler returns it immediately.
    """

    def __init__(self) -> None:
        self._calls: dict[tuple[str, str], SuspendedCall] = {}

    def _entry(self, session_id: str, call_id: str) -> SuspendedCall:
        key = (session_id, call_id)
        if key not in self._calls:
            future = asyncio.get_running_loop().create_future()
            self._calls[key] = SuspendedCall(session_id=session_id, call_id=call_id, future=future)
        return self._calls[key]

    async def suspend(self, session_id: str, call_id: str) -> Any:
        entry = self._entry(session_id, call_id)
        try:
            return await entry.future
        finally:
            self._calls.pop((session_id, call_id), None)

    def resolve(self, session_id: str, call_id: str, result: Any) -> bool:
        """Hand *result* to the suspended handler.  False if already resolved."""
        entry = self._entry(session_id, call_id)
        if entry.state is SuspensionState.RESOLVED or entry.future.done():
            return False
        entry.state = SuspensionState.RESOLVED
        entry.future.set_result(result)
        return True

    def is_pending(self, session_id: str, call_id: str) -> bool:
        entry = self._calls.get((session_id, call_id))
        return entry is not None and entry.state is SuspensionState.PENDING

    def pending(self, session_id: str) -> list[str]:
        return [
            call.call_id
            for call in self._calls.values()
            if call.session_id == session_id and call.state is SuspensionState.PENDING
        ]

    def discard(self, session_id: str) -> None:
        """Cancel every unresolved handler of a session."""
        for key in [k for k in self._calls if k[0] == session_id]:
            entry = self._calls.pop(key)
            if not entry.future.done():
                entry.future.cancel()


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


@dataclass
class _SegmentState:
    text: str = ""
    reasoning: str = ""
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, Any] | None = None


@dataclass
class CopilotSessions:
    """State shared by every model handed out by one provider."""

    session_map: dict[str, str] = field(default_factory=dict)  # response id -> session id
    active: dict[str, CopilotSession] = field(default_factory=dict)
    suspended: SuspendedToolCalls = field(default_factory=SuspendedToolCalls)
    detached: set[tuple[str, str]] = field(default_factory=set)  # (session id, call id)

    def forget(self, response_id: str | None = None) -> None:
        if response_id is None:
            for session_id in list(self.active):
                self.suspended.discard(session_id)
            self.session_map.clear()
            self.active.clear()
            self.detached.clear()
            return
        session_id = self.session_map.pop(response_id, None)
        if session_id:
            self.active.pop(session_id, None)
            self.suspended.discard(session_id)
            self.detached = {pair for pair in self.detached if pair[0] != session_id}
            for token in [t for t, s in self.session_map.items() if s == session_id]:
                del self.session_map[token]


class CopilotModel:
    provider_name = "GitHub Copilot"

    def __init__(
        self,
        *,
        client_factory: CopilotClientFactory,
        settings_service: SettingsService,
        logging_service: LoggingService,
        sessions: CopilotSessions,
        model_id: str | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._settings = settings_service
        self._log = logging_service
        self._sessions = sessions
        self.model_id = model_id or settings_service.get("agent.copilot.model") or "gpt-4.1"
        self._client: CopilotSessionClient | None = None

    async def _get_client(self) -> CopilotSessionClient:
        if self._client is None:
            self._client = await self._client_factory()
        return self._client

    def _tool_specs(self, request: ModelRequest) -> list[dict[str, Any]]:
        suspended = self._sessions.suspended

        def make_handler(name: str):
            async def handler(args: Any, invocation: dict[str, Any]) -> Any:
                self._log.debug("Copilot tool suspended", tool=name, call_id=invocation.get("toolCallId"))
                return await suspended.suspend(invocation["sessionId"], invocation["toolCallId"])

            return handler

        return [
            {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
                "handler": make_handler(tool["name"]),
            }
            for tool in request.tools
            if tool.get("type") == "function"
        ]

    async def _open_session(self, request: ModelRequest, tools: list[dict[str, Any]]) -> CopilotSession:
        client = await self._get_client()
        previous = request.previous_response_id
        session_id = self._sessions.session_map.get(previous) if previous else None

        if session_id and session_id in self._sessions.active:
            session = self._sessions.active[session_id]
            session.register_tools(tools)
            return session
        if session_id:
            self._log.debug("Resuming Copilot session", session_id=session_id)
            session = await client.resume_session(session_id, {"streaming": True, "tools": tools})
        else:
            session = await client.create_session(
                {
                    "model": self.model_id,
                    "streaming": True,
                    "tools": tools,
                    "available_tools": [t["name"] for t in tools],
                    "system_message": {"mode": "replace", "content": request.system_instructions},
                }
            )
        self._sessions.active[session.session_id] = session
        return session

    def _resolve_tool_outputs(self, session_id: str, items: str | list[Item]) -> bool:
        """Resolve suspended handlers from ``function_call_output`` items."""
        if isinstance(items, str):
            return False
        resumed = False
        for item in items:
            if item.get("type") != "function_call_output":
                continue
            call_id = item.get("call_id")
            if call_id and (session_id, call_id) in self._sessions.detached:
                self._sessions.detached.discard((session_id, call_id))
                self._sessions.suspended.resolve(session_id, call_id, item.get("output"))
                resumed = True
        return resumed

    @staticmethod
    def _prompt(items: str | list[Item]) -> str:
        if isinstance(items, str):
            return items
        for item in reversed(items):
            if item.get("role") == "user":
                return message_text(item)
        return ""

    def _finish(self, response_id: str, state: _SegmentState) -> ResponseDone:
        return ResponseDone(
            response=ModelResponse(
                id=response_id,
                output=build_output(state.text, state.tool_calls, state.reasoning or None),
                usage=normalize_usage(state.usage) if state.usage else Usage(),
            )
        )

    async def get_response(self, request: ModelRequest) -> ModelResponse:
        response: ModelResponse | None = None
        async for event in self.stream_response(request):
            if isinstance(event, ErrorEvent):
                raise ProviderError(event.message, status=event.status)
            if isinstance(event, ResponseDone):
                response = event.response
        return response or ModelResponse(id=str(uuid.uuid4()))

    async def stream_response(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        tools = self._tool_specs(request)
        user_tools = {t["name"] for t in tools}
        try:
            session = await self._open_session(request, tools)
        except Exception as e:
            self._log.error("Copilot session creation failed", error=str(e))
            yield ErrorEvent(message=f"Failed to create/resume Copilot session: {e}")
            return

        response_id = str(uuid.uuid4())
        self._sessions.session_map[response_id] = session.session_id
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        unsubscribe = session.on(queue.put_nowait)
        state = _SegmentState()

        try:
            if not self._resolve_tool_outputs(session.session_id, request.input):
                prompt = self._prompt(request.input)
                if prompt:
                    try:
                        await session.send({"prompt": prompt})
                    except Exception as e:
                        self._log.error("Copilot send failed", error=str(e))
                        self._sessions.active.pop(session.session_id, None)
                        yield ErrorEvent(message=f"Failed to send message: {e}")
                        return

            while True:
                get = queue.get()
                event = await (request.signal.run(get) if request.signal else get)
                kind = event.get("type")
                data = event.get("data") or {}

                if kind == "assistant.message_delta":
                    delta = extract_text_delta(state.text, data.get("deltaContent") or "")
                    if delta:
                        state.text += delta
                        yield TextDelta(delta=delta)
                elif kind == "assistant.reasoning_delta":
                    if data.get("deltaContent"):
                        state.reasoning += data["deltaContent"]
                        yield ReasoningDelta(delta=data["deltaContent"])
                elif kind == "tool.execution_start":
                    name = data.get("toolName", "")
                    if name not in user_tools:
                        # SDK-internal tool; the SDK runs it and keeps streaming
                        continue
                    args = data.get("arguments", data.get("args"))
                    call = {
                        "call_id": data.get("toolCallId") or data.get("callId") or str(uuid.uuid4()),
                        "name": name,
                        "arguments": args if isinstance(args, str) else json.dumps(args or {}),
                    }
                    state.tool_calls.append(call)
                    self._sessions.detached.add((session.session_id, call["call_id"]))
                    self._log.debug("Detaching stream for tool execution", tool=name, call_id=call["call_id"])
                    yield ToolCallStart(call_id=call["call_id"], name=name)
                    yield ToolCallComplete(call_id=call["call_id"], name=name, arguments=call["arguments"])
                    yield self._finish(response_id, state)
                    return
                elif kind in ("session.usage", "assistant.usage"):
                    state.usage = data
                elif kind == "session.idle":
                    yield self._finish(response_id, state)
                    return
                elif kind == "session.error":
                    message = data.get("message") or "Unknown error"
                    self._log.error("Copilot session error", error=message)
                    self._sessions.active.pop(session.session_id, None)
                    self._sessions.suspended.discard(session.session_id)
                    yield ErrorEvent(message=message)
                    return
        except CancellationError:
            self._sessions.active.pop(session.session_id, None)
            self._sessions.suspended.discard(session.session_id)
            await session.abort()
            raise
        finally:
            unsubscribe()


class CopilotProvider:
    def __init__(
        self,
        client_factory: CopilotClientFactory,
        settings_service: SettingsService,
        logging_service: LoggingService,
        sessions: CopilotSessions | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._settings = settings_service
        self._log = logging_service
        self.sessions = sessions or CopilotSessions()
        self._models: dict[str | None, CopilotModel] = {}

    def get_model(self, name: str | None = None) -> CopilotModel:
        if name not in self._models:
            self._models[name] = CopilotModel(
                client_factory=self._client_factory,
                settings_service=self._settings,
                logging_service=self._log,
                sessions=self.sessions,
                model_id=name,
            )
        return self._models[name]
