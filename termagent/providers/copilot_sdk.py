"""Binding of the Copilot adapter to the ``github-copilot-sdk`` package.

The SDK is an optional extra (``pip install termagent[copilot]``).  It
delivers typed event objects and calls tool handlers with a
``ToolInvocation`` mapping; these wrappers turn both into the plain dict
shapes ``CopilotModel`` consumes.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from importlib.util import find_spec
from typing import Any

from termagent.logging_service import LoggingService
from termagent.providers.copilot import CopilotClientFactory

SDK_MODULE = "copilot"

ToolHandler = Callable[[Any, dict[str, Any]], Awaitable[Any]]


def event_payload(event: Any) -> dict[str, Any]:
    """SDK session event as ``{"type": ..., "data": {...}}`` with camelCase data keys."""
    if isinstance(event, dict):
        return event
    payload = event.to_dict()
    return {"type": payload.get("type"), "data": payload.get("data") or {}}


def tool_result(output: Any) -> dict[str, Any]:
    text = output if isinstance(output, str) else json.dumps(output)
    return {"textResultForLlm": text, "resultType": "success"}


class SdkSession:
    """``CopilotSession`` over an SDK session object."""

    def __init__(self, session: Any, handlers: dict[str, ToolHandler]) -> None:
        self._session = session
        self._handlers = handlers

    @property
    def session_id(self) -> str:
        return self._session.session_id

    def on(self, handler: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
        return self._session.on(lambda event: handler(event_payload(event)))

    def register_tools(self, tools: list[dict[str, Any]]) -> None:
        # The SDK keeps the trampolines from session creation; only the targets change
        for spec in tools:
            self._handlers[spec["name"]] = spec["handler"]

    async def send(self, message: dict[str, Any]) -> None:
        await self._session.send(message)

    async def abort(self) -> None:
        await self._session.abort()


class SdkCopilotClient:
    """``CopilotSessionClient`` over an SDK ``CopilotClient``.

    *tool_type* is the SDK's ``Tool`` class; it is passed in so the
    adapter can be built without importing the SDK.
    """

    def __init__(self, client: Any, tool_type: Callable[..., Any]) -> None:
        self._client = client
        self._tool_type = tool_type

    def _trampoline(self, name: str, handlers: dict[str, ToolHandler]):
        async def handler(invocation: dict[str, Any]) -> dict[str, Any]:
            output = await handlers[name](
                invocation.get("arguments"),
                {"sessionId": invocation.get("session_id"), "toolCallId": invocation.get("tool_call_id")},
            )
            return tool_result(output)

        return handler

    def _sdk_config(self, config: dict[str, Any], handlers: dict[str, ToolHandler]) -> dict[str, Any]:
        tools = []
        for spec in config.get("tools") or []:
            handlers[spec["name"]] = spec["handler"]
            tools.append(
                self._tool_type(
                    name=spec["name"],
                    description=spec.get("description", ""),
                    parameters=spec.get("parameters"),
                    handler=self._trampoline(spec["name"], handlers),
                )
            )
        return {**config, "tools": tools}

    async def create_session(self, config: dict[str, Any]) -> SdkSession:
        handlers: dict[str, ToolHandler] = {}
        session = await self._client.create_session(self._sdk_config(config, handlers))
        return SdkSession(session, handlers)

    async def resume_session(self, session_id: str, config: dict[str, Any]) -> SdkSession:
        handlers: dict[str, ToolHandler] = {}
        session = await self._client.resume_session(session_id, self._sdk_config(config, handlers))
        return SdkSession(session, handlers)

    async def list_models(self) -> list[dict[str, Any]]:
        models = await self._client.list_models()
        return [
            model if isinstance(model, dict) else {"id": model.id, "name": getattr(model, "name", None)}
            for model in models
        ]

    async def stop(self) -> None:
        await self._client.stop()


def create_sdk_client_factory(logging_service: LoggingService) -> CopilotClientFactory | None:
    """Factory starting one shared SDK client on first use.

    Returns None when the SDK package is not installed, which leaves the
    github-copilot provider unconfigured.
    """
    if find_spec(SDK_MODULE) is None:
        logging_service.debug("github-copilot-sdk is not installed")
        return None

    client: SdkCopilotClient | None = None
    lock = asyncio.Lock()

    async def factory() -> SdkCopilotClient:
        nonlocal client
        async with lock:
            if client is None:
                from copilot import CopilotClient
                from copilot.types import Tool

                sdk = CopilotClient()
                try:
                    await sdk.start()
                except Exception as e:
                    logging_service.error("GitHub Copilot SDK client failed to start", error=str(e))
                    raise
                logging_service.info("GitHub Copilot SDK client started")
                client = SdkCopilotClient(sdk, Tool)
        return client

    return factory
