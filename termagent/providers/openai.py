"""OpenAI Responses API adapter.

The Responses API keeps conversation state server-side, so continuation is
native: ``previous_response_id`` is forwarded and only new input items are
sent.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx

from termagent.config import SettingsService
from termagent.errors import ConfigurationError
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
from termagent.providers.http import RetryPolicy, Sleep, send_with_retry
from termagent.providers.openrouter import build_http_client
from termagent.providers.sse import iter_sse_data, parse_json_payload
from termagent.usage import normalize_usage

DEFAULT_BASE_URL = "https://api.openai.com/v1"

# Tools executed by OpenAI itself; forwarded as-is
HOSTED_TOOL_TYPES = frozenset({"web_search", "web_search_preview", "file_search", "code_interpreter"})

_REASONING_DELTA_EVENTS = frozenset(
    {"response.reasoning_summary_text.delta", "response.reasoning_text.delta"}
)


def to_responses_input(items: list[Item]) -> list[dict[str, Any]]:
    """Convert provider-neutral items into Responses API input items."""
    converted: list[dict[str, Any]] = []
    for item in items:
        kind = item.get("type")
        role = item.get("role")
        if kind == "message" and role == "user":
            converted.append({"role": "user", "content": message_text(item)})
        elif kind == "message" and role == "assistant":
            converted.append(
                {
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": message_text(item)}],
                }
            )
        elif kind == "function_call":
            converted.append(
                {
                    "type": "function_call",
                    "call_id": item.get("call_id"),
                    "name": item.get("name"),
                    "arguments": item.get("arguments") or "",
                }
            )
        elif kind in ("function_call_output", "function_call_result"):
            output = item.get("output")
            converted.append(
                {
                    "type": "function_call_output",
                    "call_id": item.get("call_id"),
                    "output": output if isinstance(output, str) else str(output or ""),
                }
            )
        elif kind == "reasoning":
            raw = item.get("provider_data") or {}
            # Only native Responses reasoning items can be replayed
            if raw.get("type") == "reasoning":
                converted.append(raw)
    return converted


def from_responses_output(output: list[dict[str, Any]]) -> list[Item]:
    items: list[Item] = []
    for raw in output or []:
        kind = raw.get("type")
        if kind == "message":
            text = "".join(
                part.get("text", "") for part in raw.get("content") or [] if part.get("type") == "output_text"
            )
            items.append(
                {
                    "type": "message",
                    "role": "assistant",
                    "id": raw.get("id"),
                    "content": [{"type": "output_text", "text": text}],
                }
            )
        elif kind == "function_call":
            items.append(
                {
                    "type": "function_call",
                    "id": raw.get("id"),
                    "call_id": raw.get("call_id"),
                    "name": raw.get("name"),
                    "arguments": raw.get("arguments") or "",
                    "status": raw.get("status", "completed"),
                }
            )
        elif kind == "reasoning":
            summary = [
                {"type": "input_text", "text": part.get("text", "")}
                for part in raw.get("summary") or []
                if part.get("text")
            ]
            items.append({"type": "reasoning", "id": raw.get("id"), "content": summary, "provider_data": raw})
        else:
            items.append({"type": "hosted_tool_call", "id": raw.get("id"), "provider_data": raw})
    return items


def serialize_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    serialized = []
    for tool in tools or []:
        kind = tool.get("type")
        if kind == "function":
            serialized.append(
                {
                    "type": "function",
                    "name": tool.get("name"),
                    "description": tool.get("description"),
                    "parameters": tool.get("parameters"),
                    "strict": bool(tool.get("strict")),
                }
            )
        elif kind in HOSTED_TOOL_TYPES:
            serialized.append(dict(tool))
    return serialized


class OpenAIResponsesModel:
    """Model adapter for ``POST /responses``."""

    provider_name = "OpenAI"

    def __init__(
        self,
        *,
        settings_service: SettingsService,
        logging_service: LoggingService,
        model_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._settings = settings_service
        self._log = logging_service
        self.model_id = model_id or settings_service.get("agent.model") or "gpt-5.1"
        self._http = http_client
        self._owns_http = http_client is None
        self._retry_policy = retry_policy or RetryPolicy.from_settings(settings_service)
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = build_http_client(self._settings)
        return self._http

    def _headers(self) -> dict[str, str]:
        api_key = self._settings.get("agent.openai.api_key")
        if not api_key:
            raise ConfigurationError("OpenAI API key is not configured. Set OPENAI_API_KEY.")
        return {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}

    def _body(self, request: ModelRequest, stream: bool) -> dict[str, Any]:
        if isinstance(request.input, str):
            input_items: str | list[dict[str, Any]] = request.input
        else:
            input_items = to_responses_input(request.input)

        body: dict[str, Any] = {
            "model": self.model_id,
            "input": input_items,
            "stream": stream,
            "store": True,
        }
        if request.system_instructions:
            body["instructions"] = request.system_instructions
        if request.previous_response_id:
            body["previous_response_id"] = request.previous_response_id

        tools = serialize_tools(request.tools)
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"

        settings = request.model_settings
        if settings.temperature is not None:
            body["temperature"] = settings.temperature
        if settings.top_p is not None:
            body["top_p"] = settings.top_p
        if settings.max_tokens is not None:
            body["max_output_tokens"] = settings.max_tokens
        # "default" leaves the choice to the model
        if settings.reasoning_effort and settings.reasoning_effort not in ("default", "none"):
            body["reasoning"] = {"effort": settings.reasoning_effort, "summary": "auto"}
        if self._settings.get("agent.openai.use_flex_service_tier", False):
            body["service_tier"] = "flex"
        return body

    async def _send(self, request: ModelRequest, body: dict[str, Any], stream: bool) -> httpx.Response:
        client = self._client()
        headers = self._headers()
        base_url = (self._settings.get("agent.openai.base_url") or DEFAULT_BASE_URL).rstrip("/")
        return await send_with_retry(
            client,
            lambda: client.build_request("POST", f"{base_url}/responses", json=body, headers=headers),
            provider=self.provider_name,
            policy=self._retry_policy,
            signal=request.signal,
            stream=stream,
            sleep=self._sleep,
        )

    @staticmethod
    def _to_model_response(payload: dict[str, Any]) -> ModelResponse:
        return ModelResponse(
            id=payload.get("id") or str(uuid.uuid4()),
            output=from_responses_output(payload.get("output") or []),
            usage=normalize_usage(payload.get("usage")),
        )

    async def get_response(self, request: ModelRequest) -> ModelResponse:
        response = await self._send(request, self._body(request, stream=False), stream=False)
        return self._to_model_response(response.json())

    async def stream_response(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        body = self._body(request, stream=True)
        self._log.debug(
            "Responses stream start",
            model=self.model_id,
            chained=bool(request.previous_response_id),
            tools=len(body.get("tools", [])),
        )
        response = await self._send(request, body, stream=True)
        lines = response.aiter_lines()
        if request.signal is not None:
            lines = request.signal.guard(lines)

        try:
            async for data in iter_sse_data(lines):
                event = parse_json_payload(data)
                if event is None:
                    continue
                kind = event.get("type", "")

                if kind == "response.output_text.delta":
                    if event.get("delta"):
                        yield TextDelta(delta=event["delta"])
                elif kind in _REASONING_DELTA_EVENTS:
                    if event.get("delta"):
                        yield ReasoningDelta(delta=event["delta"])
                elif kind == "response.output_item.added":
                    item = event.get("item") or {}
                    if item.get("type") == "function_call":
                        yield ToolCallStart(call_id=item.get("call_id", ""), name=item.get("name", ""))
                elif kind == "response.output_item.done":
                    item = event.get("item") or {}
                    if item.get("type") == "function_call":
                        yield ToolCallComplete(
                            call_id=item.get("call_id", ""),
                            name=item.get("name", ""),
                            arguments=item.get("arguments") or "",
                        )
                elif kind in ("response.completed", "response.incomplete"):
                    result = self._to_model_response(event.get("response") or {})
                    self._log.debug("Responses stream done", response_id=result.id)
                    yield ResponseDone(response=result)
                    return
                elif kind == "response.failed":
                    error = (event.get("response") or {}).get("error") or {}
                    yield ErrorEvent(message=f"OpenAI response failed: {error.get('message', 'unknown error')}")
                    return
                elif kind == "error":
                    yield ErrorEvent(message=f"OpenAI stream error: {event.get('message', 'unknown error')}")
                    return
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None


class OpenAIProvider:
    def __init__(self, settings_service: SettingsService, logging_service: LoggingService) -> None:
        self._settings = settings_service
        self._log = logging_service
        self._models: dict[str | None, OpenAIResponsesModel] = {}

    def get_model(self, name: str | None = None) -> OpenAIResponsesModel:
        if name not in self._models:
            self._models[name] = OpenAIResponsesModel(
                settings_service=self._settings, logging_service=self._log, model_id=name
            )
        return self._models[name]

    async def aclose(self) -> None:
        for model in self._models.values():
            await model.aclose()
        self._models.clear()
