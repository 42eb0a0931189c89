"""Chat Completions adapter (OpenRouter and other OpenAI-compatible endpoints).

Chat Completions has no server-side response chaining, so the adapter
emulates it: the ConversationStore holds the wire history recorded under
each response id, and a request naming ``previous_response_id`` replays
that history ahead of its own input.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from termagent.config import SettingsService
from termagent.conversation.store import ConversationStore
from termagent.errors import ConfigurationError, ProviderError
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
)
from termagent.providers import chat_format
from termagent.providers.http import RetryPolicy, Sleep, send_with_retry
from termagent.providers.sse import DONE, iter_sse_data, parse_json_payload
from termagent.usage import normalize_usage

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "No response from model."

# reasoning_details entry type -> field that carries its streamed text
REASONING_FIELDS = {
    "reasoning.text": "text",
    "reasoning.summary": "summary",
    "reasoning.encrypted": "data",
}


def build_http_client(settings_service: SettingsService) -> httpx.AsyncClient:
    timeout = httpx.Timeout(
        connect=float(settings_service.get("api_timeout_connect", 10.0)),
        read=float(settings_service.get("api_timeout_read", 300.0)),
        write=10.0,
        pool=10.0,
    )
    limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
    return httpx.AsyncClient(timeout=timeout, limits=limits)


@dataclass
class _StreamState:
    text: str = ""
    response_id: str | None = None
    usage: dict[str, Any] | None = None
    reasoning_text: str = ""
    reasoning_details: list[dict[str, Any]] = field(default_factory=list)
    tool_calls: dict[int, dict[str, Any]] = field(default_factory=dict)
    announced: set[int] = field(default_factory=set)


def _reasoning_items(details: list[dict[str, Any]] | None) -> list[Item]:
    items: list[Item] = []
    for position, detail in enumerate(details or []):
        index = detail.get("index", position)
        item: Item = {
            "type": "reasoning",
            "id": detail.get("id") or f"reasoning-{uuid.uuid4().hex[:8]}-{index}",
            "content": [],
            "provider_data": detail,
        }
        text = None
        if detail.get("type") == "reasoning.text":
            text = detail.get("text")
        elif detail.get("type") == "reasoning.summary":
            text = detail.get("summary")
        if text:
            item["content"].append({"type": "input_text", "text": text})
        items.append(item)
    return items


def build_output(
    text: str,
    tool_calls: list[dict[str, Any]],
    reasoning_text: str | None = None,
    reasoning_details: list[dict[str, Any]] | None = None,
    fallback: str | None = None,
) -> list[Item]:
    """Provider-neutral output items for one completion.

    Reasoning text and blocks are copied onto the assistant message and
    every function call so that replaying history can put them back on
    the assistant ``tool_calls`` message.
    """
    carried: dict[str, Any] = {}
    if reasoning_text:
        carried["reasoning"] = reasoning_text
    if reasoning_details:
        carried["reasoning_details"] = reasoning_details

    output = _reasoning_items(reasoning_details)
    if not text and not tool_calls and fallback:
        text = fallback
    if text:
        output.append(
            {
                "type": "message",
                "role": "assistant",
                "status": "completed",
                "content": [{"type": "output_text", "text": text}],
                **carried,
            }
        )
    for call in tool_calls:
        output.append(
            {
                "type": "function_call",
                "call_id": call["call_id"],
                "name": call["name"],
                "arguments": chat_format.decode_html_entities(call.get("arguments") or ""),
                "status": "completed",
                **carried,
            }
        )
    return output


class ChatCompletionsModel:
    """Model adapter for a ``/chat/completions`` endpoint."""

    provider_name = "Chat Completions"

    def __init__(
        self,
        *,
        model_id: str,
        base_url: str,
        api_key: str,
        settings_service: SettingsService,
        logging_service: LoggingService,
        conversation_store: ConversationStore | None = None,
        extra_headers: dict[str, str] | None = None,
        default_reasoning_effort: str | None = "medium",
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.model_id = model_id
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._settings = settings_service
        self._log = logging_service
        self._store = conversation_store if conversation_store is not None else ConversationStore()
        self._extra_headers = extra_headers or {}
        self._default_effort = default_reasoning_effort
        self._http = http_client
        self._owns_http = http_client is None
        self._retry_policy = retry_policy or RetryPolicy.from_settings(settings_service)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def _require_api_key(self) -> str:
        if not self._api_key:
            raise ConfigurationError(f"{self.provider_name} API key is not configured.")
        return self._api_key

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = build_http_client(self._settings)
        return self._http

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._require_api_key()}",
            **self._extra_headers,
        }

    def _history_for(self, request: ModelRequest) -> list[dict[str, Any]]:
        token = request.previous_response_id
        if not token:
            return []
        if token not in self._store:
            self._log.warn("No stored history for continuation token", token=token, provider=self.provider_name)
        return self._store.get(token)

    def _body(self, request: ModelRequest, stream: bool) -> dict[str, Any]:
        messages = chat_format.build_messages(request, self.model_id, history=self._history_for(request))
        body: dict[str, Any] = {"model": self.model_id, "messages": messages, "stream": stream}
        body.update(chat_format.model_settings_body(request.model_settings, self._default_effort))
        tools = chat_format.extract_function_tools(request.tools)
        body["tools"] = tools
        if tools:
            body["tool_choice"] = "auto"
        return body

    async def _send(self, request: ModelRequest, body: dict[str, Any], stream: bool) -> httpx.Response:
        client = self._client()
        headers = self._headers()
        url = f"{self._base_url}/chat/completions"
        return await send_with_retry(
            client,
            lambda: client.build_request("POST", url, json=body, headers=headers),
            provider=self.provider_name,
            policy=self._retry_policy,
            signal=request.signal,
            stream=stream,
            sleep=self._sleep,
        )

    def _record_turn(self, request: ModelRequest, response: ModelResponse) -> None:
        """Store the turn so the next request can name ``response.id``."""
        if isinstance(request.input, str):
            new_messages = [{"role": "user", "content": request.input}]
        else:
            new_messages = chat_format.convert_items(request.input)
        reply = chat_format.convert_items(response.output)
        self._store.merge_turn(response.id, new_messages, reply, parent=request.previous_response_id)

    # ------------------------------------------------------------------
    # Model protocol
    # ------------------------------------------------------------------

    async def get_response(self, request: ModelRequest) -> ModelResponse:
        body = self._body(request, stream=False)
        self._log.debug("Chat completion request", provider=self.provider_name, messages=len(body["messages"]))
        response = await self._send(request, body, stream=False)
        payload = response.json()

        choice = (payload.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        content = message.get("content") or ""
        text = content if isinstance(content, str) else json.dumps(content)
        reasoning = message.get("reasoning") or message.get("reasoning_content")
        tool_calls = [
            {
                "call_id": call.get("id"),
                "name": (call.get("function") or {}).get("name", ""),
                "arguments": (call.get("function") or {}).get("arguments", ""),
            }
            for call in message.get("tool_calls") or []
            if call.get("type", "function") == "function"
        ]
        result = ModelResponse(
            id=payload.get("id") or str(uuid.uuid4()),
            output=build_output(
                text,
                tool_calls,
                reasoning if isinstance(reasoning, str) else None,
                message.get("reasoning_details"),
                fallback=NO_RESPONSE_TEXT,
            ),
            usage=normalize_usage(payload.get("usage")),
        )
        self._record_turn(request, result)
        return result

    async def stream_response(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        body = self._body(request, stream=True)
        self._log.debug(
            "Chat completion stream start",
            provider=self.provider_name,
            messages=len(body["messages"]),
            tools=len(body["tools"]),
        )
        response = await self._send(request, body, stream=True)
        state = _StreamState()
        lines = response.aiter_lines()
        if request.signal is not None:
            lines = request.signal.guard(lines)

        try:
            async for data in iter_sse_data(lines):
                if data == DONE:
                    break
                chunk = parse_json_payload(data)
                if chunk is None:
                    continue
                if "error" in chunk:
                    error = chunk["error"] or {}
                    message = error.get("message") if isinstance(error, dict) else str(error)
                    yield ErrorEvent(message=f"{self.provider_name} stream error: {message}")
                    return
                for event in self._apply_chunk(chunk, state):
                    yield event
        finally:
            await response.aclose()

        for index in sorted(state.tool_calls):
            call = state.tool_calls[index]
            if not call["call_id"]:
                call["call_id"] = f"call_{uuid.uuid4().hex[:24]}"
            yield ToolCallComplete(
                call_id=call["call_id"],
                name=call["name"],
                arguments=chat_format.decode_html_entities(call["arguments"]),
            )

        result = ModelResponse(
            id=state.response_id or str(uuid.uuid4()),
            output=build_output(
                state.text,
                [state.tool_calls[i] for i in sorted(state.tool_calls)],
                state.reasoning_text or None,
                state.reasoning_details or None,
            ),
            usage=normalize_usage(state.usage),
        )
        self._record_turn(request, result)
        self._log.debug("Chat completion stream done", provider=self.provider_name, response_id=result.id)
        yield ResponseDone(response=result)

    def _apply_chunk(self, chunk: dict[str, Any], state: _StreamState) -> list[StreamEvent]:
        if chunk.get("id") and not state.response_id:
            state.response_id = chunk["id"]
        if chunk.get("usage"):
            state.usage = chunk["usage"]

        choices = chunk.get("choices") or []
        if not choices:
            return []
        delta = choices[0].get("delta") or {}
        events: list[StreamEvent] = []

        self._accumulate_reasoning_details(delta.get("reasoning_details"), state)

        reasoning = delta.get("reasoning") or delta.get("reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            state.reasoning_text += reasoning
            events.append(ReasoningDelta(delta=reasoning))

        for tool_delta in delta.get("tool_calls") or []:
            index = tool_delta.get("index", len(state.tool_calls))
            call = state.tool_calls.setdefault(index, {"call_id": "", "name": "", "arguments": ""})
            if tool_delta.get("id") and not call["call_id"]:
                call["call_id"] = tool_delta["id"]
            function = tool_delta.get("function") or {}
            if function.get("name"):
                call["name"] += function["name"]
            if function.get("arguments"):
                call["arguments"] += function["arguments"]
            if index not in state.announced and call["call_id"] and call["name"]:
                state.announced.add(index)
                events.append(ToolCallStart(call_id=call["call_id"], name=call["name"]))

        content = delta.get("content")
        if isinstance(content, str) and content:
            state.text += content
            events.append(TextDelta(delta=content))
        return events

    @staticmethod
    def _accumulate_reasoning_details(details: Any, state: _StreamState) -> None:
        if not details:
            return
        if not isinstance(details, list):
            details = [details]
        by_key = {(d.get("type"), d.get("index")): d for d in state.reasoning_details}
        for detail in details:
            field_name = REASONING_FIELDS.get(detail.get("type"))
            if field_name is None:
                continue
            key = (detail.get("type"), detail.get("index"))
            existing = by_key.get(key)
            if existing is not None:
                existing[field_name] = (existing.get(field_name) or "") + (detail.get(field_name) or "")
            else:
                entry = dict(detail)
                state.reasoning_details.append(entry)
                by_key[key] = entry

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None


class OpenRouterModel(ChatCompletionsModel):
    """OpenRouter flavour: attribution headers and settings-driven defaults."""

    provider_name = "OpenRouter"

    def __init__(
        self,
        *,
        settings_service: SettingsService,
        logging_service: LoggingService,
        conversation_store: ConversationStore | None = None,
        model_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            model_id=model_id or settings_service.get("agent.model") or "openrouter/auto",
            base_url=settings_service.get("agent.openrouter.base_url") or "https://openrouter.ai/api/v1",
            api_key=settings_service.get("agent.openrouter.api_key") or "",
            settings_service=settings_service,
            logging_service=logging_service,
            conversation_store=conversation_store,
            extra_headers={
                "HTTP-Referer": settings_service.get("agent.openrouter.referrer") or "http://localhost",
                "X-Title": settings_service.get("agent.openrouter.title") or "termagent",
            },
            **kwargs,
        )

    def _require_api_key(self) -> str:
        if not self._api_key:
            raise ConfigurationError(
                "OpenRouter API key is not configured. Set OPENROUTER_API_KEY "
                "(keys are issued at https://openrouter.ai/keys)."
            )
        return self._api_key


class ChatCompletionsProvider:
    """ModelProvider that hands out one adapter per model name."""

    def __init__(self, factory: Callable[[str | None], ChatCompletionsModel]) -> None:
        self._factory = factory
        self._models: dict[str | None, ChatCompletionsModel] = {}

    def get_model(self, name: str | None = None) -> ChatCompletionsModel:
        if name not in self._models:
            self._models[name] = self._factory(name)
        return self._models[name]

    async def aclose(self) -> None:
        for model in self._models.values():
            await model.aclose()
        self._models.clear()


async def fetch_chat_models(
    base_url: str,
    api_key: str,
    *,
    require_tools: bool = False,
    http_client: httpx.AsyncClient | None = None,
) -> list[dict[str, Any]]:
    """List ``{id, name}`` entries from ``{base_url}/models``.

    With *require_tools*, only models advertising ``tools`` in their
    ``supported_parameters`` are kept.
    """
    client = http_client or httpx.AsyncClient(timeout=30.0)
    try:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        response = await client.get(f"{base_url.rstrip('/')}/models", headers=headers)
        response.raise_for_status()
        entries = response.json().get("data") or []
    except httpx.HTTPStatusError as e:
        raise ProviderError(
            f"Model list request failed: {e.response.status_code}",
            status=e.response.status_code,
            headers=dict(e.response.headers),
            response_body=e.response.text,
        ) from e
    except httpx.HTTPError as e:
        raise ProviderError(f"Model list request failed: {e}") from e
    finally:
        if http_client is None:
            await client.aclose()

    models = []
    for entry in entries:
        if require_tools and "tools" not in (entry.get("supported_parameters") or []):
            continue
        models.append({"id": entry.get("id"), "name": entry.get("name") or entry.get("id")})
    return models
