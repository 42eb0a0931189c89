"""Tests for the OpenAI Responses adapter.

Tests cover:
- Stream event mapping (text, reasoning summary, function calls, completion)
- response.failed / error events
- Native chaining: previous_response_id forwarded, only new input sent
- Reasoning effort and hosted tools in the request body
- Item conversion in both directions
"""

import json

import httpx
import pytest

from termagent.errors import ConfigurationError
from termagent.logging_service import LoggingService
from termagent.protocol import (
    ErrorEvent,
    ModelRequest,
    ModelSettings,
    ReasoningDelta,
    ResponseDone,
    TextDelta,
    ToolCallComplete,
    ToolCallStart,
)
from termagent.providers.http import RetryPolicy
from termagent.providers.openai import OpenAIResponsesModel, from_responses_output, to_responses_input
from tests.conftest import make_settings_service, mock_http_client, sse_body

COMPLETED = {
    "type": "response.completed",
    "response": {
        "id": "resp_9",
        "output": [
            {"type": "reasoning", "id": "rs_1", "summary": [{"type": "summary_text", "text": "Plan"}]},
            {"type": "message", "id": "msg_1", "content": [{"type": "output_text", "text": "Hi"}]},
            {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "shell", "arguments": "{}"},
        ],
        "usage": {"input_tokens": 10, "output_tokens": 5},
    },
}


def _make_model(payloads, api_key="sk-test"):
    settings_service = make_settings_service()
    settings_service.set("agent.openai.api_key", api_key)
    captured: list[dict] = []
    body = sse_body(*payloads)

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append({"url": str(request.url), "body": json.loads(request.content)})
        return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

    model = OpenAIResponsesModel(
        settings_service=settings_service,
        logging_service=LoggingService(),
        model_id="gpt-5.1",
        http_client=mock_http_client(handler),
        retry_policy=RetryPolicy(max_retries=0),
    )
    return model, captured


async def _collect(model, request):
    return [event async for event in model.stream_response(request)]


class TestResponsesStream:
    @pytest.mark.asyncio
    async def test_event_mapping(self):
        model, captured = _make_model(
            [
                {"type": "response.created", "response": {"id": "resp_9"}},
                {"type": "response.reasoning_summary_text.delta", "delta": "Plan"},
                {"type": "response.output_text.delta", "delta": "Hi"},
                {"type": "response.output_item.added", "item": {"type": "function_call", "call_id": "call_1", "name": "shell"}},
                {
                    "type": "response.output_item.done",
                    "item": {"type": "function_call", "call_id": "call_1", "name": "shell", "arguments": "{}"},
                },
                COMPLETED,
            ]
        )
        events = await _collect(model, ModelRequest(system_instructions="sys", input="hi"))

        assert [type(e) for e in events] == [ReasoningDelta, TextDelta, ToolCallStart, ToolCallComplete, ResponseDone]
        response = events[-1].response
        assert response.id == "resp_9"
        assert response.usage.total_tokens == 15
        assert [item["type"] for item in response.output] == ["reasoning", "message", "function_call"]
        assert captured[0]["url"] == "https://api.openai.com/v1/responses"

    @pytest.mark.asyncio
    async def test_failed_response(self):
        model, _ = _make_model([{"type": "response.failed", "response": {"error": {"message": "quota"}}}])
        events = await _collect(model, ModelRequest(system_instructions="", input="hi"))
        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].message == "OpenAI response failed: quota"

    @pytest.mark.asyncio
    async def test_error_event(self):
        model, _ = _make_model([{"type": "error", "message": "overloaded"}])
        events = await _collect(model, ModelRequest(system_instructions="", input="hi"))
        assert events == [ErrorEvent(message="OpenAI stream error: overloaded")]

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        model, captured = _make_model([COMPLETED], api_key="")
        with pytest.raises(ConfigurationError):
            await _collect(model, ModelRequest(system_instructions="", input="hi"))
        assert captured == []


class TestRequestBody:
    @pytest.mark.asyncio
    async def test_previous_response_id_is_forwarded(self):
        model, captured = _make_model([COMPLETED])
        items = [{"type": "function_call_output", "call_id": "call_1", "output": "done"}]
        await _collect(model, ModelRequest(system_instructions="sys", input=items, previous_response_id="resp_8"))

        body = captured[0]["body"]
        assert body["previous_response_id"] == "resp_8"
        assert body["input"] == [{"type": "function_call_output", "call_id": "call_1", "output": "done"}]
        assert body["instructions"] == "sys"
        assert body["store"] is True

    @pytest.mark.asyncio
    async def test_default_effort_sends_no_reasoning(self):
        model, captured = _make_model([COMPLETED])
        await _collect(
            model, ModelRequest(system_instructions="", input="hi", model_settings=ModelSettings(reasoning_effort="default"))
        )
        assert "reasoning" not in captured[0]["body"]

    @pytest.mark.asyncio
    async def test_explicit_effort_and_hosted_tools(self):
        model, captured = _make_model([COMPLETED])
        request = ModelRequest(
            system_instructions="",
            input="hi",
            model_settings=ModelSettings(reasoning_effort="high"),
            tools=[{"type": "function", "name": "shell", "parameters": {}}, {"type": "web_search"}],
        )
        await _collect(model, request)
        body = captured[0]["body"]
        assert body["reasoning"] == {"effort": "high", "summary": "auto"}
        assert [t["type"] for t in body["tools"]] == ["function", "web_search"]
        assert body["tools"][0]["strict"] is False


class TestItemConversion:
    def test_to_responses_input(self):
        converted = to_responses_input(
            [
                {"type": "message", "role": "user", "content": "hi"},
                {"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": "yo"}]},
                {"type": "reasoning", "id": "r", "provider_data": {"type": "reasoning.encrypted"}},
            ]
        )
        assert converted == [
            {"role": "user", "content": "hi"},
            {"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": "yo"}]},
        ]

    def test_from_responses_output_reasoning_summary(self):
        items = from_responses_output(COMPLETED["response"]["output"])
        assert items[0]["content"] == [{"type": "input_text", "text": "Plan"}]
        assert items[0]["provider_data"]["id"] == "rs_1"
