"""Chat Completions message construction shared by OpenRouter-style adapters.

Turns a provider-neutral ModelRequest into the ``messages`` / ``tools`` /
sampling fields of a ``/chat/completions`` body.
"""

from __future__ import annotations

import copy
import html
import json
from typing import Any

from termagent.protocol import Item, ModelRequest, ModelSettings

_TOOL_OUTPUT_TYPES = frozenset({"function_call_output", "function_call_result", "function_call_output_result"})
_EPHEMERAL = {"type": "ephemeral"}


def is_anthropic_model(model_id: str | None) -> bool:
    if not model_id:
        return False
    lowered = model_id.lower()
    return lowered.startswith("anthropic/") or "claude" in lowered


def decode_html_entities(text: str) -> str:
    """Some upstreams HTML-escape tool arguments (``&quot;`` etc.)."""
    return html.unescape(text) if "&" in text else text


def _joined_text(content: list[Any], accepted: tuple[str, ...]) -> str:
    return "".join(
        part["text"]
        for part in content
        if isinstance(part, dict) and part.get("type") in accepted and part.get("text")
    )


def _reasoning_fields(item: Item) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if isinstance(item.get("reasoning"), str):
        fields["reasoning"] = item["reasoning"]
    if isinstance(item.get("reasoning_content"), str):
        fields["reasoning_content"] = item["reasoning_content"]
    if item.get("reasoning_details") is not None:
        fields["reasoning_details"] = item["reasoning_details"]
    return fields


def convert_item(item: Item) -> dict[str, Any] | None:
    """Convert one history item into a Chat Completions message (or None)."""
    if not item:
        return None
    kind = item.get("type")
    role = item.get("role")

    if kind == "input_text" and isinstance(item.get("text"), str):
        return {"role": "user", "content": item["text"]}

    if kind == "message" and role == "assistant":
        message: dict[str, Any] = {"role": "assistant"}
        content = item.get("content")
        if isinstance(content, list):
            text = _joined_text(content, ("output_text",))
            if text:
                message["content"] = text
        elif isinstance(content, str) and content:
            message["content"] = content
        message.update(_reasoning_fields(item))
        if item.get("tool_calls") is not None:
            message["tool_calls"] = item["tool_calls"]
        return message

    if kind in ("message", None) and role == "user":
        content = item.get("content")
        if isinstance(content, str):
            return {"role": "user", "content": content}
        if isinstance(content, list):
            text = _joined_text(content, ("input_text", "output_text"))
            if text:
                return {"role": "user", "content": text}
        return None

    if kind == "function_call":
        arguments = item.get("arguments")
        if arguments is None:
            arguments = json.dumps(item["args"]) if item.get("args") else ""
        return {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": item.get("call_id") or item.get("callId") or item.get("id"),
                    "type": "function",
                    "function": {"name": item.get("name"), "arguments": arguments},
                }
            ],
            **_reasoning_fields(item),
        }

    if kind in _TOOL_OUTPUT_TYPES:
        output = item.get("output")
        if isinstance(output, str):
            text = output
        elif isinstance(output, (dict, list)):
            text = json.dumps(output)
        else:
            text = ""
        return {
            "role": "tool",
            "tool_call_id": item.get("call_id") or item.get("callId") or item.get("id"),
            "content": text,
        }

    return None


def _merge_into(last: dict[str, Any], converted: dict[str, Any]) -> None:
    if converted.get("content") is not None:
        if last.get("content") is None:
            last["content"] = converted["content"]
        else:
            last["content"] = f"{last['content']}\n{converted['content']}"

    if last["role"] != "assistant":
        return

    if converted.get("tool_calls"):
        last.setdefault("tool_calls", [])
        last["tool_calls"] = [*last["tool_calls"], *converted["tool_calls"]]
    for key in ("reasoning", "reasoning_content"):
        if converted.get(key) is not None:
            last[key] = (last.get(key) or "") + converted[key]
    details = converted.get("reasoning_details")
    if details:
        extra = details if isinstance(details, list) else [details]
        last["reasoning_details"] = [*(last.get("reasoning_details") or []), *extra]


def convert_items(items: list[Item]) -> list[dict[str, Any]]:
    """Convert a run of history items, merging consecutive same-role messages.

    Standalone ``reasoning`` items carry provider reasoning blocks; they are
    attached as ``reasoning_details`` to the next assistant message that
    does not already have its own.
    """
    messages: list[dict[str, Any]] = []
    pending_details: list[Any] = []

    for item in items:
        if item.get("type") == "reasoning":
            detail = item.get("provider_data") or item.get("providerData")
            if isinstance(detail, dict):
                pending_details.append(detail)
            continue

        converted = convert_item(item)
        if converted is None:
            continue

        if pending_details and converted["role"] == "assistant" and converted.get("reasoning_details") is None:
            converted["reasoning_details"] = pending_details
            pending_details = []

        last = messages[-1] if messages else None
        if last is not None and last["role"] == converted["role"] and converted["role"] in ("assistant", "user"):
            _merge_into(last, converted)
            continue
        messages.append(converted)

    return messages


def _mark_ephemeral(message: dict[str, Any]) -> None:
    content = message.get("content")
    if isinstance(content, str):
        message["content"] = [{"type": "text", "text": content, "cache_control": dict(_EPHEMERAL)}]
    elif isinstance(content, list):
        for part in reversed(content):
            if isinstance(part, dict) and part.get("type") == "text":
                part["cache_control"] = dict(_EPHEMERAL)
                break


def add_cache_anchors(messages: list[dict[str, Any]]) -> None:
    """Mark the system message and the most recent user message as cacheable.

    Anthropic allows four cache breakpoints; two are used so the anchors
    move forward with the conversation.
    """
    for message in messages:
        if message.get("role") == "system":
            _mark_ephemeral(message)
            break
    for message in reversed(messages):
        if message.get("role") == "user":
            _mark_ephemeral(message)
            break


def build_messages(
    request: ModelRequest,
    model_id: str | None = None,
    history: list[dict[str, Any]] | None = None,
) -> list[dict[str, Any]]:
    """Full ``messages`` array for a request.

    *history* holds previously stored wire messages (already converted)
    that precede the request input when chaining is emulated locally.
    """
    messages: list[dict[str, Any]] = []
    if request.system_instructions and request.system_instructions.strip():
        messages.append({"role": "system", "content": request.system_instructions})

    if history:
        messages.extend(copy.deepcopy(m) for m in history if m.get("role") != "system")

    if isinstance(request.input, str):
        messages.append({"role": "user", "content": request.input})
    else:
        for converted in convert_items(request.input):
            last = messages[-1] if messages else None
            if last is not None and last["role"] == converted["role"] and converted["role"] in ("assistant", "user"):
                _merge_into(last, converted)
            else:
                messages.append(converted)

    if is_anthropic_model(model_id):
        add_cache_anchors(messages)
    return messages


def extract_function_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Only ``function`` tools; hosted tools have no Chat Completions form."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool.get("name"),
                "description": tool.get("description"),
                "parameters": tool.get("parameters"),
                "strict": tool.get("strict"),
            },
        }
        for tool in tools or []
        if tool.get("type") == "function"
    ]


def model_settings_body(settings: ModelSettings | None, default_effort: str | None = "medium") -> dict[str, Any]:
    """Sampling fields for the request body.

    ``reasoning_effort="default"`` maps to *default_effort* (omitted when
    that is None); ``"none"`` always omits the reasoning block.
    """
    body: dict[str, Any] = {}
    if settings is None:
        return body

    for source, target in (
        ("temperature", "temperature"),
        ("top_p", "top_p"),
        ("max_tokens", "max_tokens"),
        ("top_k", "top_k"),
        ("frequency_penalty", "frequency_penalty"),
        ("presence_penalty", "presence_penalty"),
    ):
        value = getattr(settings, source)
        if value is not None:
            body[target] = value

    effort = settings.reasoning_effort
    if effort == "default":
        effort = default_effort
    if effort and effort != "none":
        body["reasoning"] = {"effort": effort}
    return body
