"""Turning tool output items into transcript CommandMessages.

Arguments are cached by call id when a tool is called so that output items
which arrive without them (resumed runs, provider echoes) can still be
rendered with the command that produced them.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from termagent.conversation.events import CommandMessageEvent
from termagent.conversation.messages import CommandMessage
from termagent.protocol import Item, call_id_of
from termagent.tools.base import Tool, default_command_messages

TOOL_OUTPUT_TYPES = ("function_call_output", "function_call_result")


def capture_tool_call_arguments(item: Item | None, args_by_id: dict[str, Any]) -> None:
    if not item or item.get("type") != "function_call":
        return
    call_id = call_id_of(item)
    args = item.get("arguments") or item.get("args")
    if call_id and args:
        args_by_id[call_id] = args


def attach_cached_arguments(items: Iterable[Item], args_by_id: Mapping[str, Any]) -> None:
    for item in items:
        if not item or item.get("arguments") or item.get("args"):
            continue
        call_id = call_id_of(item)
        if call_id and args_by_id.get(call_id):
            item["arguments"] = args_by_id[call_id]


def extract_command_messages(
    items: Iterable[Item],
    tools: Mapping[str, Tool],
    args_by_id: Mapping[str, Any] | None = None,
) -> list[CommandMessage]:
    """CommandMessages for every tool output item, in item order."""
    args_by_id = dict(args_by_id or {})
    messages: list[CommandMessage] = []
    for index, item in enumerate(items):
        if not item or item.get("type") not in TOOL_OUTPUT_TYPES:
            continue
        tool = tools.get(item.get("name") or "")
        if tool is not None:
            messages.extend(tool.command_messages(item, index, args_by_id))
        else:
            messages.extend(default_command_messages(item, index, args_by_id))
    return messages


def emit_command_messages(
    items: list[Item],
    *,
    tools: Mapping[str, Tool],
    args_by_id: dict[str, Any],
    emitted_ids: set[str],
) -> list[CommandMessageEvent]:
    """Events for command messages not emitted yet.  Records the emitted ids.

    Approval rejections are never emitted; the transcript shows the
    rejection where the user answered.
    """
    attach_cached_arguments(items, args_by_id)
    events: list[CommandMessageEvent] = []
    for message in extract_command_messages(items, tools, args_by_id):
        if message.id in emitted_ids or message.is_approval_rejection:
            continue
        emitted_ids.add(message.id)
        events.append(CommandMessageEvent(message))
    return events


def unemitted_command_messages(
    items: list[Item],
    *,
    tools: Mapping[str, Tool],
    args_by_id: dict[str, Any],
    emitted_ids: set[str],
) -> list[CommandMessage]:
    """Command messages from a finished run's snapshot minus the live ones."""
    attach_cached_arguments(items, args_by_id)
    return [
        message
        for message in extract_command_messages(items, tools, args_by_id)
        if message.id not in emitted_ids and not message.is_approval_rejection
    ]
