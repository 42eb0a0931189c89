"""Tool contract.

A Tool bundles a JSON schema, an executor, an approval predicate and an
optional formatter that turns a finished invocation into transcript
CommandMessages.  ``execute`` and ``needs_approval`` may be plain or
async callables.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from termagent.cancellation import CancellationToken
from termagent.conversation.messages import CommandMessage
from termagent.protocol import Item, call_id_of

TOOL_ERROR_PREFIX = "Tool error:"


@dataclass
class ToolContext:
    agent_name: str
    call_id: str | None = None
    signal: CancellationToken | None = None


def _never(params: dict[str, Any], context: ToolContext) -> bool:
    return False


CommandFormatter = Callable[[Item, int, dict[str, Any]], list[CommandMessage]]


@dataclass
class Tool:
    name: str
    description: str
    parameters: dict[str, Any]
    execute: Callable[[dict[str, Any], ToolContext], Any]
    needs_approval: Callable[[dict[str, Any], ToolContext], Any] = _never
    format_command_message: CommandFormatter | None = None
    strict: bool = False

    def schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "strict": self.strict,
        }

    async def requires_approval(self, params: dict[str, Any], context: ToolContext) -> bool:
        result = self.needs_approval(params, context)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    async def invoke(self, params: dict[str, Any], context: ToolContext) -> str:
        result = self.execute(params, context)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, str):
            return result
        return json.dumps(result, default=str)

    def command_messages(self, item: Item, index: int, args_by_id: dict[str, Any]) -> list[CommandMessage]:
        formatter = self.format_command_message or default_command_messages
        return formatter(item, index, args_by_id)


# ---------------------------------------------------------------------------
# Command message formatting
# ---------------------------------------------------------------------------


def parse_arguments(raw: Any) -> Any:
    """Decode a tool-call arguments string; non-JSON text is returned as-is."""
    if isinstance(raw, str):
        try:
            return json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            return raw
    return raw if raw is not None else {}


def command_text(name: str | None, args: Any) -> str:
    """Human-readable command line for a tool invocation."""
    if isinstance(args, dict):
        if isinstance(args.get("command"), str):
            return args["command"]
        if isinstance(args.get("commands"), list):
            return "\n".join(str(c) for c in args["commands"])
        rendered = json.dumps(args, ensure_ascii=False)
    else:
        rendered = str(args or "")
    return f"{name}({rendered})" if name else rendered


def _output_success(output: str) -> tuple[bool, str | None]:
    if output.startswith(TOOL_ERROR_PREFIX):
        return False, output[len(TOOL_ERROR_PREFIX):].strip()
    try:
        payload = json.loads(output)
    except (json.JSONDecodeError, TypeError):
        return True, None
    if isinstance(payload, dict) and isinstance(payload.get("success"), bool):
        reason = payload.get("error") if not payload["success"] else None
        return payload["success"], reason
    return True, None


def default_command_messages(item: Item, index: int, args_by_id: dict[str, Any]) -> list[CommandMessage]:
    """One CommandMessage per tool output item."""
    call_id = call_id_of(item)
    args = item.get("arguments")
    if not args and call_id:
        args = args_by_id.get(call_id)
    args = parse_arguments(args)
    output = item.get("output")
    output = output if isinstance(output, str) else json.dumps(output, default=str)

    rejected = bool(item.get("is_approval_rejection"))
    if rejected:
        success, reason = False, output
    else:
        success, reason = _output_success(output)

    return [
        CommandMessage(
            id=f"{call_id or f'item-{index}'}-0",
            command=command_text(item.get("name"), args),
            output=output,
            success=success,
            failure_reason=reason,
            is_approval_rejection=rejected,
            call_id=call_id,
            tool_name=item.get("name"),
            tool_args=args,
            status="completed" if success else "failed",
        )
    ]
