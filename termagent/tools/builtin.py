"""Built-in tools: shell, read_file, write_file.

All file access is confined to the configured workspace directory.  The
shell tool asks for approval whenever the command is not classified as
safe (or the model itself flags the command as needing approval);
write_file always asks.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from termagent.config import SettingsService
from termagent.conversation.messages import CommandMessage
from termagent.protocol import Item, call_id_of
from termagent.tools.base import Tool, ToolContext, default_command_messages, parse_arguments
from termagent.tools.safety import is_dangerous_command

logger = logging.getLogger(__name__)

# Limits
_MAX_SHELL_TIMEOUT = 600  # seconds
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve *path_str* inside *workspace_dir*.

    Raises ValueError if the path escapes the workspace.
    """
    workspace = Path(workspace_dir).resolve()
    candidate = Path(path_str)
    target = candidate.resolve() if candidate.is_absolute() else (workspace / candidate).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(
            f"Path '{path_str}' is outside workspace '{workspace_dir}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated at {limit} chars]"


# ---------------------------------------------------------------------------
# shell
# ---------------------------------------------------------------------------


async def run_shell_command(
    command: str,
    *,
    workspace_dir: str,
    timeout: int,
    max_output_chars: int,
) -> dict[str, Any]:
    """Run *command* through the shell; returns a result dict (never raises)."""
    effective_timeout = max(1, min(timeout, _MAX_SHELL_TIMEOUT))
    workspace = Path(workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(workspace),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return {
            "command": command,
            "output": f"Command timed out after {effective_timeout}s.",
            "exit_code": None,
            "success": False,
            "error": "timeout",
        }
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    parts = []
    stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), max_output_chars)
    stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), max_output_chars)
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")

    return {
        "command": command,
        "output": "\n".join(parts) if parts else "(no output)",
        "exit_code": proc.returncode,
        "success": proc.returncode == 0,
        **({"error": f"exit code {proc.returncode}"} if proc.returncode != 0 else {}),
    }


def format_shell_command_messages(item: Item, index: int, args_by_id: dict[str, Any]) -> list[CommandMessage]:
    """Show the command's own output instead of the JSON envelope."""
    messages = default_command_messages(item, index, args_by_id)
    output = item.get("output")
    if item.get("is_approval_rejection") or not isinstance(output, str):
        return messages
    try:
        payload = json.loads(output)
    except json.JSONDecodeError:
        return messages
    if isinstance(payload, dict) and "output" in payload:
        message = messages[0]
        message.output = str(payload["output"])
        if isinstance(payload.get("command"), str):
            message.command = payload["command"]
    return messages


_SHELL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "needs_approval": {
            "type": "boolean",
            "description": "Set true if the command modifies files, installs software or is otherwise risky",
        },
    },
    "required": ["command", "needs_approval"],
    "additionalProperties": False,
}


def create_shell_tool(
    settings_service: SettingsService,
    is_dangerous: Callable[[str], bool] = is_dangerous_command,
) -> Tool:
    def needs_approval(params: dict[str, Any], context: ToolContext) -> bool:
        return bool(params.get("needs_approval")) or is_dangerous(params.get("command", ""))

    async def execute(params: dict[str, Any], context: ToolContext) -> str:
        command = params.get("command", "")
        result = await run_shell_command(
            command,
            workspace_dir=settings_service.get("shell.workspace_dir", "."),
            timeout=int(settings_service.get("shell.timeout", 120)),
            max_output_chars=int(settings_service.get("shell.max_output_chars", 10_000)),
        )
        return json.dumps(result)

    return Tool(
        name="shell",
        description="Execute a shell command in the workspace directory and return its output.",
        parameters=_SHELL_SCHEMA,
        execute=execute,
        needs_approval=needs_approval,
        format_command_message=format_shell_command_messages,
        strict=True,
    )


# ---------------------------------------------------------------------------
# read_file / write_file
# ---------------------------------------------------------------------------


def create_read_file_tool(settings_service: SettingsService) -> Tool:
    async def execute(params: dict[str, Any], context: ToolContext) -> str:
        path = params.get("path", "")
        try:
            target = _validate_path(path, settings_service.get("shell.workspace_dir", "."))
        except ValueError as e:
            return json.dumps({"success": False, "error": str(e)})
        if not target.is_file():
            return json.dumps({"success": False, "error": f"File not found: {path}"})
        size = target.stat().st_size
        if size > _MAX_FILE_SIZE:
            return json.dumps(
                {"success": False, "error": f"File too large: {size:,} bytes (limit {_MAX_FILE_SIZE:,})"}
            )

        content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        offset = int(params.get("offset") or 0)
        limit = int(params.get("limit") or 0)
        if offset > 0 or limit > 0:
            lines = content.splitlines(keepends=True)[offset:]
            content = "".join(lines[:limit] if limit > 0 else lines)
        return json.dumps({"success": True, "output": content or "(empty file)"})

    return Tool(
        name="read_file",
        description="Read a file from the workspace directory.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the workspace"},
                "offset": {"type": "integer", "description": "Line offset (0-indexed)", "minimum": 0},
                "limit": {"type": "integer", "description": "Number of lines (0 = all)", "minimum": 0},
            },
            "required": ["path"],
        },
        execute=execute,
        format_command_message=_format_file_messages("read_file"),
    )


def create_write_file_tool(settings_service: SettingsService) -> Tool:
    async def execute(params: dict[str, Any], context: ToolContext) -> str:
        path = params.get("path", "")
        content = params.get("content", "")
        try:
            target = _validate_path(path, settings_service.get("shell.workspace_dir", "."))
        except ValueError as e:
            return json.dumps({"success": False, "error": str(e)})
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")
        return json.dumps({"success": True, "output": f"Wrote {len(content):,} bytes to {path}"})

    return Tool(
        name="write_file",
        description="Create or overwrite a file in the workspace directory.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the workspace"},
                "content": {"type": "string", "description": "Full file content"},
            },
            "required": ["path", "content"],
        },
        execute=execute,
        needs_approval=lambda params, context: True,
        format_command_message=_format_file_messages("write_file"),
    )


def _format_file_messages(verb: str):
    def formatter(item: Item, index: int, args_by_id: dict[str, Any]) -> list[CommandMessage]:
        messages = default_command_messages(item, index, args_by_id)
        args = parse_arguments(item.get("arguments") or args_by_id.get(call_id_of(item) or "", {}))
        if isinstance(args, dict) and args.get("path"):
            messages[0].command = f"{verb} {args['path']}"
        try:
            payload = json.loads(item.get("output") or "")
        except (json.JSONDecodeError, TypeError):
            return messages
        if isinstance(payload, dict):
            messages[0].output = str(payload.get("output") or payload.get("error") or "")
        return messages

    return formatter


def create_builtin_tools(
    settings_service: SettingsService,
    is_dangerous: Callable[[str], bool] = is_dangerous_command,
) -> list[Tool]:
    return [
        create_shell_tool(settings_service, is_dangerous),
        create_read_file_tool(settings_service),
        create_write_file_tool(settings_service),
    ]
