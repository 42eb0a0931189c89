"""Terminal chat loop for termagent.

Reads a line, streams the agent's answer to stdout, prints executed
commands and asks before running anything that needs approval.

Usage:
    OPENAI_API_KEY=... python -m termagent
    OPENAI_API_KEY=... python -m termagent --prompt "list the files" [--auto-approve]
    OPENROUTER_API_KEY=... python -m termagent --provider openrouter --model openai/gpt-4.1

Commands:
    /reset            start a new conversation
    /provider <id>    switch provider
    /model <name>     switch model
    /models           list models offered by the current provider
    /quit             exit

Ctrl-C while the agent is working aborts the current turn.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, TextIO

from termagent.agent.client import AgentRunClient
from termagent.config import Settings, SettingsService
from termagent.conversation.events import (
    ApprovalRequiredEvent,
    CommandMessageEvent,
    ConversationEvent,
    ErrorEvent,
    ReasoningDeltaEvent,
    RetryEvent,
    TextDeltaEvent,
    ToolStartedEvent,
)
from termagent.conversation.messages import ApprovalRequiredResult, CommandMessage, ResponseResult
from termagent.conversation.service import ConversationService
from termagent.conversation.session import ConversationSession
from termagent.conversation.store import ConversationStore
from termagent.errors import TermAgentError
from termagent.logging_service import LoggingService, configure_logging
from termagent.providers.copilot_sdk import create_sdk_client_factory
from termagent.providers.definitions import create_default_registry
from termagent.tools.builtin import create_builtin_tools
from termagent.usage import Usage

logger = logging.getLogger(__name__)

PROMPT = "you> "
MAX_COMMAND_OUTPUT_LINES = 20
MAX_PREVIEW_CHARS = 500
NON_INTERACTIVE_REJECTION_REASON = "Non-interactive mode: use --auto-approve to allow tool execution"


def format_usage_footer(usage: Usage) -> str:
    """Token usage as a compact footer string."""
    inp, out = usage.input_tokens, usage.output_tokens
    inp_str = f"{inp / 1000:.1f}K" if inp >= 1000 else str(inp)
    out_str = f"{out / 1000:.1f}K" if out >= 1000 else str(out)
    return f"[{inp_str} in / {out_str} out]"


def format_command(message: CommandMessage) -> str:
    marker = "ok" if message.success else ("rejected" if message.is_approval_rejection else "failed")
    lines = message.output.splitlines()
    if len(lines) > MAX_COMMAND_OUTPUT_LINES:
        hidden = len(lines) - MAX_COMMAND_OUTPUT_LINES
        lines = lines[:MAX_COMMAND_OUTPUT_LINES] + [f"... ({hidden} more lines)"]
    body = "\n".join(f"  {line}" for line in lines)
    return f"$ {message.command}  ({marker})" + (f"\n{body}" if body else "")


class TerminalChat:
    """Line-based front end over a ConversationService."""

    def __init__(
        self,
        service: ConversationService,
        client: AgentRunClient,
        *,
        out: TextIO | None = None,
    ) -> None:
        self._service = service
        self._client = client
        self._out = out or sys.stdout
        self._streamed_text = False
        self._in_reasoning = False
        self._turn_had_text = False

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()

    def _print(self, text: str = "") -> None:
        self._write(text + "\n")

    def on_event(self, event: ConversationEvent) -> None:
        """Render streaming events as they arrive."""
        if isinstance(event, ReasoningDeltaEvent):
            if not self._in_reasoning:
                self._write("(thinking) ")
                self._in_reasoning = True
            self._write(event.delta)
        elif isinstance(event, TextDeltaEvent):
            if self._in_reasoning:
                self._print()
                self._in_reasoning = False
            self._streamed_text = True
            self._turn_had_text = True
            self._write(event.delta)
        elif isinstance(event, ToolStartedEvent):
            self._end_stream_line()
            self._print(f"-> {event.tool_name}")
        elif isinstance(event, RetryEvent):
            self._end_stream_line()
            self._print(f"(model called unknown tool {event.tool_name}, retry {event.attempt}/{event.max_retries})")
        elif isinstance(event, CommandMessageEvent):
            self._end_stream_line()
            self._print(format_command(event.message))

    def _end_stream_line(self) -> None:
        if self._streamed_text or self._in_reasoning:
            self._print()
        self._streamed_text = False
        self._in_reasoning = False

    def _show_result(self, result: Any) -> None:
        streamed = self._turn_had_text
        if self._streamed_text or self._in_reasoning:
            self._print()
        self._streamed_text = False
        self._in_reasoning = False
        self._turn_had_text = False

        if result is None:
            last = self._service.messages[-1] if self._service.messages else None
            if last is not None and getattr(last, "is_error", False):
                self._print(last.text)
            return
        if isinstance(result, ResponseResult):
            for command in result.command_messages:
                self._print(format_command(command))
            if not streamed and result.final_text:
                self._print(result.final_text)
            if result.usage is not None and result.usage.total_tokens:
                self._print(format_usage_footer(result.usage))

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def _with_abort(self, coro):
        """Run *coro* with Ctrl-C mapped to an abort of the current turn."""
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self._service.abort)
        except (NotImplementedError, RuntimeError):
            # No signal handlers on this platform/loop; Ctrl-C ends the program
            return await coro
        try:
            return await coro
        finally:
            loop.remove_signal_handler(signal.SIGINT)

    async def _ask(self, prompt: str) -> str | None:
        try:
            return await asyncio.to_thread(input, prompt)
        except (EOFError, KeyboardInterrupt):
            return None

    async def handle_message(self, text: str) -> None:
        result = await self._with_abort(self._service.send_message(text, on_event=self.on_event))
        self._show_result(result)
        while isinstance(result, ApprovalRequiredResult):
            approval = result.approval
            if approval.is_max_turns_prompt:
                question = f"{approval.arguments_text} [y/N] "
            else:
                self._print(f"{approval.agent_name} wants to run {approval.tool_name}:")
                self._print(f"  {approval.arguments_text}")
                question = "Approve? [y/N] "
            answer = await self._ask(question)
            if answer is None:
                self._service.abort()
                return
            reason = None
            if answer.strip().lower() not in ("y", "yes") and not approval.is_max_turns_prompt:
                reason = (await self._ask("Reason (optional): ")) or None
            result = await self._with_abort(
                self._service.handle_approval_decision(answer, reason, on_event=self.on_event)
            )
            self._show_result(result)

    # ------------------------------------------------------------------
    # Slash commands
    # ------------------------------------------------------------------

    async def handle_command(self, line: str) -> bool:
        """Handle a /command.  Returns False when the loop should stop."""
        parts = line.split(None, 1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd in ("/quit", "/exit"):
            return False
        if cmd == "/reset":
            self._service.reset()
            self._print("Conversation reset.")
        elif cmd == "/provider":
            if not arg:
                self._print(f"Current provider: {self._client.provider_id}")
            else:
                try:
                    self._service.set_provider(arg)
                    self._print(f"Provider: {arg}")
                except TermAgentError as e:
                    self._print(f"Error: {e}")
        elif cmd == "/model":
            if not arg:
                self._print("Usage: /model <name>")
            else:
                self._service.set_model(arg)
                self._print(f"Model: {arg}")
        elif cmd == "/models":
            try:
                models = await self._client.fetch_models()
            except TermAgentError as e:
                self._print(f"Error: {e}")
            else:
                for model in models:
                    self._print(f"  {model.get('id')}")
                if not models:
                    self._print("No models reported.")
        else:
            self._print(f"Unknown command {cmd}")
        return True

    async def start(self) -> None:
        self._print(f"termagent ({self._client.provider_id}). /quit to exit.")
        while True:
            line = await self._ask(PROMPT)
            if line is None:
                self._print()
                return
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await self.handle_command(line):
                    return
                continue
            await self.handle_message(line)

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Non-interactive mode
# ---------------------------------------------------------------------------


def _preview(value: Any, limit: int = MAX_PREVIEW_CHARS) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= limit else text[:limit] + "..."


def format_event_line(event: ConversationEvent) -> str | None:
    """One stderr line summarising *event*, or None for events that are not logged."""
    if isinstance(event, ToolStartedEvent):
        return f"tool_started {event.tool_name} {_preview(event.arguments)}"
    if isinstance(event, CommandMessageEvent):
        return f"command_message {event.message.status} {event.message.command}"
    if isinstance(event, ApprovalRequiredEvent):
        return f"approval_required {event.approval.tool_name}"
    if isinstance(event, RetryEvent):
        return f"retry {event.tool_name} {event.attempt}/{event.max_retries}: {event.error_message}"
    if isinstance(event, ErrorEvent):
        return f"error {event.message}"
    return None


async def run_non_interactive(
    session: ConversationSession,
    prompt: str,
    *,
    auto_approve: bool = False,
    out: TextIO | None = None,
    err: TextIO | None = None,
) -> int:
    """Run one prompt to completion without a terminal.

    Answer text goes to *out*, event summaries to *err*.  Approvals are
    granted with *auto_approve* and rejected otherwise.  Returns the exit
    code.
    """
    out = out or sys.stdout
    err = err or sys.stderr
    reported = False

    def on_event(event: ConversationEvent) -> None:
        nonlocal reported
        if isinstance(event, TextDeltaEvent):
            out.write(event.delta)
            out.flush()
            return
        line = format_event_line(event)
        if line is not None:
            reported = reported or isinstance(event, ErrorEvent)
            err.write(line + "\n")

    if auto_approve:
        err.write("Warning: --auto-approve enabled. Tools may run without prompting.\n")

    try:
        result = await session.send_message(prompt, on_event=on_event)
        while isinstance(result, ApprovalRequiredResult):
            if auto_approve:
                result = await session.handle_approval_decision("y", on_event=on_event)
            else:
                result = await session.handle_approval_decision(
                    "n", NON_INTERACTIVE_REJECTION_REASON, on_event=on_event
                )
            if result is None:
                err.write("error No pending approval to answer\n")
                return 1
    except Exception as e:
        logger.debug("Non-interactive run failed: %s", e)
        if not reported:
            err.write(f"error {e}\n")
        return 1

    out.write("\n")
    out.flush()
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_service(settings: Settings) -> tuple[ConversationService, AgentRunClient]:
    settings_service = SettingsService(settings)
    logging_service = LoggingService(logging.getLogger("termagent"))
    registry = create_default_registry(settings.providers, create_sdk_client_factory(logging_service))
    client = AgentRunClient(
        settings_service=settings_service,
        logging_service=logging_service,
        registry=registry,
        conversation_store=ConversationStore(),
        tools=create_builtin_tools(settings_service),
    )
    session = ConversationSession(
        agent_client=client,
        logging_service=logging_service,
        max_consecutive_tool_failures=settings.agent.max_consecutive_tool_failures,
    )
    return ConversationService(session, logging_service), client


def build_chat(settings: Settings) -> TerminalChat:
    service, client = build_service(settings)
    return TerminalChat(service, client)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="termagent", description="Chat with an LLM agent in your terminal.")
    parser.add_argument("--provider", help="provider id (openai, openrouter, github-copilot, ...)")
    parser.add_argument("--model", help="model name for the provider")
    parser.add_argument(
        "--reasoning-effort",
        choices=["default", "none", "minimal", "low", "medium", "high"],
        help="reasoning effort for models that support it",
    )
    parser.add_argument("-p", "--prompt", help="run this prompt without the interactive loop and exit")
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="with --prompt, run tools that need approval without asking",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    """Entry point."""
    args = parse_args(argv)
    settings = Settings()
    if args.provider:
        settings.agent.provider = args.provider
    if args.model:
        settings.agent.model = args.model
    if args.reasoning_effort:
        settings.agent.reasoning_effort = args.reasoning_effort

    configure_logging(settings)
    logger.info("Starting termagent: provider=%s model=%s", settings.agent.provider, settings.agent.model)

    if args.prompt is not None:
        service, client = build_service(settings)
        try:
            return await run_non_interactive(service.session, args.prompt, auto_approve=args.auto_approve)
        finally:
            await client.aclose()

    chat = build_chat(settings)
    try:
        await chat.start()
    finally:
        await chat.close()
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
