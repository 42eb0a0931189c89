"""Transport-friendly conversation events yielded by ConversationSession.run()."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from termagent.conversation.messages import ApprovalDescriptor, CommandMessage
from termagent.usage import Usage


@dataclass
class TextDeltaEvent:
    delta: str
    full_text: str = ""
    type: str = field(default="text_delta", init=False)


@dataclass
class ReasoningDeltaEvent:
    delta: str
    full_text: str = ""
    type: str = field(default="reasoning_delta", init=False)


@dataclass
class ToolStartedEvent:
    """A tool was called and has not produced output yet."""

    tool_call_id: str
    tool_name: str
    arguments: Any = None
    type: str = field(default="tool_started", init=False)


@dataclass
class CommandMessageEvent:
    message: CommandMessage
    type: str = field(default="command_message", init=False)


@dataclass
class ApprovalRequiredEvent:
    # raw_interruption is left out; it stays with the session
    approval: ApprovalDescriptor
    type: str = field(default="approval_required", init=False)


@dataclass
class FinalEvent:
    final_text: str
    reasoning_text: str = ""
    # Only command messages that were not already streamed live
    command_messages: list[CommandMessage] = field(default_factory=list)
    usage: Usage | None = None
    type: str = field(default="final", init=False)


@dataclass
class ErrorEvent:
    message: str
    kind: str | None = None
    type: str = field(default="error", init=False)


@dataclass
class RetryEvent:
    tool_name: str
    attempt: int
    max_retries: int
    error_message: str
    type: str = field(default="retry", init=False)


ConversationEvent = (
    TextDeltaEvent
    | ReasoningDeltaEvent
    | ToolStartedEvent
    | CommandMessageEvent
    | ApprovalRequiredEvent
    | FinalEvent
    | ErrorEvent
    | RetryEvent
)
