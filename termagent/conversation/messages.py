"""Chat transcript entries and approval/turn results."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Literal

from termagent.usage import Usage

_ids = itertools.count(1)


def next_message_id() -> str:
    return f"msg-{next(_ids)}"


@dataclass
class ApprovalDescriptor:
    agent_name: str
    tool_name: str
    arguments_text: str
    raw_interruption: Any = None
    call_id: str | None = None
    is_max_turns_prompt: bool = False


@dataclass
class UserMessage:
    text: str
    id: str = field(default_factory=next_message_id)
    sender: str = field(default="user", init=False)


@dataclass
class BotMessage:
    text: str
    reasoning_text: str | None = None
    is_error: bool = False
    id: str = field(default_factory=next_message_id)
    sender: str = field(default="bot", init=False)


@dataclass
class ReasoningMessage:
    text: str
    id: str = field(default_factory=next_message_id)
    sender: str = field(default="reasoning", init=False)


@dataclass
class SystemMessage:
    text: str
    id: str = field(default_factory=next_message_id)
    sender: str = field(default="system", init=False)


@dataclass
class ApprovalMessage:
    approval: ApprovalDescriptor
    answer: Literal["y", "n"] | None = None
    rejection_reason: str | None = None
    id: str = field(default_factory=next_message_id)
    sender: str = field(default="approval", init=False)

    def record_answer(self, answer: Literal["y", "n"], rejection_reason: str | None = None) -> None:
        if self.answer is not None:
            raise ValueError(f"Approval {self.id} already answered with {self.answer!r}")
        self.answer = answer
        self.rejection_reason = rejection_reason


@dataclass
class CommandMessage:
    """One executed (or rejected) tool invocation as shown in the transcript."""

    id: str
    command: str
    output: str
    success: bool | None = None
    failure_reason: str | None = None
    is_approval_rejection: bool = False
    call_id: str | None = None
    tool_name: str | None = None
    tool_args: Any = None
    status: Literal["pending", "running", "completed", "failed"] = "completed"
    sender: str = field(default="command", init=False)


Message = UserMessage | BotMessage | ReasoningMessage | SystemMessage | ApprovalMessage | CommandMessage


@dataclass
class ApprovalRequiredResult:
    approval: ApprovalDescriptor
    type: str = field(default="approval_required", init=False)


@dataclass
class ResponseResult:
    final_text: str
    reasoning_text: str = ""
    command_messages: list[CommandMessage] = field(default_factory=list)
    usage: Usage | None = None
    type: str = field(default="response", init=False)


ConversationResult = ApprovalRequiredResult | ResponseResult
