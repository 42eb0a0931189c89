"""Conversation service: the transcript and the state a terminal UI renders.

The service owns the Message list and keeps it in generation order.
Reasoning and answer text are buffered separately, and both are committed
before a command message is appended.  Errors from a turn become an
``Error: ...`` bot message; user aborts are not shown.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TYPE_CHECKING

from termagent.conversation.events import (
    CommandMessageEvent,
    ConversationEvent,
    ReasoningDeltaEvent,
    RetryEvent,
    TextDeltaEvent,
)
from termagent.conversation.messages import (
    ApprovalMessage,
    ApprovalRequiredResult,
    BotMessage,
    CommandMessage,
    ConversationResult,
    Message,
    ReasoningMessage,
    SystemMessage,
    UserMessage,
)
from termagent.conversation.session import ConversationSession, EventCallback, rejection_message
from termagent.errors import is_abort_like_error
from termagent.logging_service import LoggingService

if TYPE_CHECKING:
    from termagent.agent.client import RetryCallback


class ConversationState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    APPROVAL_PENDING = "approval_pending"


class _TurnView:
    """Applies one turn's events to the transcript."""

    def __init__(self, messages: list[Message]) -> None:
        self.messages = messages
        self.text = ""
        self.reasoning = ""
        self.reasoning_message: ReasoningMessage | None = None
        self.text_flushed = False

    def on_event(self, event: ConversationEvent) -> None:
        if isinstance(event, TextDeltaEvent):
            self.text += event.delta
        elif isinstance(event, ReasoningDeltaEvent):
            self.reasoning += event.delta
            if not self.reasoning.strip():
                return
            if self.reasoning_message is None:
                self.reasoning_message = ReasoningMessage(self.reasoning)
                self.messages.append(self.reasoning_message)
            else:
                self.reasoning_message.text = self.reasoning
        elif isinstance(event, CommandMessageEvent):
            self.seal_reasoning()
            self.flush_text()
            self.messages.append(event.message)
        elif isinstance(event, RetryEvent):
            # Text of the failed attempt is dropped; the retry streams its own answer
            self.text = ""
            self.seal_reasoning()
            self.messages.append(
                SystemMessage(
                    f"Tool hallucination detected ({event.tool_name}). "
                    f"Retrying... (Attempt {event.attempt}/{event.max_retries})"
                )
            )

    def seal_reasoning(self) -> None:
        # The reasoning message is already in the transcript; later chunks start a new one
        self.reasoning = ""
        self.reasoning_message = None

    def flush_text(self) -> None:
        if self.text.strip():
            self.messages.append(BotMessage(self.text))
            self.text_flushed = True
        self.text = ""

    def finish(self, result: ConversationResult) -> None:
        if isinstance(result, ApprovalRequiredResult):
            self.seal_reasoning()
            self.flush_text()
            self.messages.append(ApprovalMessage(result.approval))
            return

        self.seal_reasoning()
        self.messages.extend(result.command_messages)
        remaining = self.text
        self.text = ""
        if remaining.strip():
            self.messages.append(BotMessage(remaining))
        elif not self.text_flushed and result.final_text:
            self.messages.append(BotMessage(result.final_text))


class ConversationService:
    def __init__(self, session: ConversationSession, logging_service: LoggingService) -> None:
        self._session = session
        self._log = logging_service
        self.messages: list[Message] = []
        self.state = ConversationState.IDLE
        self._view: _TurnView | None = None
        self._approval_message: ApprovalMessage | None = None
        self._parked_approval: ApprovalMessage | None = None

    @property
    def session(self) -> ConversationSession:
        return self._session

    @property
    def session_id(self) -> str:
        return self._session.id

    @property
    def waiting_for_approval(self) -> bool:
        return self.state is ConversationState.APPROVAL_PENDING

    @property
    def live_text(self) -> str | None:
        """Answer text streamed so far that is not committed to the transcript yet."""
        return self._view.text if self._view is not None else None

    @property
    def pending_approval(self) -> ApprovalMessage | None:
        return self._approval_message

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send_message(self, text: str, *, on_event: EventCallback | None = None) -> ConversationResult | None:
        if not text or not text.strip():
            return None

        if self.state is ConversationState.APPROVAL_PENDING:
            self.abort()
        if self._parked_approval is not None:
            # The session rejects the parked call with this text as the reason
            self._parked_approval.record_answer("n", text)
            self._parked_approval = None

        self.messages.append(UserMessage(text))
        return await self._drive(lambda callback: self._session.send_message(text, on_event=callback), on_event)

    async def handle_approval_decision(
        self,
        answer: str,
        rejection_reason: str | None = None,
        *,
        on_event: EventCallback | None = None,
    ) -> ConversationResult | None:
        approval = self._approval_message
        if self.state is not ConversationState.APPROVAL_PENDING or approval is None:
            return None

        answer = "y" if answer.strip().lower() in ("y", "yes") else "n"
        approval.record_answer(answer, rejection_reason)
        self._approval_message = None
        if answer == "n" and not approval.approval.is_max_turns_prompt:
            self.messages.append(self._rejection_command(approval, rejection_reason))

        return await self._drive(
            lambda callback: self._session.handle_approval_decision(answer, rejection_reason, on_event=callback),
            on_event,
        )

    async def _drive(
        self,
        start: Callable[[EventCallback], Awaitable[ConversationResult | None]],
        on_event: EventCallback | None,
    ) -> ConversationResult | None:
        view = _TurnView(self.messages)
        self._view = view
        self.state = ConversationState.STREAMING

        def callback(event: ConversationEvent) -> None:
            view.on_event(event)
            if on_event is not None:
                on_event(event)

        try:
            result = await start(callback)
        except Exception as e:
            self._fail(e)
            return None
        finally:
            self._view = None

        if result is None:
            self.state = ConversationState.IDLE
            return None
        view.finish(result)
        if isinstance(result, ApprovalRequiredResult):
            self._approval_message = self.messages[-1]
            self.state = ConversationState.APPROVAL_PENDING
        else:
            self.state = ConversationState.IDLE
        return result

    def _fail(self, error: Exception) -> None:
        self.state = ConversationState.IDLE
        if is_abort_like_error(error):
            self._log.debug("Turn aborted", error=str(error))
            return
        self._log.error("Turn failed", error=str(error), kind=type(error).__name__)
        self.messages.append(BotMessage(f"Error: {error}", is_error=True))

    def _rejection_command(self, approval: ApprovalMessage, reason: str | None) -> CommandMessage:
        descriptor = approval.approval
        return CommandMessage(
            id=f"{descriptor.call_id or approval.id}-rejected",
            command=descriptor.arguments_text,
            output=rejection_message(reason),
            success=False,
            failure_reason=reason,
            is_approval_rejection=True,
            call_id=descriptor.call_id,
            tool_name=descriptor.tool_name,
            status="failed",
        )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """Stop the current turn.  A pending approval is parked, not answered."""
        self._session.abort()
        if self._approval_message is not None:
            self._parked_approval = self._approval_message
            self._approval_message = None
        self.state = ConversationState.IDLE

    def reset(self) -> None:
        self._session.reset()
        self.messages.clear()
        self._view = None
        self._approval_message = None
        self._parked_approval = None
        self.state = ConversationState.IDLE

    def set_model(self, model: str) -> None:
        self._session.set_model(model)
        self.messages.append(SystemMessage(f"Model set to {model}"))

    def set_provider(self, provider_id: str) -> None:
        self._session.set_provider(provider_id)
        self.messages.append(SystemMessage(f"Provider set to {provider_id}"))

    def set_reasoning_effort(self, effort: str) -> None:
        self._session.set_reasoning_effort(effort)

    def set_temperature(self, temperature: float | None) -> None:
        self._session.set_temperature(temperature)

    def set_retry_callback(self, callback: RetryCallback | None) -> None:
        self._session.set_retry_callback(callback)
