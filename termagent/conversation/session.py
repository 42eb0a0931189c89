"""Conversation session: one user's conversation with the agent.

The session drives the run client, turns run events into
ConversationEvents, remembers the continuation token between turns and
owns the approval state machine::

    idle -> streaming -> approval_pending | idle
    approval_pending -> streaming (decision) | idle (abort)

``run()`` / ``resume()`` are the streaming primitives; ``send_message()``
and ``handle_approval_decision()`` collect them into a single result.
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field, replace
from functools import partial
from typing import TYPE_CHECKING, Any

from termagent.agent.runner import RawModelEvent, RunItemEvent, RunState
from termagent.conversation.approval import ApprovalState, PendingApprovalContext
from termagent.conversation.commands import (
    capture_tool_call_arguments,
    emit_command_messages,
    unemitted_command_messages,
)
from termagent.conversation.events import (
    ApprovalRequiredEvent,
    ConversationEvent,
    ErrorEvent,
    FinalEvent,
    ReasoningDeltaEvent,
    RetryEvent,
    TextDeltaEvent,
    ToolStartedEvent,
)
from termagent.conversation.messages import (
    ApprovalDescriptor,
    ApprovalRequiredResult,
    CommandMessage,
    ConversationResult,
    ResponseResult,
)
from termagent.errors import (
    CancellationError,
    ConsecutiveFailureThresholdError,
    HallucinatedToolError,
    ModelBehaviorError,
    is_abort_like_error,
    is_max_turns_error,
)
from termagent.logging_service import LoggingService
from termagent.protocol import ReasoningDelta, TextDelta, call_id_of
from termagent.tools.base import command_text, parse_arguments
from termagent.usage import Usage

if TYPE_CHECKING:
    from termagent.agent.client import AgentRunClient, RetryCallback, RetryingRun

MAX_HALLUCINATION_RETRIES = 2
DEFAULT_MAX_CONSECUTIVE_TOOL_FAILURES = 3
CONTINUE_PROMPT = "Please continue with your previous task."
MAX_TURNS_TOOL_NAME = "max_turns"
REJECTED_MESSAGE = "Tool execution was not approved."
ABORTED_APPROVAL_MESSAGE = "Tool execution was not approved. User provided new input instead: {text}"

_TOOL_NAME_RE = re.compile(r"Tool (\S+) not found")

EventCallback = Callable[[ConversationEvent], None]


def is_hallucinated_tool_error(error: BaseException) -> bool:
    """True when the model called a tool the agent does not have."""
    if not isinstance(error, ModelBehaviorError):
        return False
    message = str(error).lower()
    return "tool" in message and "not found in agent" in message


def hallucinated_tool_name(error: BaseException) -> str:
    match = _TOOL_NAME_RE.search(str(error))
    return match.group(1) if match else "unknown"


def rejection_message(reason: str | None) -> str:
    if reason and reason.strip():
        return f"{REJECTED_MESSAGE} User's reason: {reason.strip()}"
    return REJECTED_MESSAGE


@dataclass
class _TurnAccumulator:
    final_output: str = ""
    reasoning_output: str = ""
    emitted_ids: set[str] = field(default_factory=set)
    usage: Usage | None = None
    run: RetryingRun | None = None


class ConversationSession:
    def __init__(
        self,
        session_id: str = "default",
        *,
        agent_client: AgentRunClient,
        logging_service: LoggingService,
        max_consecutive_tool_failures: int = DEFAULT_MAX_CONSECUTIVE_TOOL_FAILURES,
    ) -> None:
        self.id = session_id
        self.agent_client = agent_client
        self._log = logging_service
        self.previous_response_id: str | None = None
        self.approvals = ApprovalState()
        self.max_consecutive_tool_failures = max_consecutive_tool_failures
        self.consecutive_tool_failures = 0
        self._args_by_id: dict[str, Any] = {}

    @property
    def waiting_for_approval(self) -> bool:
        return self.approvals.get_pending() is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Forget the conversation, including provider-side stored history."""
        self.agent_client.abort()
        self.agent_client.clear_conversations(self.previous_response_id)
        self.previous_response_id = None
        self.approvals.clear()
        self._args_by_id.clear()
        self.consecutive_tool_failures = 0
        self._log.info("Conversation reset", session=self.id)

    def abort(self) -> None:
        """Cancel the in-flight operation.  Safe to call when idle."""
        self.agent_client.abort()
        if self.approvals.abort_pending():
            self._log.debug("Aborted approval; it will be rejected on the next message")

    def set_model(self, model: str) -> None:
        self.agent_client.set_model(model)

    def set_provider(self, provider_id: str) -> None:
        self.agent_client.set_provider(provider_id)

    def set_reasoning_effort(self, effort: str) -> None:
        self.agent_client.set_reasoning_effort(effort)

    def set_temperature(self, temperature: float | None) -> None:
        self.agent_client.set_temperature(temperature)

    def set_retry_callback(self, callback: RetryCallback | None) -> None:
        self.agent_client.set_retry_callback(callback)

    # ------------------------------------------------------------------
    # Streaming primitives
    # ------------------------------------------------------------------

    async def run(self, text: str, *, attempt: int = 0) -> AsyncIterator[ConversationEvent]:
        """Start a turn for *text* and yield its events.

        Ends with exactly one ``approval_required`` or ``final`` event, or
        raises after yielding an ``error`` event.
        """
        aborted = self.approvals.consume_aborted()
        if aborted is not None and aborted.state is not None:
            resolved = False
            try:
                async for event in self._resolve_aborted(aborted, text):
                    resolved = True
                    yield event
                return
            except CancellationError:
                raise
            except Exception as e:
                if resolved:
                    raise
                self._log.warn("Could not resolve aborted approval, starting a new turn", error=str(e))

        previous = self.previous_response_id
        acc = _TurnAccumulator()
        try:
            async for event in self._stream_turn(
                lambda: self.agent_client.start_stream(text, previous_response_id=previous),
                acc,
                preserve_args=False,
            ):
                yield event
        except Exception as e:
            started = acc.run
            if started is not None and started.state.generated_items:
                # Earlier turns already ran their tools; resume from there
                self.previous_response_id = started.last_response_id
                retry = partial(self._continue, started.state, acc.emitted_ids, attempt=attempt + 1)
            else:
                self.previous_response_id = previous
                retry = partial(self.run, text, attempt=attempt + 1)
            async for event in self._recover(e, attempt, retry):
                yield event

    async def resume(self, answer: str, rejection_reason: str | None = None) -> AsyncIterator[ConversationEvent]:
        """Apply the user's decision to the pending approval and continue."""
        pending = self.approvals.get_pending()
        if pending is None:
            return
        self.approvals.clear_pending()

        if pending.is_max_turns_prompt:
            if answer == "y":
                async for event in self.run(CONTINUE_PROMPT):
                    yield event
            return

        if answer == "y":
            pending.state.approve(pending.interruption)
        else:
            pending.state.reject(pending.interruption, rejection_message(rejection_reason))
        self._args_by_id = dict(pending.args_by_id)

        async for event in self._continue(pending.state, pending.emitted_command_ids):
            yield event

    async def _continue(
        self,
        state: RunState,
        emitted_ids: set[str],
        *,
        attempt: int = 0,
    ) -> AsyncIterator[ConversationEvent]:
        acc = _TurnAccumulator(emitted_ids=set(emitted_ids))
        try:
            async for event in self._stream_turn(
                lambda: self.agent_client.continue_run_stream(state, previous_response_id=self.previous_response_id),
                acc,
                preserve_args=True,
            ):
                yield event
        except Exception as e:
            async for event in self._recover(
                e, attempt, lambda: self._continue(state, acc.emitted_ids, attempt=attempt + 1)
            ):
                yield event

    async def _resolve_aborted(self, aborted: PendingApprovalContext, text: str) -> AsyncIterator[ConversationEvent]:
        """Reject a parked approval with the user's new input as the reason."""
        self._log.debug("Rejecting aborted approval with new user input")
        aborted.state.reject(aborted.interruption, ABORTED_APPROVAL_MESSAGE.format(text=text))
        self._args_by_id = dict(aborted.args_by_id)
        async for event in self._continue(aborted.state, aborted.emitted_command_ids):
            yield event

    async def _recover(
        self,
        error: Exception,
        attempt: int,
        retry: Callable[[], AsyncIterator[ConversationEvent]],
    ) -> AsyncIterator[ConversationEvent]:
        """Turn a failed stream into a prompt, a retry or an error event."""
        if is_max_turns_error(error):
            yield self._max_turns_prompt(error)
            return

        if is_hallucinated_tool_error(error):
            tool_name = hallucinated_tool_name(error)
            if attempt < MAX_HALLUCINATION_RETRIES:
                self._log.warn(
                    "Tool hallucination detected, retrying",
                    tool_name=tool_name,
                    attempt=attempt + 1,
                    max_retries=MAX_HALLUCINATION_RETRIES,
                )
                yield RetryEvent(
                    tool_name=tool_name,
                    attempt=attempt + 1,
                    max_retries=MAX_HALLUCINATION_RETRIES,
                    error_message=str(error),
                )
                async for event in retry():
                    yield event
                return
            exhausted = HallucinatedToolError(str(error), tool_name=tool_name)
            yield ErrorEvent(str(exhausted), kind=type(exhausted).__name__)
            raise exhausted from error

        if is_abort_like_error(error):
            self._log.debug("Stream aborted", error=str(error))
        else:
            yield ErrorEvent(str(error), kind=type(error).__name__)
        raise error

    async def _stream_turn(
        self,
        start: Callable[[], Awaitable[RetryingRun]],
        acc: _TurnAccumulator,
        *,
        preserve_args: bool,
    ) -> AsyncIterator[ConversationEvent]:
        run = await start()
        acc.run = run
        async for event in self._stream_events(run, acc, preserve_args=preserve_args):
            yield event
        yield self._finish(run, acc)

    async def _stream_events(
        self,
        run: RetryingRun,
        acc: _TurnAccumulator,
        *,
        preserve_args: bool,
    ) -> AsyncIterator[ConversationEvent]:
        if not preserve_args:
            self._args_by_id.clear()
        tools = self.agent_client.tools

        async for event in run:
            if isinstance(event, RawModelEvent):
                data = event.data
                if isinstance(data, TextDelta) and data.delta:
                    acc.final_output += data.delta
                    yield TextDeltaEvent(data.delta, acc.final_output)
                elif isinstance(data, ReasoningDelta) and data.delta.replace("\n", ""):
                    acc.reasoning_output += data.delta
                    yield ReasoningDeltaEvent(data.delta, acc.reasoning_output)
                continue

            if not isinstance(event, RunItemEvent):
                continue
            item = event.item
            if event.name == "tool_called":
                capture_tool_call_arguments(item, self._args_by_id)
                call_id = call_id_of(item)
                if call_id:
                    yield ToolStartedEvent(
                        tool_call_id=call_id,
                        tool_name=item.get("name") or "unknown",
                        arguments=parse_arguments(item.get("arguments")),
                    )
            elif event.name == "tool_output":
                for command_event in emit_command_messages(
                    [item],
                    tools=tools,
                    args_by_id=self._args_by_id,
                    emitted_ids=acc.emitted_ids,
                ):
                    yield command_event
                    self._track_tool_result(command_event.message)

        acc.usage = run.usage

    def _track_tool_result(self, message: CommandMessage) -> None:
        if message.success is False:
            self.consecutive_tool_failures += 1
            if self.consecutive_tool_failures >= self.max_consecutive_tool_failures:
                self._log.warn("Consecutive tool failure threshold reached", failures=self.consecutive_tool_failures)
                self.agent_client.abort()
                raise ConsecutiveFailureThresholdError(self.consecutive_tool_failures)
        elif message.success:
            self.consecutive_tool_failures = 0

    def _finish(self, run: RetryingRun, acc: _TurnAccumulator) -> ApprovalRequiredEvent | FinalEvent:
        self.previous_response_id = run.last_response_id

        interruptions = run.interruptions
        if interruptions:
            interruption = interruptions[0]
            self.approvals.set_pending(
                PendingApprovalContext(
                    state=run.state,
                    interruption=interruption,
                    emitted_command_ids=acc.emitted_ids,
                    args_by_id=dict(self._args_by_id),
                )
            )
            return ApprovalRequiredEvent(
                ApprovalDescriptor(
                    agent_name=interruption.agent.name,
                    tool_name=interruption.name or "Unknown Tool",
                    arguments_text=command_text(None, parse_arguments(interruption.arguments)),
                    call_id=interruption.call_id,
                )
            )

        self.approvals.clear_pending()
        command_messages = unemitted_command_messages(
            run.new_items,
            tools=self.agent_client.tools,
            args_by_id=self._args_by_id,
            emitted_ids=acc.emitted_ids,
        )
        return FinalEvent(
            final_text=acc.final_output or run.final_output or "Done.",
            reasoning_text=acc.reasoning_output,
            command_messages=command_messages,
            usage=acc.usage,
        )

    def _max_turns_prompt(self, error: Exception) -> ApprovalRequiredEvent:
        last_response_id = getattr(error, "last_response_id", None)
        if last_response_id:
            self.previous_response_id = last_response_id
        self.approvals.set_pending(PendingApprovalContext(state=None, interruption=None, is_max_turns_prompt=True))
        self._log.info("Max turns reached, asking to continue", error=str(error))
        return ApprovalRequiredEvent(
            ApprovalDescriptor(
                agent_name=self.agent_client.agent_name,
                tool_name=MAX_TURNS_TOOL_NAME,
                arguments_text=f"{error}. Continue with the task?",
                is_max_turns_prompt=True,
            )
        )

    # ------------------------------------------------------------------
    # Collected results
    # ------------------------------------------------------------------

    async def send_message(self, text: str, *, on_event: EventCallback | None = None) -> ConversationResult:
        self.consecutive_tool_failures = 0
        return await self._collect(self.run(text), on_event)

    async def handle_approval_decision(
        self,
        answer: str,
        rejection_reason: str | None = None,
        *,
        on_event: EventCallback | None = None,
    ) -> ConversationResult | None:
        pending = self.approvals.get_pending()
        if pending is None:
            return None
        if pending.is_max_turns_prompt and answer != "y":
            self.approvals.clear_pending()
            return ResponseResult(final_text="")
        return await self._collect(self.resume(answer, rejection_reason), on_event)

    async def _collect(
        self,
        events: AsyncIterator[ConversationEvent],
        on_event: EventCallback | None,
    ) -> ConversationResult:
        result: ConversationResult | None = None
        async for event in events:
            if on_event is not None:
                on_event(event)
            if isinstance(event, ApprovalRequiredEvent):
                pending = self.approvals.get_pending()
                raw = pending.interruption if pending is not None else None
                result = ApprovalRequiredResult(replace(event.approval, raw_interruption=raw))
            elif isinstance(event, FinalEvent):
                result = ResponseResult(
                    final_text=event.final_text or "Done.",
                    reasoning_text=event.reasoning_text,
                    command_messages=list(event.command_messages),
                    usage=event.usage,
                )
        return result if result is not None else ResponseResult(final_text="Done.")

