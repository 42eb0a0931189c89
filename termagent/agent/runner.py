"""Agent loop: model turns, tool execution and approval interruptions.

A run alternates model calls and tool calls until the model answers
without calling a tool.  Tools whose ``needs_approval`` says so are not
executed; the run stops with ``interruptions`` set and a RunState that
can be approved/rejected and handed back to ``Runner.run_streamed`` to
resume exactly where it stopped.

Every model call after the first sends only the new items (tool outputs)
together with ``previous_response_id``; each adapter either chains natively
or replays its stored history.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from termagent.cancellation import CancellationToken
from termagent.errors import CancellationError, MaxTurnsExceededError, ModelBehaviorError, ProviderError, UserError
from termagent.protocol import (
    ErrorEvent,
    Item,
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ModelSettings,
    ResponseDone,
    StreamEvent,
    output_text,
    user_message,
)
from termagent.tools.base import TOOL_ERROR_PREFIX, Tool, ToolContext, parse_arguments
from termagent.usage import Usage

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 100
REJECTION_MESSAGE = "Tool execution was not approved."


@dataclass
class Agent:
    name: str
    instructions: str
    model: str | None = None
    tools: list[Tool] = field(default_factory=list)
    hosted_tools: list[dict[str, Any]] = field(default_factory=list)
    model_settings: ModelSettings = field(default_factory=ModelSettings)

    def get_tool(self, name: str) -> Tool | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def serialized_tools(self) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self.tools] + [dict(t) for t in self.hosted_tools]


@dataclass
class AgentRef:
    name: str


@dataclass
class Interruption:
    """A tool call paused for user approval."""

    name: str
    arguments: str
    call_id: str | None
    agent: AgentRef
    raw_item: Item
    type: str = "function_call"


class Decision(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected"


# ---------------------------------------------------------------------------
# Run events
# ---------------------------------------------------------------------------


@dataclass
class RawModelEvent:
    """A provider stream event, passed through untouched."""

    data: StreamEvent
    type: str = field(default="raw_model_event", init=False)


@dataclass
class RunItemEvent:
    """``tool_called`` when the model requests a tool, ``tool_output`` when it ran."""

    name: str
    item: Item
    type: str = field(default="run_item_event", init=False)


RunEvent = RawModelEvent | RunItemEvent


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


class RunState:
    """Resumable state of one agent run.  Opaque to callers except for
    ``approve`` / ``reject``."""

    def __init__(self, agent: Agent, original_input: str | list[Item], max_turns: int) -> None:
        self.agent = agent
        self.original_input = original_input
        self.max_turns = max_turns
        self.current_turn = 0
        self.generated_items: list[Item] = []
        self.next_input: str | list[Item] = original_input
        self.pending_calls: list[Item] = []
        self.tool_outputs: dict[str, Item] = {}
        self.interruptions: list[Interruption] = []
        self.last_response_id: str | None = None
        self.final_output: str | None = None
        self._decisions: dict[str, tuple[Decision, str | None]] = {}

    def approve(self, interruption: Interruption) -> None:
        self._decide(interruption, Decision.APPROVED, None)

    def reject(self, interruption: Interruption, message: str | None = None) -> None:
        self._decide(interruption, Decision.REJECTED, message)

    def _decide(self, interruption: Interruption, decision: Decision, message: str | None) -> None:
        key = interruption.call_id or interruption.name
        if key in self._decisions:
            raise UserError(f"Interruption for {interruption.name} ({key}) was already resolved")
        self._decisions[key] = (decision, message)

    def decision_for(self, call: Item) -> tuple[Decision, str | None] | None:
        return self._decisions.get(call.get("call_id") or call.get("name"))

    @property
    def history(self) -> list[Item]:
        if isinstance(self.original_input, str):
            start = [user_message(self.original_input)]
        else:
            start = list(self.original_input)
        return start + self.generated_items


# ---------------------------------------------------------------------------
# Streamed run
# ---------------------------------------------------------------------------


class StreamedRun:
    """Async-iterable run.  Result attributes are valid once iteration ends."""

    def __init__(
        self,
        provider: ModelProvider,
        state: RunState,
        *,
        previous_response_id: str | None,
        signal: CancellationToken | None,
    ) -> None:
        self._provider = provider
        self.state = state
        self._signal = signal
        self._started = False
        self._new_items_start = len(state.generated_items)
        self.usage = Usage()
        if state.last_response_id is None:
            state.last_response_id = previous_response_id

    # Result accessors -------------------------------------------------

    @property
    def interruptions(self) -> list[Interruption]:
        return list(self.state.interruptions)

    @property
    def new_items(self) -> list[Item]:
        return self.state.generated_items[self._new_items_start:]

    @property
    def history(self) -> list[Item]:
        return self.state.history

    @property
    def final_output(self) -> str | None:
        return self.state.final_output

    @property
    def last_response_id(self) -> str | None:
        return self.state.last_response_id

    # Iteration --------------------------------------------------------

    def __aiter__(self) -> AsyncIterator[RunEvent]:
        if self._started:
            raise UserError("A streamed run can only be iterated once")
        self._started = True
        return self._run()

    async def _run(self) -> AsyncIterator[RunEvent]:
        state = self.state
        agent = state.agent

        if state.pending_calls:
            async for event in self._execute_pending():
                yield event
            if state.interruptions:
                return

        model = self._provider.get_model(agent.model)
        while True:
            if state.current_turn >= state.max_turns:
                raise MaxTurnsExceededError(
                    f"Max turns ({state.max_turns}) exceeded",
                    max_turns=state.max_turns,
                    last_response_id=state.last_response_id,
                )
            state.current_turn += 1

            request = ModelRequest(
                system_instructions=agent.instructions,
                input=state.next_input,
                model_settings=agent.model_settings,
                tools=agent.serialized_tools(),
                signal=self._signal,
                previous_response_id=state.last_response_id,
            )

            response: ModelResponse | None = None
            async for event in model.stream_response(request):
                if isinstance(event, ErrorEvent):
                    raise ProviderError(event.message, status=event.status)
                if isinstance(event, ResponseDone):
                    response = event.response
                yield RawModelEvent(event)
            if response is None:
                raise ModelBehaviorError("Model stream ended without a completed response")

            calls = [item for item in response.output if item.get("type") == "function_call"]
            # Checked before the state advances so the turn can be replayed
            for call in calls:
                if agent.get_tool(call.get("name", "")) is None:
                    raise ModelBehaviorError(f"Tool {call.get('name')} not found in agent {agent.name}.")

            self.usage = self.usage + response.usage
            state.last_response_id = response.id
            state.generated_items.extend(response.output)
            for call in calls:
                yield RunItemEvent("tool_called", call)

            if not calls:
                state.final_output = output_text(response.output)
                return

            state.pending_calls = calls
            async for event in self._execute_pending():
                yield event
            if state.interruptions:
                return

    async def _execute_pending(self) -> AsyncIterator[RunEvent]:
        state = self.state
        agent = state.agent
        state.interruptions = []

        for call in state.pending_calls:
            call_id = call.get("call_id") or call.get("name")
            if call_id in state.tool_outputs:
                continue

            tool = agent.get_tool(call.get("name", ""))
            if tool is None:
                raise ModelBehaviorError(f"Tool {call.get('name')} not found in agent {agent.name}.")
            context = ToolContext(agent_name=agent.name, call_id=call.get("call_id"), signal=self._signal)
            params = parse_arguments(call.get("arguments"))
            if not isinstance(params, dict):
                params = {}

            decision = state.decision_for(call)
            if decision is None and await tool.requires_approval(params, context):
                state.interruptions.append(
                    Interruption(
                        name=tool.name,
                        arguments=call.get("arguments") or "",
                        call_id=call.get("call_id"),
                        agent=AgentRef(agent.name),
                        raw_item=call,
                    )
                )
                continue

            rejected = decision is not None and decision[0] is Decision.REJECTED
            if rejected:
                output = decision[1] or REJECTION_MESSAGE
            else:
                output = await self._invoke(tool, params, context)

            item: Item = {
                "type": "function_call_output",
                "call_id": call.get("call_id"),
                "name": tool.name,
                "arguments": call.get("arguments") or "",
                "output": output,
            }
            if rejected:
                item["is_approval_rejection"] = True
            state.tool_outputs[call_id] = item
            state.generated_items.append(item)
            yield RunItemEvent("tool_output", item)

        if state.interruptions:
            return

        state.next_input = [state.tool_outputs[c.get("call_id") or c.get("name")] for c in state.pending_calls]
        state.pending_calls = []

    async def _invoke(self, tool: Tool, params: dict[str, Any], context: ToolContext) -> str:
        invocation = tool.invoke(params, context)
        try:
            if self._signal is not None:
                return await self._signal.run(invocation)
            return await invocation
        except CancellationError:
            raise
        except Exception as e:
            logger.exception("Tool execution error for %s", tool.name)
            return f"{TOOL_ERROR_PREFIX} {e}"


class Runner:
    """Starts and resumes streamed agent runs against one model provider."""

    def __init__(self, model_provider: ModelProvider) -> None:
        self.model_provider = model_provider

    def run_streamed(
        self,
        agent: Agent,
        input: str | list[Item] | RunState,
        *,
        previous_response_id: str | None = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        signal: CancellationToken | None = None,
    ) -> StreamedRun:
        if isinstance(input, RunState):
            state = input
            if not state.pending_calls and state.final_output is not None:
                raise UserError("Run state has already finished")
            # Resumed runs use the agent configured now (tools may have been rebuilt)
            state.agent = agent
        else:
            state = RunState(agent, input, max_turns)
        return StreamedRun(
            self.model_provider,
            state,
            previous_response_id=previous_response_id,
            signal=signal,
        )

    async def aclose(self) -> None:
        close = getattr(self.model_provider, "aclose", None)
        if close is not None:
            await close()
