"""Tests for the agent loop (Runner / StreamedRun / RunState).

Tests cover:
- Plain answers and multi-turn tool loops
- Chaining: follow-up turns send only tool outputs with previous_response_id
- Approval interruptions, approve / reject, and resuming the RunState
- Unknown tools raise ModelBehaviorError without advancing the state
- Max turns, tool errors, provider error events
- Single iteration and finished-state guards
"""

import pytest

from termagent.agent.runner import Agent, RawModelEvent, Runner, RunItemEvent, RunState
from termagent.errors import MaxTurnsExceededError, ModelBehaviorError, ProviderError, UserError
from termagent.protocol import ErrorEvent, TextDelta
from tests.conftest import ScriptedModel, ScriptedProvider, make_tool, text_turn, tool_turn


def _make_agent(*tools) -> Agent:
    return Agent(name="Test Agent", instructions="Be brief.", tools=list(tools))


async def _drain(run) -> list:
    return [event async for event in run]


class TestPlainRuns:
    @pytest.mark.asyncio
    async def test_text_answer(self):
        model = ScriptedModel([text_turn("Hello", response_id="resp_1")])
        run = Runner(ScriptedProvider(model)).run_streamed(_make_agent(), "hi")
        events = await _drain(run)

        assert all(isinstance(e, RawModelEvent) for e in events)
        assert run.final_output == "Hello"
        assert run.last_response_id == "resp_1"
        assert run.usage.total_tokens == 15
        assert model.requests[0].input == "hi"
        assert model.requests[0].system_instructions == "Be brief."

    @pytest.mark.asyncio
    async def test_previous_response_id_is_used_for_first_turn(self):
        model = ScriptedModel([text_turn("Hello")])
        run = Runner(ScriptedProvider(model)).run_streamed(_make_agent(), "hi", previous_response_id="resp_0")
        await _drain(run)
        assert model.requests[0].previous_response_id == "resp_0"

    @pytest.mark.asyncio
    async def test_tool_loop(self):
        shell = make_tool("shell", output="file.txt")
        model = ScriptedModel(
            [
                tool_turn("shell", {"command": "ls"}, call_id="call_1", response_id="resp_1"),
                text_turn("One file.", response_id="resp_2"),
            ]
        )
        run = Runner(ScriptedProvider(model)).run_streamed(_make_agent(shell), "list files")
        events = await _drain(run)

        items = [(e.name, e.item["type"]) for e in events if isinstance(e, RunItemEvent)]
        assert items == [("tool_called", "function_call"), ("tool_output", "function_call_output")]
        shell.execute.assert_called_once()
        assert shell.execute.call_args.args[0] == {"command": "ls"}

        second = model.requests[1]
        assert second.previous_response_id == "resp_1"
        assert second.input == [
            {
                "type": "function_call_output",
                "call_id": "call_1",
                "name": "shell",
                "arguments": '{"command": "ls"}',
                "output": "file.txt",
            }
        ]
        assert run.final_output == "One file."
        assert run.usage.total_tokens == 30

    @pytest.mark.asyncio
    async def test_tool_exception_becomes_error_output(self):
        shell = make_tool("shell", error=RuntimeError("boom"))
        model = ScriptedModel([tool_turn("shell", {"command": "ls"}), text_turn("It failed.")])
        run = Runner(ScriptedProvider(model)).run_streamed(_make_agent(shell), "go")
        events = await _drain(run)
        output = next(e.item for e in events if isinstance(e, RunItemEvent) and e.name == "tool_output")
        assert output["output"] == "Tool error: boom"


class TestApproval:
    @pytest.mark.asyncio
    async def test_interruption_then_approve(self):
        shell = make_tool("shell", output="removed", needs_approval=True)
        model = ScriptedModel(
            [tool_turn("shell", {"command": "rm -rf build"}, call_id="call_9"), text_turn("Cleaned.", response_id="resp_2")]
        )
        runner = Runner(ScriptedProvider(model))
        agent = _make_agent(shell)

        first = runner.run_streamed(agent, "clean up")
        await _drain(first)
        assert len(first.interruptions) == 1
        interruption = first.interruptions[0]
        assert (interruption.name, interruption.call_id) == ("shell", "call_9")
        assert interruption.agent.name == "Test Agent"
        shell.execute.assert_not_called()

        state = first.state
        state.approve(interruption)
        resumed = runner.run_streamed(agent, state)
        await _drain(resumed)

        shell.execute.assert_called_once()
        assert resumed.final_output == "Cleaned."
        assert len(model.requests) == 2

    @pytest.mark.asyncio
    async def test_reject_sends_rejection_output(self):
        shell = make_tool("shell", needs_approval=True)
        model = ScriptedModel([tool_turn("shell", {"command": "rm -rf /"}), text_turn("Understood.")])
        runner = Runner(ScriptedProvider(model))
        agent = _make_agent(shell)

        first = runner.run_streamed(agent, "wipe")
        await _drain(first)
        state = first.state
        state.reject(first.interruptions[0], "Tool execution was not approved. User's reason: no")
        events = await _drain(runner.run_streamed(agent, state))

        shell.execute.assert_not_called()
        output = next(e.item for e in events if isinstance(e, RunItemEvent) and e.name == "tool_output")
        assert output["is_approval_rejection"] is True
        assert model.requests[1].input[0]["output"] == "Tool execution was not approved. User's reason: no"

    @pytest.mark.asyncio
    async def test_decision_cannot_be_made_twice(self):
        shell = make_tool("shell", needs_approval=True)
        model = ScriptedModel([tool_turn("shell", {"command": "rm x"})])
        run = Runner(ScriptedProvider(model)).run_streamed(_make_agent(shell), "go")
        await _drain(run)
        run.state.approve(run.interruptions[0])
        with pytest.raises(UserError):
            run.state.reject(run.interruptions[0])


class TestFailures:
    @pytest.mark.asyncio
    async def test_unknown_tool_does_not_advance_state(self):
        model = ScriptedModel([tool_turn("imaginary_tool", {}, text="Let me try.")])
        run = Runner(ScriptedProvider(model)).run_streamed(_make_agent(make_tool("shell")), "go")
        with pytest.raises(ModelBehaviorError, match="Tool imaginary_tool not found in agent Test Agent"):
            await _drain(run)
        assert run.state.generated_items == []
        assert run.last_response_id is None

    @pytest.mark.asyncio
    async def test_max_turns(self):
        shell = make_tool("shell")
        model = ScriptedModel([tool_turn("shell", {"command": "ls"}, response_id="resp_1")])
        run = Runner(ScriptedProvider(model)).run_streamed(_make_agent(shell), "loop", max_turns=1)
        with pytest.raises(MaxTurnsExceededError) as exc:
            await _drain(run)
        assert exc.value.max_turns == 1
        assert exc.value.last_response_id == "resp_1"
        assert "Max turns (1) exceeded" in str(exc.value)

    @pytest.mark.asyncio
    async def test_error_event_raises_provider_error(self):
        model = ScriptedModel([[TextDelta("partial"), ErrorEvent("upstream exploded", status=502)]])
        run = Runner(ScriptedProvider(model)).run_streamed(_make_agent(), "go")
        with pytest.raises(ProviderError) as exc:
            await _drain(run)
        assert exc.value.status == 502

    @pytest.mark.asyncio
    async def test_stream_without_response_done(self):
        model = ScriptedModel([[TextDelta("partial")]])
        run = Runner(ScriptedProvider(model)).run_streamed(_make_agent(), "go")
        with pytest.raises(ModelBehaviorError, match="without a completed response"):
            await _drain(run)


class TestGuards:
    @pytest.mark.asyncio
    async def test_run_iterates_once(self):
        model = ScriptedModel([text_turn("Hello")])
        run = Runner(ScriptedProvider(model)).run_streamed(_make_agent(), "hi")
        await _drain(run)
        with pytest.raises(UserError):
            await _drain(run)

    @pytest.mark.asyncio
    async def test_finished_state_cannot_resume(self):
        model = ScriptedModel([text_turn("Hello")])
        runner = Runner(ScriptedProvider(model))
        run = runner.run_streamed(_make_agent(), "hi")
        await _drain(run)
        with pytest.raises(UserError, match="already finished"):
            runner.run_streamed(_make_agent(), run.state)

    def test_history_starts_with_user_message(self):
        state = RunState(_make_agent(), "hi", max_turns=5)
        assert state.history == [{"type": "message", "role": "user", "content": "hi"}]
