"""Agent run client: provider selection, cancellation and transient retry.

Only one operation is in flight at a time.  ``start_stream`` and
``continue_run_stream`` cancel whatever was running before they begin.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Callable
from typing import Any

from termagent.agent.runner import DEFAULT_MAX_TURNS, Agent, RunEvent, Runner, RunState, StreamedRun
from termagent.cancellation import CancellationToken
from termagent.config import SettingsService
from termagent.conversation.store import ConversationStore
from termagent.errors import CancellationError, ConfigurationError, UserError
from termagent.logging_service import LoggingService
from termagent.protocol import ModelSettings
from termagent.providers.http import is_retryable_error
from termagent.providers.registry import ProviderDefinition, ProviderDependencies, ProviderRegistry
from termagent.tools.base import Tool

AGENT_NAME = "Terminal Assistant"

DEFAULT_INSTRUCTIONS = (
    "You are a helpful assistant running in the user's terminal. "
    "Use the shell tool to inspect and change the workspace when the task needs it, "
    "prefer small verifiable steps, and explain what you did in plain language. "
    "Commands that change the system are shown to the user for approval first."
)

RetryCallback = Callable[[int, int, BaseException], None]


class RetryingRun:
    """Wraps a StreamedRun and restarts it on transient errors.

    A restart happens only while no event has been delivered yet, so the
    consumer never sees a partial stream followed by a replay.
    """

    def __init__(
        self,
        factory: Callable[[], StreamedRun],
        *,
        attempts: int,
        logging_service: LoggingService,
        on_retry: RetryCallback | None = None,
    ) -> None:
        self._factory = factory
        self._attempts = max(1, attempts)
        self._log = logging_service
        self._on_retry = on_retry
        self.run: StreamedRun = factory()

    def __getattr__(self, name: str) -> Any:
        return getattr(self.run, name)

    def __aiter__(self) -> AsyncIterator[RunEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[RunEvent]:
        attempt = 1
        try:
            while True:
                delivered = False
                try:
                    async for event in self.run:
                        delivered = True
                        yield event
                    return
                except CancellationError:
                    raise
                except Exception as e:
                    if delivered or attempt >= self._attempts or not is_retryable_error(e):
                        raise
                    self._log.warn("Transient error before first event, retrying", attempt=attempt, error=str(e))
                    if self._on_retry is not None:
                        self._on_retry(attempt, self._attempts, e)
                    attempt += 1
                    self.run = self._factory()
        finally:
            self._log.clear_correlation_id()


class AgentRunClient:
    """Builds the agent for the selected provider and starts/resumes runs."""

    def __init__(
        self,
        *,
        settings_service: SettingsService,
        logging_service: LoggingService,
        registry: ProviderRegistry,
        conversation_store: ConversationStore | None = None,
        tools: list[Tool] | None = None,
        instructions: str = DEFAULT_INSTRUCTIONS,
    ) -> None:
        self._settings = settings_service
        self._log = logging_service
        self._registry = registry
        self._store = conversation_store if conversation_store is not None else ConversationStore()
        self._tools = list(tools or [])
        self._instructions = instructions
        self._provider_id: str = settings_service.get("agent.provider") or "openai"
        self._runner: Runner | None = None
        self._agent: Agent | None = None
        self._signal: CancellationToken | None = None
        self._on_retry: RetryCallback | None = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def provider_id(self) -> str:
        return self._provider_id

    @property
    def provider(self) -> ProviderDefinition:
        definition = self._registry.get(self._provider_id)
        if definition is None:
            raise ConfigurationError(
                f"Unknown provider '{self._provider_id}'. Available: {', '.join(self._registry.ids())}"
            )
        return definition

    @property
    def agent_name(self) -> str:
        return AGENT_NAME

    @property
    def supports_conversation_chaining(self) -> bool:
        return self.provider.supports_conversation_chaining

    @property
    def tools(self) -> dict[str, Tool]:
        return {tool.name: tool for tool in self._tools}

    def _deps(self) -> ProviderDependencies:
        return ProviderDependencies(
            settings_service=self._settings,
            logging_service=self._log,
            conversation_store=self._store,
        )

    def set_provider(self, provider_id: str) -> None:
        """Switch provider; the agent and runner are rebuilt on next use."""
        if self._registry.get(provider_id) is None:
            raise ConfigurationError(f"Unknown provider '{provider_id}'")
        self.abort()
        self._provider_id = provider_id
        self._settings.set("agent.provider", provider_id)
        self._runner = None
        self._agent = None
        self._log.info("Provider switched", provider=provider_id)

    def set_model(self, model: str) -> None:
        self._settings.set("agent.model", model)
        self._agent = None

    def set_reasoning_effort(self, effort: str) -> None:
        self._settings.set("agent.reasoning_effort", effort)
        self._agent = None

    def set_temperature(self, temperature: float | None) -> None:
        self._settings.set("agent.temperature", temperature)
        self._agent = None

    def set_retry_callback(self, callback: RetryCallback | None) -> None:
        self._on_retry = callback

    def _get_runner(self) -> Runner:
        if self._runner is None:
            runner = self.provider.create_runner(self._deps())
            if runner is None:
                raise ConfigurationError(
                    f"Provider '{self._provider_id}' is not configured. Check its API key or installation."
                )
            self._runner = runner
        return self._runner

    def _get_agent(self) -> Agent:
        if self._agent is None:
            self._agent = Agent(
                name=AGENT_NAME,
                instructions=self._instructions,
                model=self._settings.get("agent.model"),
                tools=list(self._tools),
                hosted_tools=list(self.provider.hosted_tools),
                model_settings=ModelSettings(
                    temperature=self._settings.get("agent.temperature"),
                    reasoning_effort=self._settings.get("agent.reasoning_effort", "default"),
                ),
            )
        return self._agent

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _begin(self) -> CancellationToken:
        if self._signal is not None:
            self._signal.cancel("Superseded by a new operation")
        self._signal = CancellationToken()
        self._log.set_correlation_id(uuid.uuid4().hex[:12])
        return self._signal

    def _retrying(self, factory: Callable[[], StreamedRun]) -> RetryingRun:
        return RetryingRun(
            factory,
            attempts=int(self._settings.get("agent.retry_attempts", 2)) + 1,
            logging_service=self._log,
            on_retry=self._on_retry,
        )

    async def start_stream(self, text: str, *, previous_response_id: str | None = None) -> RetryingRun:
        runner = self._get_runner()
        agent = self._get_agent()
        signal = self._begin()
        max_turns = int(self._settings.get("agent.max_turns", DEFAULT_MAX_TURNS))
        self._log.debug(
            "Starting run",
            provider=self._provider_id,
            chained=previous_response_id is not None,
        )
        return self._retrying(
            lambda: runner.run_streamed(
                agent,
                text,
                previous_response_id=previous_response_id,
                max_turns=max_turns,
                signal=signal,
            )
        )

    async def continue_run_stream(self, state: RunState, *, previous_response_id: str | None = None) -> RetryingRun:
        if not isinstance(state, RunState):
            raise UserError("continue_run_stream needs the RunState of an interrupted run")
        runner = self._get_runner()
        agent = self._get_agent()
        signal = self._begin()
        self._log.debug("Continuing run", provider=self._provider_id)
        return self._retrying(
            lambda: runner.run_streamed(
                agent,
                state,
                previous_response_id=previous_response_id,
                signal=signal,
            )
        )

    def abort(self) -> None:
        """Cancel the in-flight operation, if any.  Safe to call repeatedly."""
        if self._signal is not None:
            self._signal.cancel()
            self._signal = None
        self._log.clear_correlation_id()

    def clear_conversations(self, token: str | None = None) -> None:
        definition = self._registry.get(self._provider_id)
        if definition is not None and definition.clear_conversations is not None:
            definition.clear_conversations(self._deps(), token)

    async def fetch_models(self) -> list[dict[str, Any]]:
        definition = self.provider
        if definition.fetch_models is None:
            return []
        return await definition.fetch_models(self._deps())

    async def aclose(self) -> None:
        self.abort()
        if self._runner is not None:
            await self._runner.aclose()
            self._runner = None
