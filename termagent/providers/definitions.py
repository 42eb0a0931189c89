"""Built-in provider definitions and the default registry."""

from __future__ import annotations

import logging
from typing import Any

from termagent.agent.runner import Runner
from termagent.config import CustomProviderSettings
from termagent.providers.copilot import CopilotClientFactory, CopilotProvider, CopilotSessions
from termagent.providers.openai import OpenAIProvider
from termagent.providers.openrouter import (
    ChatCompletionsModel,
    ChatCompletionsProvider,
    OpenRouterModel,
    fetch_chat_models,
)
from termagent.providers.registry import ProviderDefinition, ProviderDependencies, ProviderRegistry

logger = logging.getLogger(__name__)

OPENROUTER_SENSITIVE_KEYS = [
    "agent.openrouter.api_key",
    "agent.openrouter.base_url",
    "agent.openrouter.referrer",
    "agent.openrouter.title",
]


def _clear_store(deps: ProviderDependencies, token: str | None) -> None:
    if deps.conversation_store is not None:
        deps.conversation_store.clear(token)


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


def _create_openai_runner(deps: ProviderDependencies) -> Runner | None:
    if not deps.settings_service.get("agent.openai.api_key"):
        deps.logging_service.warn("OpenAI API key is not configured; set OPENAI_API_KEY")
        return None
    return Runner(OpenAIProvider(deps.settings_service, deps.logging_service))


async def _fetch_openai_models(deps: ProviderDependencies) -> list[dict[str, Any]]:
    return await fetch_chat_models(
        deps.settings_service.get("agent.openai.base_url") or "https://api.openai.com/v1",
        deps.settings_service.get("agent.openai.api_key") or "",
    )


def openai_definition() -> ProviderDefinition:
    return ProviderDefinition(
        id="openai",
        label="OpenAI",
        create_runner=_create_openai_runner,
        sensitive_setting_keys=["agent.openai.api_key"],
        supports_conversation_chaining=True,
        hosted_tools=[{"type": "web_search"}],
        fetch_models=_fetch_openai_models,
    )


# ---------------------------------------------------------------------------
# OpenRouter
# ---------------------------------------------------------------------------


def _create_openrouter_runner(deps: ProviderDependencies) -> Runner | None:
    if not deps.settings_service.get("agent.openrouter.api_key"):
        deps.logging_service.warn("OpenRouter API key is not configured; set OPENROUTER_API_KEY")
        return None

    def factory(name: str | None) -> ChatCompletionsModel:
        return OpenRouterModel(
            settings_service=deps.settings_service,
            logging_service=deps.logging_service,
            conversation_store=deps.conversation_store,
            model_id=name,
        )

    return Runner(ChatCompletionsProvider(factory))


async def _fetch_openrouter_models(deps: ProviderDependencies) -> list[dict[str, Any]]:
    return await fetch_chat_models(
        deps.settings_service.get("agent.openrouter.base_url") or "https://openrouter.ai/api/v1",
        deps.settings_service.get("agent.openrouter.api_key") or "",
        require_tools=True,
    )


def openrouter_definition() -> ProviderDefinition:
    return ProviderDefinition(
        id="openrouter",
        label="OpenRouter",
        create_runner=_create_openrouter_runner,
        sensitive_setting_keys=list(OPENROUTER_SENSITIVE_KEYS),
        supports_conversation_chaining=False,
        fetch_models=_fetch_openrouter_models,
        clear_conversations=_clear_store,
    )


# ---------------------------------------------------------------------------
# OpenAI-compatible endpoints from settings
# ---------------------------------------------------------------------------


def openai_compatible_definition(config: CustomProviderSettings) -> ProviderDefinition:
    def create_runner(deps: ProviderDependencies) -> Runner | None:
        def factory(name: str | None) -> ChatCompletionsModel:
            model = ChatCompletionsModel(
                model_id=name or deps.settings_service.get("agent.model") or "default",
                base_url=config.base_url,
                api_key=config.api_key,
                settings_service=deps.settings_service,
                logging_service=deps.logging_service,
                conversation_store=deps.conversation_store,
                default_reasoning_effort=None,
            )
            model.provider_name = config.label or config.id
            return model

        return Runner(ChatCompletionsProvider(factory))

    async def fetch_models(deps: ProviderDependencies) -> list[dict[str, Any]]:
        return await fetch_chat_models(config.base_url, config.api_key)

    return ProviderDefinition(
        id=config.id,
        label=config.label or config.id,
        create_runner=create_runner,
        supports_conversation_chaining=False,
        fetch_models=fetch_models,
        clear_conversations=_clear_store,
        is_runtime_defined=True,
    )


# ---------------------------------------------------------------------------
# GitHub Copilot (SDK-driven)
# ---------------------------------------------------------------------------


def copilot_definition(client_factory: CopilotClientFactory | None = None) -> ProviderDefinition:
    sessions = CopilotSessions()

    def create_runner(deps: ProviderDependencies) -> Runner | None:
        if client_factory is None:
            deps.logging_service.warn("GitHub Copilot SDK client is not available")
            return None
        return Runner(CopilotProvider(client_factory, deps.settings_service, deps.logging_service, sessions))

    async def fetch_models(deps: ProviderDependencies) -> list[dict[str, Any]]:
        if client_factory is None:
            return []
        client = await client_factory()
        models = await client.list_models()
        return [{"id": m.get("id"), "name": m.get("name") or m.get("id")} for m in models]

    def clear_conversations(deps: ProviderDependencies, token: str | None) -> None:
        sessions.forget(token)

    return ProviderDefinition(
        id="github-copilot",
        label="GitHub Copilot",
        create_runner=create_runner,
        supports_conversation_chaining=True,
        fetch_models=fetch_models,
        clear_conversations=clear_conversations,
    )


def create_default_registry(
    custom_providers: list[CustomProviderSettings] | None = None,
    copilot_client_factory: CopilotClientFactory | None = None,
) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(openai_definition())
    registry.register(openrouter_definition())
    registry.register(copilot_definition(copilot_client_factory))
    for config in custom_providers or []:
        try:
            registry.upsert(openai_compatible_definition(config))
        except ValueError as e:
            logger.warning("Skipping provider %s: %s", config.id, e)
    return registry
