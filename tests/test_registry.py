"""Tests for the provider registry and built-in provider definitions.

Tests cover:
- register / duplicate / override / upsert rules
- Built-in definitions: chaining flags, sensitive keys, hosted tools
- create_runner returns None without credentials or SDK client
- Custom OpenAI-compatible endpoints from settings
"""

import logging

import pytest

from termagent.agent.runner import Runner
from termagent.config import CustomProviderSettings
from termagent.conversation.store import ConversationStore
from termagent.logging_service import LoggingService
from termagent.providers.definitions import (
    copilot_definition,
    create_default_registry,
    openai_definition,
    openrouter_definition,
)
from termagent.providers.registry import ProviderDefinition, ProviderDependencies, ProviderRegistry
from tests.conftest import make_settings_service


def _deps(**keys) -> ProviderDependencies:
    settings_service = make_settings_service()
    for key, value in keys.items():
        settings_service.set(key.replace("__", "."), value)
    return ProviderDependencies(
        settings_service=settings_service,
        logging_service=LoggingService(logging.getLogger("termagent.tests")),
        conversation_store=ConversationStore(),
    )


def _definition(provider_id: str, runtime: bool = False) -> ProviderDefinition:
    return ProviderDefinition(
        id=provider_id,
        label=provider_id.title(),
        create_runner=lambda deps: None,
        is_runtime_defined=runtime,
    )


class TestProviderRegistry:
    def test_register_and_get(self):
        registry = ProviderRegistry()
        registry.register(_definition("alpha"))
        assert registry.get("alpha").label == "Alpha"
        assert registry.get("missing") is None
        assert registry.ids() == ["alpha"]

    def test_duplicate_register_raises(self):
        registry = ProviderRegistry()
        registry.register(_definition("alpha"))
        with pytest.raises(ValueError, match="already registered"):
            registry.register(_definition("alpha"))

    def test_allow_override(self):
        registry = ProviderRegistry()
        registry.register(_definition("alpha"))
        replacement = _definition("alpha")
        registry.register(replacement, allow_override=True)
        assert registry.get("alpha") is replacement

    def test_upsert_cannot_shadow_builtin(self):
        registry = ProviderRegistry()
        registry.register(_definition("openai"))
        with pytest.raises(ValueError, match="built in"):
            registry.upsert(_definition("openai", runtime=True))

    def test_upsert_replaces_runtime_definition(self):
        registry = ProviderRegistry()
        registry.upsert(_definition("local", runtime=True))
        newer = _definition("local", runtime=True)
        registry.upsert(newer)
        assert registry.get("local") is newer
        assert len(registry.all()) == 1


class TestBuiltinDefinitions:
    def test_default_registry_ids(self):
        registry = create_default_registry()
        assert registry.ids() == ["openai", "openrouter", "github-copilot"]

    def test_chaining_flags(self):
        assert openai_definition().supports_conversation_chaining
        assert not openrouter_definition().supports_conversation_chaining
        assert copilot_definition().supports_conversation_chaining

    def test_openai_has_hosted_web_search(self):
        assert openai_definition().hosted_tools == [{"type": "web_search"}]

    def test_sensitive_keys(self):
        keys = create_default_registry().sensitive_setting_keys()
        assert "agent.openai.api_key" in keys
        assert "agent.openrouter.api_key" in keys

    def test_runner_needs_api_key(self):
        assert openai_definition().create_runner(_deps()) is None
        assert openrouter_definition().create_runner(_deps()) is None

    def test_runner_with_api_key(self):
        deps = _deps(agent__openrouter__api_key="sk-or-test")
        assert isinstance(openrouter_definition().create_runner(deps), Runner)

    def test_copilot_without_sdk_client(self):
        assert copilot_definition(None).create_runner(_deps()) is None

    @pytest.mark.asyncio
    async def test_copilot_models_without_sdk_client(self):
        assert await copilot_definition(None).fetch_models(_deps()) == []

    def test_openrouter_clears_store_chain(self):
        deps = _deps()
        deps.conversation_store.merge_turn("resp_1", [{"role": "user", "content": "hi"}], [])
        openrouter_definition().clear_conversations(deps, "resp_1")
        assert "resp_1" not in deps.conversation_store


class TestCustomProviders:
    def test_custom_endpoint_is_registered(self):
        registry = create_default_registry(
            [CustomProviderSettings(id="local", label="Local LLM", base_url="http://localhost:8080/v1")]
        )
        definition = registry.get("local")
        assert definition.is_runtime_defined
        assert not definition.supports_conversation_chaining
        assert isinstance(definition.create_runner(_deps()), Runner)

    def test_custom_endpoint_cannot_replace_builtin(self, caplog):
        with caplog.at_level(logging.WARNING):
            registry = create_default_registry([CustomProviderSettings(id="openai", base_url="http://x/v1")])
        assert not registry.get("openai").is_runtime_defined
        assert "Skipping provider openai" in caplog.text
