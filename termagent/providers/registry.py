"""Provider registry: id -> ProviderDefinition.

A definition knows how to build a Runner for its provider from the
injected collaborators, which settings keys hold secrets, and whether the
provider chains conversations server-side.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from termagent.config import SettingsService
from termagent.conversation.store import ConversationStore
from termagent.logging_service import LoggingService

if TYPE_CHECKING:
    from termagent.agent.runner import Runner


@dataclass
class ProviderDependencies:
    settings_service: SettingsService
    logging_service: LoggingService
    conversation_store: ConversationStore | None = None


@dataclass
class ProviderDefinition:
    id: str
    label: str
    # Returns None when the provider cannot run (e.g. missing credentials)
    create_runner: Callable[[ProviderDependencies], Runner | None]
    sensitive_setting_keys: list[str] = field(default_factory=list)
    supports_conversation_chaining: bool = True
    hosted_tools: list[dict[str, Any]] = field(default_factory=list)
    fetch_models: Callable[[ProviderDependencies], Awaitable[list[dict[str, Any]]]] | None = None
    clear_conversations: Callable[[ProviderDependencies, str | None], None] | None = None
    is_runtime_defined: bool = False


class ProviderRegistry:
    def __init__(self) -> None:
        self._providers: dict[str, ProviderDefinition] = {}

    def register(self, definition: ProviderDefinition, *, allow_override: bool = False) -> None:
        if definition.id in self._providers and not allow_override:
            raise ValueError(f"Provider '{definition.id}' is already registered")
        self._providers[definition.id] = definition

    def upsert(self, definition: ProviderDefinition) -> None:
        """Register or replace; used for providers defined at runtime."""
        existing = self._providers.get(definition.id)
        if existing is not None and not existing.is_runtime_defined and definition.is_runtime_defined:
            raise ValueError(f"Provider '{definition.id}' is built in and cannot be redefined")
        self.register(definition, allow_override=True)

    def get(self, provider_id: str) -> ProviderDefinition | None:
        return self._providers.get(provider_id)

    def all(self) -> list[ProviderDefinition]:
        return list(self._providers.values())

    def ids(self) -> list[str]:
        return list(self._providers)

    def sensitive_setting_keys(self) -> set[str]:
        keys: set[str] = set()
        for definition in self._providers.values():
            keys.update(definition.sensitive_setting_keys)
        return keys
