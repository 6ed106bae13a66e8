"""Provider registry: factory for outbound call clients.

Provider classes are registered by name with lazy import paths so a
deployment only loads the clients it actually uses.
"""

from __future__ import annotations

import importlib
from typing import Any, Type

from loguru import logger

from dialer.errors import ProviderConfigError
from dialer.services.providers.base import BaseCallProvider


class ProviderRegistry:
    """Factory for creating voice provider call clients.

    Example:
        vapi = provider_registry.create("vapi", api_key="...")
    """

    def __init__(self) -> None:
        self._providers: dict[str, Type[BaseCallProvider] | str] = {}
        self._register_builtins()

    def _register_builtins(self) -> None:
        self._providers["vapi"] = "dialer.services.providers.vapi:VapiCallProvider"
        self._providers["retell"] = "dialer.services.providers.retell:RetellCallProvider"

    def _resolve_class(self, ref: Type[BaseCallProvider] | str) -> Type[BaseCallProvider]:
        if isinstance(ref, str):
            module_path, class_name = ref.rsplit(":", 1)
            module = importlib.import_module(module_path)
            return getattr(module, class_name)
        return ref

    def register(self, name: str, cls: Type[BaseCallProvider]) -> None:
        """Register a custom provider class."""
        self._providers[name] = cls
        logger.debug(f"Registered call provider: {name}")

    def create(self, name: str, **kwargs: Any) -> BaseCallProvider:
        """Create a provider client.

        Raises:
            ProviderConfigError: If no outbound client exists for the name
                (Synthflow agents, for instance).
        """
        if name not in self._providers:
            available = ", ".join(self._providers.keys())
            raise ProviderConfigError(
                f"Outbound calls are not supported for provider '{name}'. Available: {available}"
            )
        cls = self._resolve_class(self._providers[name])
        return cls(**kwargs)

    @property
    def providers(self) -> list[str]:
        return list(self._providers.keys())


provider_registry = ProviderRegistry()
