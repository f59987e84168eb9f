"""
Provider factory for creating insight providers.

Providers register themselves by id; the gateway creates the selected one.
"""

from typing import Dict, List, Optional, Type

from .base import InsightProvider

# Registry of providers (populated by register_provider)
_provider_registry: Dict[str, Type[InsightProvider]] = {}


def register_provider(provider_class: Type[InsightProvider]) -> Type[InsightProvider]:
    """
    Register a provider class in the registry.

    Use as a decorator:
        @register_provider
        class MyProvider(InsightProvider):
            PROVIDER_ID = "my_provider"
    """
    _provider_registry[provider_class.PROVIDER_ID] = provider_class
    return provider_class


def get_available_providers() -> List[str]:
    """Registered provider ids, in registration order."""
    return list(_provider_registry.keys())


def is_provider_registered(provider_id: str) -> bool:
    return provider_id in _provider_registry


def get_provider_class(provider_id: str) -> Optional[Type[InsightProvider]]:
    return _provider_registry.get(provider_id)


def create_provider(provider_id: str, api_key: str, model: Optional[str] = None) -> InsightProvider:
    """
    Create an instance of the specified provider.

    Args:
        provider_id: Registered provider id ("openai", "anthropic", "gemini")
        api_key: Credential for that provider
        model: Optional model override

    Returns:
        A configured provider

    Raises:
        ValueError: If provider ID is unknown
    """
    if provider_id not in _provider_registry:
        available = list(_provider_registry.keys())
        raise ValueError(f"Unknown provider '{provider_id}'. Available: {available}")

    return _provider_registry[provider_id](api_key=api_key, model=model)


def _register_providers():
    """Import provider modules to register them."""
    from . import openai_provider  # noqa: F401
    from . import anthropic_provider  # noqa: F401
    from . import gemini_provider  # noqa: F401


_register_providers()
