"""
Provider gateway: one entry point for insight analysis.

Selects the configured backend, builds the persona prompt, parses the reply,
and falls back to static mock insights when the selected provider has no key.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..logger import log_debug, log_info
from .base import Insight, InsightProvider, mock_insights, parse_insights
from .factory import create_provider, is_provider_registered, get_available_providers
from .prompts import build_system_prompt


@dataclass
class ProviderConfig:
    """Provider selection and credentials, supplied by the caller."""
    provider: str = "openai"
    api_keys: Dict[str, str] = field(default_factory=dict)
    models: Dict[str, str] = field(default_factory=dict)

    def key_for(self, provider_id: Optional[str] = None) -> str:
        return (self.api_keys.get(provider_id or self.provider) or "").strip()


class ProviderGateway:
    """Normalizes transcript text into insights for the selected provider."""

    def __init__(self, config: ProviderConfig, provider: Optional[InsightProvider] = None):
        """
        Args:
            config: Provider id, per-provider keys and optional model overrides
            provider: Pre-built provider to use instead of the registry (tests)

        Raises:
            ValueError: If config.provider is not a registered provider id
        """
        if provider is None and not is_provider_registered(config.provider):
            raise ValueError(
                f"Unknown provider '{config.provider}'. Available: {get_available_providers()}"
            )
        self.config = config
        self._provider = provider

    @property
    def provider_id(self) -> str:
        return self.config.provider

    def has_credential(self) -> bool:
        """True if the selected provider has a stored key."""
        return bool(self.config.key_for())

    def _get_provider(self) -> InsightProvider:
        if self._provider is None:
            self._provider = create_provider(
                self.config.provider,
                api_key=self.config.key_for(),
                model=self.config.models.get(self.config.provider),
            )
        return self._provider

    async def analyze(self, text: str, mode="general") -> List[Insight]:
        """
        Turn a transcript batch into insights.

        Args:
            text: Space-joined final transcript text
            mode: Persona name (general, sales, pitch, interview)

        Returns:
            Parsed insights (possibly empty); mock insights when no key is set

        Raises:
            ProviderError: On HTTP/transport failure or malformed output
            ValueError: If mode is unknown
        """
        system_prompt = build_system_prompt(mode)
        if not self.has_credential():
            log_info(f"No API key for provider '{self.provider_id}'. Using mock insights.")
            return mock_insights()

        provider = self._get_provider()
        log_debug(f"Analyzing {len(text)} chars with {provider.PROVIDER_ID}/{provider.model}")
        raw = await provider.complete(system_prompt, text)
        return parse_insights(raw)
