"""
Insight providers

Interchangeable LLM backends behind one gateway:
- OpenAI (chat completions, JSON mode) - default
- Anthropic (Claude messages)
- Gemini (generateContent REST)
"""

from .base import (
    Insight,
    InsightType,
    InsightProvider,
    ProviderError,
    mock_insights,
    parse_insights,
    strip_code_fence,
)
from .prompts import MeetingMode, build_system_prompt, resolve_mode
from .factory import (
    create_provider,
    get_available_providers,
    get_provider_class,
    is_provider_registered,
    register_provider,
)
from .gateway import ProviderConfig, ProviderGateway

__all__ = [
    # Base classes
    "Insight",
    "InsightType",
    "InsightProvider",
    "ProviderError",
    "mock_insights",
    "parse_insights",
    "strip_code_fence",
    # Prompts
    "MeetingMode",
    "build_system_prompt",
    "resolve_mode",
    # Factory functions
    "create_provider",
    "get_available_providers",
    "get_provider_class",
    "is_provider_registered",
    "register_provider",
    # Gateway
    "ProviderConfig",
    "ProviderGateway",
]
