"""
Anthropic Messages API backend for live insights.

Uses a small, fast Claude model; the persona goes in the system prompt and
the transcript batch is the single user turn.
"""

from typing import Optional

import anthropic

from .base import InsightProvider, ProviderError
from .factory import register_provider


@register_provider
class AnthropicProvider(InsightProvider):
    """Insights via Anthropic's Claude API."""

    PROVIDER_ID = "anthropic"
    PROVIDER_NAME = "Anthropic"
    DEFAULT_MODEL = "claude-3-haiku-20240307"
    MAX_TOKENS = 1024

    def __init__(self, api_key: str, model: Optional[str] = None, client=None):
        super().__init__(api_key, model)
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def complete(self, system_prompt: str, text: str) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.MAX_TOKENS,
                system=system_prompt,
                messages=[
                    {
                        "role": "user",
                        "content": text
                    }
                ]
            )
        except anthropic.APIConnectionError as e:
            raise ProviderError(f"Network error: {e}") from e
        except anthropic.APIStatusError as e:
            raise ProviderError(f"API error ({e.status_code}): {e.message}",
                                status=e.status_code, body=e.response.text) from e
        except anthropic.AnthropicError as e:
            raise ProviderError(f"Anthropic request failed: {e}") from e

        # Text blocks only; the model may also return empty content
        parts = [block.text for block in response.content if getattr(block, "type", "text") == "text"]
        return "".join(parts)
