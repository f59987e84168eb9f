"""
OpenAI Chat Completions backend for live insights.
"""

from typing import Optional

import openai

from .base import InsightProvider, ProviderError
from .factory import register_provider


@register_provider
class OpenAIProvider(InsightProvider):
    """Insights via OpenAI chat completions in JSON mode."""

    PROVIDER_ID = "openai"
    PROVIDER_NAME = "OpenAI"
    DEFAULT_MODEL = "gpt-3.5-turbo"
    TEMPERATURE = 0.3

    def __init__(self, api_key: str, model: Optional[str] = None, client=None):
        super().__init__(api_key, model)
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def complete(self, system_prompt: str, text: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": text},
                ],
                temperature=self.TEMPERATURE,
                response_format={"type": "json_object"},
            )
        except openai.APIStatusError as e:
            raise ProviderError(f"OpenAI API error ({e.status_code}): {e.message}",
                                status=e.status_code, body=e.response.text) from e
        except openai.APIConnectionError as e:
            raise ProviderError(f"Network error: {e}") from e
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e

        if not response.choices:
            raise ProviderError("OpenAI response has no choices", malformed_response=True)
        return response.choices[0].message.content or ""
