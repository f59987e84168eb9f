"""
Google Gemini backend for live insights.

Talks to the generateContent REST endpoint with requests. The call is
blocking, so it runs in a worker thread to keep the event loop free.
"""

import asyncio
import os
from typing import Optional

import requests

from .base import InsightProvider, ProviderError
from .factory import register_provider

GEMINI_API_URL = os.environ.get(
    "GEMINI_API_URL", "https://generativelanguage.googleapis.com/v1beta"
)


@register_provider
class GeminiProvider(InsightProvider):
    """Insights via the Gemini generateContent API."""

    PROVIDER_ID = "gemini"
    PROVIDER_NAME = "Google Gemini"
    DEFAULT_MODEL = "gemini-2.5-flash"
    TIMEOUT = 60.0

    def __init__(self, api_key: str, model: Optional[str] = None, session: Optional[requests.Session] = None):
        super().__init__(api_key, model)
        self._session = session

    def _post(self, payload: dict) -> requests.Response:
        http = self._session or requests
        return http.post(
            f"{GEMINI_API_URL}/models/{self.model}:generateContent",
            json=payload,
            headers={"x-goog-api-key": self.api_key},
            timeout=self.TIMEOUT,
        )

    async def complete(self, system_prompt: str, text: str) -> str:
        payload = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": text}]}],
        }
        try:
            response = await asyncio.to_thread(self._post, payload)
        except requests.RequestException as e:
            raise ProviderError(f"Network error: {e}") from e

        if not 200 <= response.status_code < 300:
            raise ProviderError(f"Gemini API error ({response.status_code})",
                                status=response.status_code, body=response.text)

        try:
            data = response.json()
            parts = data["candidates"][0]["content"]["parts"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError("Gemini response has no candidate text", body=response.text,
                                malformed_response=True) from e
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))
