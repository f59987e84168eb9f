"""
Base classes for insight providers.

Every LLM backend turns (system instruction, transcript text) into raw model
output; parsing that output into Insight objects is shared.
"""

import json
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from ..logger import log_debug


class InsightType(str, Enum):
    QUESTION = "question"
    STRATEGY = "strategy"
    ARGUMENT = "argument"
    OBJECTION = "objection"
    REPLY = "reply"


@dataclass(frozen=True)
class Insight:
    """One actionable suggestion shown in the insight feed."""
    id: str
    type: InsightType
    content: str
    timestamp: str    # "HH:MM"


class ProviderError(Exception):
    """Raised when an insight request fails or returns unusable output."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: Optional[str] = None,
        malformed_response: bool = False,
    ):
        self.status = status
        self.body = body
        self.malformed_response = malformed_response
        super().__init__(message)


class InsightProvider(ABC):
    """
    Abstract base class for LLM backends.

    Subclasses implement complete(); the gateway handles prompts and parsing.
    """

    PROVIDER_ID: str = "base"
    PROVIDER_NAME: str = "Base Provider"
    DEFAULT_MODEL: str = ""

    def __init__(self, api_key: str, model: Optional[str] = None):
        self.api_key = api_key
        self.model = model or self.DEFAULT_MODEL

    @abstractmethod
    async def complete(self, system_prompt: str, text: str) -> str:
        """
        Send one request and return the model's text output.

        Args:
            system_prompt: Persona + output-format instruction
            text: Batched transcript text

        Returns:
            Raw text returned by the model

        Raises:
            ProviderError: On HTTP or transport failure
        """
        pass


_FENCE_START = re.compile(r"^\s*```[A-Za-z]*\s*\n?")
_FENCE_END = re.compile(r"\n?\s*```\s*$")


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if present."""
    text = _FENCE_START.sub("", text, count=1)
    text = _FENCE_END.sub("", text, count=1)
    return text.strip()


def _now_label() -> str:
    return datetime.now().strftime("%H:%M")


def make_insight(insight_type: InsightType, content: str) -> Insight:
    return Insight(id=uuid.uuid4().hex, type=insight_type, content=content, timestamp=_now_label())


def parse_insights(raw: str) -> List[Insight]:
    """
    Parse model output into insights.

    Raises:
        ProviderError: (malformed_response=True) if the output is not a JSON
            object with an "insights" list
    """
    try:
        data = json.loads(strip_code_fence(raw or ""))
    except json.JSONDecodeError as e:
        raise ProviderError(f"Provider returned invalid JSON: {e}", body=raw,
                            malformed_response=True) from e

    entries = data.get("insights") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ProviderError("Provider response has no 'insights' list", body=raw,
                            malformed_response=True)

    insights = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        content = str(entry.get("content") or "").strip()
        try:
            insight_type = InsightType(str(entry.get("type", "")).strip().lower())
        except ValueError:
            log_debug(f"Skipping insight with unknown type: {entry.get('type')!r}")
            continue
        if content:
            insights.append(make_insight(insight_type, content))
    return insights


MOCK_INSIGHTS = (
    (InsightType.STRATEGY, "Strategic opportunity: Leverage the API integration to reduce time-to-market."),
    (InsightType.QUESTION, "Ask: 'How does this timeline affect the Q3 deliverables?'"),
)


def mock_insights() -> List[Insight]:
    """Static insights shown when no provider key is configured."""
    return [make_insight(insight_type, content) for insight_type, content in MOCK_INSIGHTS]
