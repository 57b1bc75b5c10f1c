"""
Assistance generator (suggested operator responses).

The generator is a *dumb pipe*:
transcript context -> vendor -> one Assistance.

Session manager responsibilities (NOT here):
- When to generate (counterparty finals only)
- Timeouts and retry policy
- Delivering and correlating the result
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from adapters.llm.prompts import SYSTEM_PROMPTS
from constants import (
    ASSISTANCE_MAX_HISTORY_LINES,
    ASSISTANCE_MAX_TOKENS,
    ASSISTANCE_TEMPERATURE,
    PAYLOAD_PREVIEW_CHARS,
)
from errors import AssistanceFailed


@dataclass(frozen=True)
class AssistanceRequest:
    """
    Everything the generator may use for one suggestion.

    transcript:
        Role-labeled lines, oldest first ("Lead: how much for ten units").
    """
    text: str
    transcript: tuple[str, ...]
    mode: str
    lead_id: Optional[str] = None


@dataclass(frozen=True)
class Assistance:
    text: str
    next_action: str
    confidence: str


class AssistanceGenerator(ABC):
    """Contract for suggestion generators. Must not retry internally."""

    @abstractmethod
    async def generate(self, request: AssistanceRequest) -> Assistance:
        """
        Produce one suggestion.

        Raises:
            AssistanceFailed for unusable vendor answers. Transport errors
            propagate unchanged; the caller classifies them.
        """
        raise NotImplementedError


def build_messages(request: AssistanceRequest) -> list[dict[str, str]]:
    """Serialize a request into chat-completion messages."""
    system_prompt = SYSTEM_PROMPTS.get(request.mode, SYSTEM_PROMPTS["sales"])

    history = "\n".join(request.transcript[-ASSISTANCE_MAX_HISTORY_LINES:])
    user_prompt = f"Conversation so far:\n{history}\n\nLatest from the other party:\n{request.text}"
    if request.lead_id:
        user_prompt += f"\n\nLead ID: {request.lead_id}"

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


def parse_assistance(content: Optional[str]) -> Assistance:
    """
    Parse the vendor's JSON answer.

    Raises:
        AssistanceFailed if the answer is not a JSON object with a response.
    """
    if not content:
        raise AssistanceFailed("empty assistance response")

    try:
        data = json.loads(content)
    except ValueError as e:
        raise AssistanceFailed(
            f"assistance response is not JSON: {content[:PAYLOAD_PREVIEW_CHARS]!r}"
        ) from e

    if not isinstance(data, dict):
        raise AssistanceFailed("assistance response is not a JSON object")

    text = str(data.get("response") or "").strip()
    if not text:
        raise AssistanceFailed("assistance response has no 'response' field")

    return Assistance(
        text=text,
        next_action=str(data.get("nextAction") or ""),
        confidence=str(data.get("confidence") or "medium"),
    )


class OpenAIAssistanceGenerator(AssistanceGenerator):
    """
    Chat-completions generator (OpenAI-compatible client).

    One instance may serve every session; it holds no per-call state.
    """

    def __init__(self, *, client: Any, model: str) -> None:
        """
        Args:
            client:
                Vendor client (e.g. openai.AsyncOpenAI).
            model:
                Model identifier string.
        """
        self._client = client
        self._model = model

    async def generate(self, request: AssistanceRequest) -> Assistance:
        completion = await self._client.chat.completions.create(
            model=self._model,
            messages=build_messages(request),
            temperature=ASSISTANCE_TEMPERATURE,
            max_tokens=ASSISTANCE_MAX_TOKENS,
            response_format={"type": "json_object"},
        )
        return parse_assistance(self._extract_content(completion))

    @staticmethod
    def _extract_content(completion: Any) -> Optional[str]:
        """
        Extract message text from a vendor response (OpenAI format).
        """
        try:
            return completion.choices[0].message.content
        except (AttributeError, IndexError):
            return None
