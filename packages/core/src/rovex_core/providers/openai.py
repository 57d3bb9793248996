from __future__ import annotations

import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

from rovex_core.errors import PreconditionError, TransportError
from rovex_core.prompts import NARRATIVE_SYSTEM_PROMPT, STRUCTURED_SYSTEM_PROMPT
from rovex_core.providers.base import BaseTransport, DeltaCallback
from rovex_core.utils.text import snippet

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAITransport(BaseTransport):
    """Chat Completions over HTTP, streamed for narratives."""

    TEMPERATURE = 0.2

    def __init__(self, api_key: Optional[str], base_url: str = DEFAULT_BASE_URL, client: Optional[AsyncOpenAI] = None):
        if client is None:
            if not api_key:
                raise PreconditionError("Missing OPENAI_API_KEY. Export it to enable AI review.")
            # Retries are decided by generate_structured_with_retry, not the SDK.
            client = AsyncOpenAI(api_key=api_key, base_url=base_url.rstrip("/"), max_retries=0)
        self.client = client

    async def generate_narrative(
        self,
        prompt: str,
        model: str,
        timeout_ms: int,
        on_delta: Optional[DeltaCallback] = None,
    ) -> str:
        parts: list[str] = []
        try:
            stream = await self.client.chat.completions.create(
                model=model,
                messages=self._messages(NARRATIVE_SYSTEM_PROMPT, prompt),
                temperature=self.TEMPERATURE,
                stream=True,
                timeout=timeout_ms / 1000,
            )
            async for event in stream:
                if not event.choices:
                    continue
                fragment = event.choices[0].delta.content
                if fragment:
                    parts.append(fragment)
                    if on_delta is not None:
                        on_delta(fragment)
        except openai.OpenAIError as e:
            raise _to_transport_error(e) from e

        text = "".join(parts).strip()
        if not text:
            raise TransportError("AI provider returned an empty response.")
        return text

    async def generate_structured(self, prompt: str, model: str, timeout_ms: int) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=self._messages(STRUCTURED_SYSTEM_PROMPT, prompt),
                temperature=self.TEMPERATURE,
                timeout=timeout_ms / 1000,
            )
        except openai.OpenAIError as e:
            raise _to_transport_error(e) from e

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise TransportError("AI provider returned an empty response.")
        return content.strip()

    @staticmethod
    def _messages(system_prompt: str, user_prompt: str) -> list[dict]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]


def _to_transport_error(error: openai.OpenAIError) -> TransportError:
    """Flatten SDK exceptions into the plain-text contract the retry classifier reads."""
    if isinstance(error, openai.AuthenticationError):
        return TransportError("AI provider rejected the API key. Check OPENAI_API_KEY.")
    if isinstance(error, openai.APIStatusError):
        return TransportError(f"AI provider returned {error.status_code}. Response: {snippet(error.message, 300)}")
    if isinstance(error, openai.APITimeoutError):
        return TransportError("AI provider request timed out.")
    if isinstance(error, openai.APIConnectionError):
        cause = error.__cause__ or error
        return TransportError(f"Failed to reach AI provider: {cause}")
    return TransportError(f"AI provider call failed: {error}")
