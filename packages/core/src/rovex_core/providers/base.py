"""Base transport shared by every review provider.

A transport exposes two calls:
    generate_narrative()  ← long-form description, optionally incremental
    generate_structured() ← one strict-JSON answer for one chunk

Subclasses implement only those two (plus describe_model when the model
identifier they report differs from the configured one). Retry policy for
structured calls lives here so it is defined once:

    generate_structured_with_retry()
        → cancellation check → generate_structured()
        → transient? back off and try again : raise

Transports report every failure as an exception whose message carries the
upstream detail (status code, error text). The retry classifier only looks
at that message, so it works the same for HTTP, local-server and
JSON-RPC transports.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from rovex_core.errors import RunCanceledError

logger = logging.getLogger(__name__)

DeltaCallback = Callable[[str], None]

# Subclasses may override these as class attributes.
_MAX_ATTEMPTS = 3
_BASE_DELAY_SECONDS = 0.5
_MAX_DELAY_SECONDS = 30.0

TRANSIENT_MARKERS = (
    "429",
    "too many requests",
    "timeout",
    "timed out",
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "503",
    "502",
    "504",
    "rate limit",
)


def is_transient_error(message: str) -> bool:
    """Classify a failure message as worth retrying (case-insensitive substring match)."""
    lowered = message.lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


class BaseTransport(ABC):
    MAX_ATTEMPTS: int = _MAX_ATTEMPTS
    BASE_DELAY_SECONDS: float = _BASE_DELAY_SECONDS
    MAX_DELAY_SECONDS: float = _MAX_DELAY_SECONDS

    # ------------------------------------------------------------------ #
    # Abstract: implement in each transport                              #
    # ------------------------------------------------------------------ #

    @abstractmethod
    async def generate_narrative(
        self,
        prompt: str,
        model: str,
        timeout_ms: int,
        on_delta: Optional[DeltaCallback] = None,
    ) -> str:
        """Return the full narrative text.

        Transports that can deliver output incrementally call ``on_delta``
        with each fragment in generation order; the fragments concatenate
        to the returned text.
        """

    @abstractmethod
    async def generate_structured(self, prompt: str, model: str, timeout_ms: int) -> str:
        """Make a single structured call and return the raw text response.

        It should raise on failure; generate_structured_with_retry handles
        retries and logging.
        """

    # ------------------------------------------------------------------ #
    # Shared implementations                                               #
    # ------------------------------------------------------------------ #

    def describe_model(self, model: str) -> str:
        """The model identifier to report in run results."""
        return model

    async def aclose(self) -> None:
        """Release processes or connections held by the transport.

        Default is a no-op so the executor can always call it safely.
        """

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based): base, doubled, capped."""
        return min(self.BASE_DELAY_SECONDS * 2 ** (attempt - 1), self.MAX_DELAY_SECONDS)

    async def generate_structured_with_retry(
        self,
        prompt: str,
        model: str,
        timeout_ms: int,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Call generate_structured, retrying transient failures with exponential backoff.

        The cancellation flag is checked before every attempt and wakes the
        backoff sleep; once set, RunCanceledError is raised. Failures that
        are not transient are raised immediately.
        """
        name = self.__class__.__name__
        attempt = 0
        while True:
            attempt += 1
            if cancel_event is not None and cancel_event.is_set():
                raise RunCanceledError()
            try:
                return await self.generate_structured(prompt, model, timeout_ms)
            except RunCanceledError:
                raise
            except Exception as e:
                message = str(e)
                if not is_transient_error(message):
                    logger.error("%s API error (not retryable): %s", name, message)
                    raise
                if attempt >= self.MAX_ATTEMPTS:
                    logger.error("%s API failed after %d attempts: %s", name, self.MAX_ATTEMPTS, message)
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "%s API error (attempt %d/%d): %s. Retrying in %.1fs...",
                    name,
                    attempt,
                    self.MAX_ATTEMPTS,
                    message,
                    delay,
                )
                await _sleep_unless_canceled(delay, cancel_event)


async def _sleep_unless_canceled(delay: float, cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise RunCanceledError()
