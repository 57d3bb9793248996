"""Transport backed by a local `opencode serve` process.

Lifecycle per transport instance:
  1. start `opencode serve --hostname=<h> --port=<p>` on first use and wait
     for its "opencode server listening on <url>" line
  2. check the model against GET /provider (once)
  3. per call: POST /session, POST /session/<id>/message, read the answer
     from the response body or poll GET /session/<id>/message, then
     DELETE /session/<id>
  4. aclose() terminates the process

The server is shared by all calls of one run, so parallel chunk workers
do not race each other for the port.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from rovex_core.config import DEFAULT_REVIEW_MODEL
from rovex_core.errors import PreconditionError, TransportError
from rovex_core.providers.base import BaseTransport, DeltaCallback
from rovex_core.utils.text import non_empty, snippet

logger = logging.getLogger(__name__)

DEFAULT_OPENCODE_MODEL = "openai/gpt-5"
_POLL_INTERVAL_SECONDS = 0.5
_POLL_MESSAGE_LIMIT = "40"
_LISTING_SAMPLE = 12
_STARTUP_OUTPUT_LINES = 30


@dataclass(frozen=True)
class OpencodeModel:
    provider_id: str
    model_id: str

    @property
    def display(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


def resolve_opencode_model(review_model: str, configured: Optional[str] = None, provider: str = "openai") -> OpencodeModel:
    """Turn the configured review model into an opencode "<provider>/<model>" pair."""
    value = non_empty(configured)
    if value is None:
        if "/" in review_model:
            value = review_model
        elif review_model == DEFAULT_REVIEW_MODEL:
            value = DEFAULT_OPENCODE_MODEL
        else:
            value = f"{non_empty(provider) or 'openai'}/{review_model}"

    provider_id, _, model_id = value.partition("/")
    if not provider_id.strip() or not model_id.strip():
        raise PreconditionError(
            f"Invalid OpenCode model '{value}'. Set ROVEX_OPENCODE_MODEL as '<provider>/<model>'."
        )
    return OpencodeModel(provider_id=provider_id.strip(), model_id=model_id.strip())


def extract_server_url(line: str) -> Optional[str]:
    if "opencode server listening" not in line:
        return None
    match = re.search(r"https?://\S+", line)
    return match.group(0).rstrip("/") if match else None


def _text_from_parts(value: Any) -> Optional[str]:
    if not isinstance(value, list):
        return None
    parts: list[str] = []
    for item in value:
        if isinstance(item, str):
            if item.strip():
                parts.append(item.strip())
            continue
        if not isinstance(item, dict):
            continue
        text = item.get("text")
        if isinstance(text, str) and item.get("type") in (None, "text") and text.strip():
            parts.append(text.strip())
    return "\n\n".join(parts) if parts else None


def _text_from_json(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        candidates = [value.get("parts")]
        for key in ("message", "response", "result"):
            nested = value.get(key)
            if isinstance(nested, dict):
                candidates.append(nested.get("parts"))
        for parts in candidates:
            text = _text_from_parts(parts)
            if text:
                return text
        if value.get("role") in (None, "assistant") and value.get("type") in (None, "text"):
            text = value.get("text")
            if isinstance(text, str) and text.strip():
                return text.strip()
        return None

    if isinstance(value, list):
        collected = [t for t in (_text_from_json(entry) for entry in value) if t]
        return "\n\n".join(collected) if collected else None

    return None


def extract_review_from_body(body: str) -> Optional[str]:
    """Pull assistant text out of a message response (JSON or SSE)."""
    trimmed = body.strip()
    if not trimmed:
        return None

    try:
        text = _text_from_json(json.loads(trimmed))
    except json.JSONDecodeError:
        text = None
    if text:
        return text

    chunks: list[str] = []
    for line in trimmed.splitlines():
        payload = line.strip()
        if payload.startswith("data:"):
            payload = payload[len("data:"):].strip()
        if not payload or payload == "[DONE]":
            continue
        try:
            text = _text_from_json(json.loads(payload))
        except json.JSONDecodeError:
            continue
        if text:
            chunks.append(text)

    if chunks:
        return "\n\n".join(chunks)
    if trimmed.startswith(("{", "[", "data:")):
        return None
    return trimmed


def extract_latest_assistant_message(body: str) -> Optional[str]:
    """Return the newest assistant message text from a GET /session/<id>/message body."""
    try:
        value = json.loads(body)
    except json.JSONDecodeError:
        return None
    items = value if isinstance(value, list) else [value]

    for item in reversed(items):
        if not isinstance(item, dict):
            continue
        info = item.get("info")
        role = info.get("role") if isinstance(info, dict) else None
        if role is None:
            role = item.get("role")
        if role != "assistant":
            continue
        text = _text_from_parts(item.get("parts")) or _text_from_json(item)
        if text:
            return text
    return None


def split_increments(text: str) -> list[str]:
    """Whitespace-delimited fragments that concatenate back to ``text``."""
    return re.findall(r"\s*\S+\s*", text) or ([text] if text else [])


class OpencodeTransport(BaseTransport):
    def __init__(
        self,
        workspace: str,
        command: str = "opencode",
        hostname: str = "127.0.0.1",
        port: int = 4096,
        server_timeout_ms: int = 5000,
        agent: str = "plan",
        configured_model: Optional[str] = None,
        provider: str = "openai",
    ):
        self.workspace = workspace
        self.command = command
        self.hostname = hostname
        self.port = port
        self.server_timeout_ms = server_timeout_ms
        self.agent = agent
        self.configured_model = configured_model
        self.provider = provider
        self._process: Optional[asyncio.subprocess.Process] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._base_url: Optional[str] = None
        self._validated: set[str] = set()
        self._start_lock = asyncio.Lock()

    def describe_model(self, model: str) -> str:
        return resolve_opencode_model(model, self.configured_model, self.provider).display

    async def generate_narrative(
        self,
        prompt: str,
        model: str,
        timeout_ms: int,
        on_delta: Optional[DeltaCallback] = None,
    ) -> str:
        text = await self.generate_structured(prompt, model, timeout_ms)
        if on_delta is not None:
            for fragment in split_increments(text):
                on_delta(fragment)
        return text

    async def generate_structured(self, prompt: str, model: str, timeout_ms: int) -> str:
        resolved = resolve_opencode_model(model, self.configured_model, self.provider)
        base_url = await self._ensure_server()
        async with httpx.AsyncClient(base_url=base_url, timeout=timeout_ms / 1000) as client:
            try:
                await self._validate_model(client, resolved)
                return await self._run_session(client, resolved, prompt, timeout_ms)
            except httpx.TimeoutException as e:
                raise TransportError(f"OpenCode request timed out: {e}") from e
            except httpx.RequestError as e:
                raise TransportError(f"OpenCode request failed: {e}") from e

    async def aclose(self) -> None:
        process, self._process = self._process, None
        self._base_url = None
        if process is not None:
            await _kill(process)
        if self._drain_task is not None:
            self._drain_task.cancel()
            self._drain_task = None

    # ------------------------------------------------------------------ #
    # Server process                                                       #
    # ------------------------------------------------------------------ #

    async def _ensure_server(self) -> str:
        async with self._start_lock:
            if self._base_url is not None and self._process is not None and self._process.returncode is None:
                return self._base_url
            self._base_url = await self._start_server()
            return self._base_url

    async def _start_server(self) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                "serve",
                f"--hostname={self.hostname}",
                f"--port={self.port}",
                cwd=self.workspace,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise TransportError(f"Failed to start OpenCode server '{self.command}': {e}") from e

        output: list[str] = []
        deadline = time.monotonic() + self.server_timeout_ms / 1000
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                await _kill(process)
                raise TransportError(
                    f"Timed out waiting for OpenCode server startup after {self.server_timeout_ms}ms. "
                    f"Output: {snippet(chr(10).join(output), 400)}"
                )
            try:
                raw = await asyncio.wait_for(process.stdout.readline(), timeout=remaining)
            except asyncio.TimeoutError:
                continue
            if not raw:
                await _kill(process)
                raise TransportError(
                    f"OpenCode server exited before startup completed. Output: {snippet(chr(10).join(output), 400)}"
                )
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            url = extract_server_url(line)
            if url is not None:
                self._process = process
                self._drain_task = asyncio.create_task(self._drain(process))
                logger.debug("OpenCode server listening on %s", url)
                return url
            output = [*output[-(_STARTUP_OUTPUT_LINES - 1):], line]

    @staticmethod
    async def _drain(process: asyncio.subprocess.Process) -> None:
        while True:
            raw = await process.stdout.readline()
            if not raw:
                return
            logger.debug("opencode: %s", raw.decode("utf-8", errors="replace").rstrip())

    # ------------------------------------------------------------------ #
    # HTTP API                                                             #
    # ------------------------------------------------------------------ #

    async def _validate_model(self, client: httpx.AsyncClient, model: OpencodeModel) -> None:
        if model.display in self._validated:
            return
        response = await client.get("/provider", params={"directory": self.workspace})
        if response.is_error:
            raise TransportError(
                f"OpenCode provider listing failed with {response.status_code}: {snippet(response.text, 300)}"
            )
        try:
            providers = response.json().get("all")
        except (ValueError, AttributeError) as e:
            raise TransportError(f"Failed to parse OpenCode provider listing: {e}") from e
        if not isinstance(providers, list):
            raise TransportError("OpenCode provider listing did not include 'all'.")

        entry = next((p for p in providers if isinstance(p, dict) and p.get("id") == model.provider_id), None)
        if entry is None:
            available = ", ".join([str(p.get("id")) for p in providers if isinstance(p, dict)][:_LISTING_SAMPLE])
            raise TransportError(
                f"OpenCode provider '{model.provider_id}' is not available. "
                f"Available providers: {available}"
            )
        models = entry.get("models")
        if not isinstance(models, dict):
            raise TransportError(f"OpenCode provider '{model.provider_id}' does not expose models.")
        if model.model_id not in models:
            raise TransportError(
                f"OpenCode model '{model.model_id}' is not available for provider '{model.provider_id}'. "
                f"Available models include: {', '.join(list(models)[:_LISTING_SAMPLE])}"
            )
        self._validated.add(model.display)

    async def _run_session(self, client: httpx.AsyncClient, model: OpencodeModel, prompt: str, timeout_ms: int) -> str:
        params = {"directory": self.workspace}
        response = await client.post("/session", params=params)
        if response.is_error:
            raise TransportError(
                f"OpenCode session creation failed with {response.status_code}: {snippet(response.text, 300)}"
            )
        try:
            session_id = response.json()["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransportError(f"Failed to parse OpenCode session response: {e}") from e

        try:
            response = await client.post(
                f"/session/{session_id}/message",
                params=params,
                json={
                    "model": {"providerID": model.provider_id, "modelID": model.model_id},
                    "agent": self.agent,
                    "parts": [{"type": "text", "text": prompt}],
                },
            )
            if response.is_error:
                raise TransportError(
                    f"OpenCode review request failed with {response.status_code}: {snippet(response.text, 300)}"
                )
            review = extract_review_from_body(response.text)
            if review is None:
                review = await self._poll_messages(client, session_id, response.text, timeout_ms)
            return review
        finally:
            try:
                await client.delete(f"/session/{session_id}", params=params)
            except httpx.HTTPError as e:
                logger.debug("Failed to delete OpenCode session %s: %s", session_id, e)

    async def _poll_messages(self, client: httpx.AsyncClient, session_id: str, initial_body: str, timeout_ms: int) -> str:
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            response = await client.get(
                f"/session/{session_id}/message",
                params={"directory": self.workspace, "limit": _POLL_MESSAGE_LIMIT},
            )
            if response.is_error:
                raise TransportError(
                    f"OpenCode messages poll failed with {response.status_code}: {snippet(response.text, 300)}"
                )
            review = extract_latest_assistant_message(response.text)
            if review is not None:
                return review
            if time.monotonic() >= deadline:
                raise TransportError(
                    "Failed to parse OpenCode review response body. "
                    f"Initial response: {snippet(initial_body, 200)}. "
                    f"Latest polled messages: {snippet(response.text, 200)}"
                )
            await asyncio.sleep(_POLL_INTERVAL_SECONDS)


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        process.kill()
        await process.wait()
