"""Transport speaking newline-delimited JSON-RPC 2.0 to `codex app-server`.

Each call spawns `<command> app-server` and runs one exchange over its
standard streams:

    initialize (id 1) → initialized (notification)
    thread/start (id 2)  → thread id
    turn/start (id 3)    → turn id
    ...notifications...  → item/completed carries assistant messages,
                           turn/completed (for our turn) ends the exchange

The whole exchange shares one deadline (the per-call timeout). The child
is killed when the call returns, successfully or not.
"""

from __future__ import annotations

import asyncio
import importlib.metadata
import json
import logging
import time
from typing import Any, Optional

from rovex_core.errors import TransportError
from rovex_core.providers.base import BaseTransport, DeltaCallback
from rovex_core.utils.text import snippet

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-06-18"
CLIENT_NAME = "rovex"
_STREAM_LIMIT = 16 * 1024 * 1024
_TIMEOUT_MESSAGE = "Timed out waiting for Codex app-server response."


def _ids_equal(left: Any, right: Any) -> bool:
    if left is None or right is None or isinstance(left, bool) or isinstance(right, bool):
        return False
    return str(left) == str(right)


def rpc_error_message(message: dict) -> Optional[str]:
    error = message.get("error")
    if not isinstance(error, dict):
        return None
    detail = error.get("message")
    detail = detail.strip() if isinstance(detail, str) and detail.strip() else "request failed"
    code = error.get("code")
    if isinstance(code, int):
        return f"Codex app-server error {code}: {detail}"
    return f"Codex app-server error: {detail}"


def _text_fragment(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip() or None
    if not isinstance(value, dict):
        return None
    text = value.get("text")
    if isinstance(text, str) and text.strip():
        return text.strip()
    if isinstance(text, dict) and isinstance(text.get("value"), str) and text["value"].strip():
        return text["value"].strip()
    if "output" in value:
        return _text_fragment(value["output"])
    return None


def extract_item_text(item: dict) -> Optional[str]:
    """Text of an agentMessage/message item, joining content or parts entries."""
    text = _text_fragment(item)
    if text:
        return text
    parts: list[str] = []
    for key in ("content", "parts"):
        entries = item.get(key)
        if isinstance(entries, list):
            parts.extend(t for t in (_text_fragment(e) for e in entries) if t)
    return "\n\n".join(parts) if parts else None


class _Session:
    """One JSON-RPC conversation over a child's stdin/stdout."""

    def __init__(self, process: asyncio.subprocess.Process, deadline: float):
        self.process = process
        self.deadline = deadline

    async def send(self, payload: dict) -> None:
        data = json.dumps(payload).encode("utf-8") + b"\n"
        try:
            self.process.stdin.write(data)
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(f"Failed to write to Codex app-server: {e}") from e

    async def read(self) -> dict:
        while True:
            remaining = self.deadline - time.monotonic()
            if remaining <= 0:
                raise TransportError(_TIMEOUT_MESSAGE)
            try:
                raw = await asyncio.wait_for(self.process.stdout.readline(), timeout=remaining)
            except asyncio.TimeoutError:
                raise TransportError(_TIMEOUT_MESSAGE) from None
            except ValueError as e:
                raise TransportError(f"Failed to read Codex app-server output: {e}") from e
            if not raw:
                raise TransportError("Codex app-server exited before returning a response.")
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError as e:
                raise TransportError(
                    f"Received invalid JSON from Codex app-server: {e}. Payload: {snippet(line, 200)}"
                ) from e
            if isinstance(message, dict):
                return message

    async def request(self, request_id: int, method: str, params: dict) -> Any:
        await self.send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        while True:
            message = await self.read()
            if not _ids_equal(message.get("id"), request_id):
                continue
            error = rpc_error_message(message)
            if error:
                raise TransportError(error)
            return message.get("result")


class AppServerTransport(BaseTransport):
    def __init__(self, workspace: str, command: str = "codex"):
        self.workspace = workspace
        self.command = command

    async def generate_narrative(
        self,
        prompt: str,
        model: str,
        timeout_ms: int,
        on_delta: Optional[DeltaCallback] = None,
    ) -> str:
        return await self._run_turn(prompt, model, timeout_ms, on_delta)

    async def generate_structured(self, prompt: str, model: str, timeout_ms: int) -> str:
        return await self._run_turn(prompt, model, timeout_ms, None)

    def describe_model(self, model: str) -> str:
        return model.strip()

    async def _run_turn(self, prompt: str, model: str, timeout_ms: int, on_delta: Optional[DeltaCallback]) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                "app-server",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise TransportError(f"Failed to start Codex app-server with '{self.command} app-server': {e}") from e

        session = _Session(process, deadline=time.monotonic() + timeout_ms / 1000)
        try:
            return await self._exchange(session, prompt, model.strip(), on_delta)
        finally:
            if process.returncode is None:
                process.kill()
            await process.wait()

    async def _exchange(self, session: _Session, prompt: str, model: str, on_delta: Optional[DeltaCallback]) -> str:
        await session.request(
            1,
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "clientInfo": {"name": CLIENT_NAME, "version": _client_version()},
                "capabilities": {},
            },
        )
        await session.send({"jsonrpc": "2.0", "method": "initialized", "params": {}})

        thread = await session.request(2, "thread/start", {"cwd": self.workspace, "model": model}) or {}
        thread_id = _first_present(thread, ("thread", "id"), ("threadId",), ("id",))
        if not isinstance(thread_id, str):
            raise TransportError("Codex app-server did not return a thread id.")

        turn = await session.request(3, "turn/start", {"threadId": thread_id, "cwd": self.workspace, "input": prompt}) or {}
        turn_id = _first_present(turn, ("turn", "id"), ("turnId",), ("id",))

        latest_text: Optional[str] = None
        while True:
            message = await session.read()
            error = rpc_error_message(message)
            if error:
                raise TransportError(error)

            method = message.get("method")
            params = message.get("params") if isinstance(message.get("params"), dict) else {}
            if method == "item/agentMessage/delta":
                delta = params.get("delta")
                if on_delta is not None and isinstance(delta, str) and delta:
                    on_delta(delta)
            elif method == "item/completed":
                item = params.get("item")
                if isinstance(item, dict) and item.get("type") in ("agentMessage", "message"):
                    latest_text = extract_item_text(item) or latest_text
            elif method == "turn/completed":
                completed = params.get("turn") if isinstance(params.get("turn"), dict) else {}
                if turn_id is not None and "id" in completed and not _ids_equal(completed["id"], turn_id):
                    continue
                status = completed.get("status") or "completed"
                if status != "completed":
                    error_info = completed.get("error") if isinstance(completed.get("error"), dict) else {}
                    detail = (error_info.get("message") or "").strip() or "turn did not complete successfully"
                    raise TransportError(f"Codex app-server turn failed: {detail}")
                break

        if not latest_text:
            raise TransportError("Codex app-server completed without returning assistant output.")
        return latest_text


def _first_present(data: Any, *paths: tuple[str, ...]) -> Any:
    for path in paths:
        value = data
        for key in path:
            value = value.get(key) if isinstance(value, dict) else None
        if value is not None:
            return value
    return None


def _client_version() -> str:
    try:
        return importlib.metadata.version("rovex")
    except importlib.metadata.PackageNotFoundError:
        return "0.0.0"
