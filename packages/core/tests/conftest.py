"""Shared fixtures for executor and run queue tests."""

import asyncio
import json

import pytest

from rovex_core.config import ReviewProvider
from rovex_core.errors import TransportError
from rovex_core.executor import ReviewExecutor, ReviewRequest, ReviewSettings
from rovex_core.providers.base import BaseTransport
from rovex_store.memory import MemoryStore

TWO_FILE_DIFF = """\
diff --git a/src/alpha.py b/src/alpha.py
--- a/src/alpha.py
+++ b/src/alpha.py
@@ -1,2 +1,3 @@
 a = 1
+b = 2
 c = 3
diff --git a/src/beta.py b/src/beta.py
--- a/src/beta.py
+++ b/src/beta.py
@@ -10,2 +10,2 @@
-x = compute()
+x = compute(strict=True)
 y = x
"""


class FakeTransport(BaseTransport):
    """Scripted transport keyed by the chunk's file path.

    ``responses`` maps a path to a list of outcomes consumed one per call;
    each outcome is either raw text or an exception to raise. The last
    outcome repeats once the list is exhausted.
    """

    BASE_DELAY_SECONDS = 0.0

    def __init__(self, responses=None, narrative="## Overview\nTwo small edits.", deltas=None, narrative_error=None, gate=None):
        self.responses = {path: list(outcomes) for path, outcomes in (responses or {}).items()}
        self.narrative = narrative
        self.deltas = deltas
        self.narrative_error = narrative_error
        self.gate = gate
        self.structured_calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def generate_narrative(self, prompt, model, timeout_ms, on_delta=None):
        if self.narrative_error is not None:
            raise self.narrative_error
        for delta in self.deltas or []:
            on_delta(delta)
            await asyncio.sleep(0)
        return self.narrative

    async def generate_structured(self, prompt, model, timeout_ms):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
        finally:
            self.in_flight -= 1
        path = next((p for p in self.responses if f"File path: {p}" in prompt), None)
        self.structured_calls.append(path)
        if path is None:
            return json.dumps({"summary": "Nothing to report.", "findings": []})
        outcomes = self.responses[path]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def describe_model(self, model):
        return f"fake/{model}"

    async def aclose(self):
        self.closed = True


def finding_payload(line, title="Null dereference", severity="high"):
    return json.dumps(
        {
            "summary": "Found a problem.",
            "findings": [{"title": title, "body": "Details.", "severity": severity, "lineNumber": line}],
        }
    )


PERMANENT_ERROR = TransportError("AI provider returned 400. Response: invalid request")
TRANSIENT_ERROR = TransportError("AI provider returned 429. Response: Too Many Requests")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def thread(store):
    return store.create_thread("Review thread", workspace="/tmp/workspace")


@pytest.fixture
def make_request(thread):
    def _make(diff=TWO_FILE_DIFF, **overrides):
        fields = dict(
            thread_id=thread.id,
            workspace="/nonexistent/workspace",
            base_ref="origin/main",
            merge_base="abc1234",
            head="def5678",
            diff=diff,
            prompt="Find real bugs.",
        )
        fields.update(overrides)
        return ReviewRequest(**fields)

    return _make


@pytest.fixture
def make_executor(store):
    def _make(transport, max_parallel_chunks=1, max_diff_chars=100_000):
        settings = ReviewSettings(
            provider=ReviewProvider.OPENAI,
            model="test-model",
            timeout_ms=1000,
            max_diff_chars=max_diff_chars,
            max_parallel_chunks=max_parallel_chunks,
        )
        return ReviewExecutor(settings, store, transport_factory=lambda workspace: transport)

    return _make
