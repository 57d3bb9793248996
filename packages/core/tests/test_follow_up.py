"""Tests for rovex_core.follow_up."""

import pytest
from conftest import FakeTransport

from rovex_core.config import ReviewProvider
from rovex_core.errors import PreconditionError, TransportError
from rovex_core.executor import ReviewSettings
from rovex_core.follow_up import MAX_FOLLOW_UP_MESSAGES, format_follow_up_history, generate_follow_up
from rovex_store.models import Message


class RecordingTransport(FakeTransport):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.prompts: list[str] = []
        self.workspaces: list[str] = []

    async def generate_narrative(self, prompt, model, timeout_ms, on_delta=None):
        self.prompts.append(prompt)
        return await super().generate_narrative(prompt, model, timeout_ms, on_delta=on_delta)


@pytest.fixture
def settings():
    return ReviewSettings(
        provider=ReviewProvider.OPENAI,
        model="test-model",
        timeout_ms=1000,
        max_diff_chars=100_000,
        max_parallel_chunks=1,
    )


@pytest.fixture
def reviewed_thread(store, thread):
    store.persist_message(thread.id, "user", "AI review request for current diff.")
    store.persist_message(thread.id, "assistant", "## Overview\nThe retry loop never backs off.")
    return thread


def _factory(transport):
    def make(workspace):
        transport.workspaces.append(workspace)
        return transport

    return make


def _msg(role, content, i=1):
    return Message(id=i, thread_id="t", role=role, content=content)


class TestFormatHistory:
    def test_labels_and_separators(self):
        history, truncated = format_follow_up_history(
            [_msg("system", "Be brief."), _msg("user", " Why? "), _msg("assistant", "Because.")], 1000
        )

        assert history == "System: Be brief.\n\nUser: Why?\n\nAssistant: Because."
        assert truncated is False

    def test_blank_messages_skipped(self):
        history, _ = format_follow_up_history([_msg("user", "   "), _msg("assistant", "Done.")], 1000)

        assert history == "Assistant: Done."

    def test_truncated_to_limit(self):
        history, truncated = format_follow_up_history([_msg("assistant", "x" * 50)], 20)

        assert len(history) == 20
        assert truncated is True


class TestGenerateFollowUp:
    @pytest.mark.asyncio
    async def test_answers_and_records_both_messages(self, store, reviewed_thread, settings):
        transport = RecordingTransport(narrative="Add jitter to the delay.")

        answer = await generate_follow_up(store, _factory(transport), settings, reviewed_thread.id, "  How do I fix it?  ")

        assert answer.answer == "Add jitter to the delay."
        assert answer.model == "fake/test-model"
        assert answer.workspace == "/tmp/workspace"
        assert transport.workspaces == ["/tmp/workspace"]
        assert transport.closed
        messages = store.list_messages(reviewed_thread.id)
        assert [(m.role, m.content) for m in messages[-2:]] == [
            ("user", "How do I fix it?"),
            ("assistant", "Add jitter to the delay."),
        ]

    @pytest.mark.asyncio
    async def test_prompt_carries_thread_history_and_question(self, store, reviewed_thread, settings):
        transport = RecordingTransport()

        await generate_follow_up(store, _factory(transport), settings, reviewed_thread.id, "Is it tested?")

        prompt = transport.prompts[0]
        assert prompt.startswith("Continue this code review conversation.")
        assert "Thread: Review thread" in prompt
        assert "Workspace: /tmp/workspace" in prompt
        assert "Conversation history truncated: no" in prompt
        assert "Assistant: ## Overview\nThe retry loop never backs off." in prompt
        assert "User follow-up question:\nIs it tested?" in prompt

    @pytest.mark.asyncio
    async def test_explicit_workspace_wins(self, store, reviewed_thread, settings):
        transport = RecordingTransport()

        answer = await generate_follow_up(
            store, _factory(transport), settings, reviewed_thread.id, "Why?", workspace="/srv/checkout"
        )

        assert answer.workspace == "/srv/checkout"
        assert transport.workspaces == ["/srv/checkout"]

    @pytest.mark.asyncio
    async def test_history_truncation_flagged(self, store, reviewed_thread, settings):
        store.persist_message(reviewed_thread.id, "assistant", "y" * 5000)
        transport = RecordingTransport()

        await generate_follow_up(store, _factory(transport), settings, reviewed_thread.id, "Why?", history_chars=1000)

        assert "Conversation history truncated: yes" in transport.prompts[0]

    @pytest.mark.asyncio
    async def test_only_recent_messages_used(self, store, reviewed_thread, settings):
        for i in range(MAX_FOLLOW_UP_MESSAGES):
            store.persist_message(reviewed_thread.id, "user", f"note {i}")
        store.persist_message(reviewed_thread.id, "assistant", "Latest narrative.")
        transport = RecordingTransport()

        await generate_follow_up(store, _factory(transport), settings, reviewed_thread.id, "Why?")

        assert "The retry loop never backs off." not in transport.prompts[0]
        assert "Latest narrative." in transport.prompts[0]

    @pytest.mark.asyncio
    async def test_streams_deltas(self, store, reviewed_thread, settings):
        transport = RecordingTransport(narrative="ab", deltas=["a", "b"])
        seen = []

        await generate_follow_up(store, _factory(transport), settings, reviewed_thread.id, "Why?", on_delta=seen.append)

        assert seen == ["a", "b"]

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_question(self, store, reviewed_thread, settings):
        transport = RecordingTransport(narrative_error=TransportError("AI provider returned 500."))

        with pytest.raises(TransportError):
            await generate_follow_up(store, _factory(transport), settings, reviewed_thread.id, "Why?")

        assert transport.closed
        last = store.list_messages(reviewed_thread.id)[-1]
        assert (last.role, last.content) == ("user", "Why?")


class TestFollowUpPreconditions:
    @pytest.mark.asyncio
    async def test_unknown_thread(self, store, settings):
        with pytest.raises(PreconditionError):
            await generate_follow_up(store, _factory(RecordingTransport()), settings, "missing", "Why?")

    @pytest.mark.asyncio
    async def test_blank_question(self, store, reviewed_thread, settings):
        with pytest.raises(PreconditionError, match="Question must not be empty"):
            await generate_follow_up(store, _factory(RecordingTransport()), settings, reviewed_thread.id, "   ")

    @pytest.mark.asyncio
    async def test_no_workspace_anywhere(self, store, settings):
        bare = store.create_thread("No workspace")
        store.persist_message(bare.id, "assistant", "Done.")

        with pytest.raises(PreconditionError, match="Workspace path must not be empty"):
            await generate_follow_up(store, _factory(RecordingTransport()), settings, bare.id, "Why?")

    @pytest.mark.asyncio
    async def test_requires_a_review_first(self, store, thread, settings):
        store.persist_message(thread.id, "user", "AI review request for current diff.")
        transport = RecordingTransport()

        with pytest.raises(PreconditionError, match="Start review before asking follow-up questions"):
            await generate_follow_up(store, _factory(transport), settings, thread.id, "Why?")

        assert transport.prompts == []
        assert len(store.list_messages(thread.id)) == 1
