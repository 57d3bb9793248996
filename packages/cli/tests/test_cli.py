"""Tests for the CLI entry point."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from rovex_cli.cli import _build_store, main
from rovex_core.config import DEFAULT_CONFIG
from rovex_core.gh.pull_request import PullRequestDiff
from rovex_core.git.workspace import WorkspaceDiff
from rovex_core.providers.base import BaseTransport
from rovex_store.memory import MemoryStore
from rovex_store.models import ReviewFinding, ReviewResult, ReviewRun
from rovex_store.sqlite import SQLiteStore

DIFF = """\
diff --git a/app.py b/app.py
--- a/app.py
+++ b/app.py
@@ -1,2 +1,2 @@
-value = load()
+value = load(strict=True)
 print(value)
"""


class _CannedTransport(BaseTransport):
    """Answers every call instantly with one finding on line 1."""

    def __init__(self, structured_error=None):
        self.structured_error = structured_error

    async def generate_narrative(self, prompt, model, timeout_ms, on_delta=None):
        return "## Overview\nTightens loading."

    async def generate_structured(self, prompt, model, timeout_ms):
        if self.structured_error is not None:
            raise self.structured_error
        return json.dumps(
            {"summary": "One issue.", "findings": [{"title": "Unchecked None", "severity": "high", "lineNumber": 1}]}
        )


def _make_config(openai_key="oai", github_token=None, **overrides):
    config = dict(DEFAULT_CONFIG)
    config.update(openai_api_key=openai_key, github_token=github_token, store="memory")
    config.update(overrides)
    return config


def _patch_common(mocker, config=None, store=None):
    """Patch load_config and _build_store for most tests."""
    cfg = config or _make_config()
    mocker.patch("rovex_core.config.load_config", return_value=cfg)
    store = store or MemoryStore()
    mocker.patch("rovex_cli.cli._build_store", return_value=store)
    return cfg, store


def _workspace_diff(tmp_path, diff=DIFF):
    return WorkspaceDiff(
        workspace=str(tmp_path),
        base_ref="origin/main",
        merge_base="abc1234",
        head="def5678",
        diff=diff,
        files_changed=1,
        insertions=1,
        deletions=1,
    )


def _seed_run(store, run_id="run-1-1", status="completed", findings=None):
    thread = store.create_thread("seed")
    store.create_run(
        ReviewRun(
            run_id=run_id,
            thread_id=thread.id,
            workspace="/repo",
            base_ref="origin/main",
            merge_base="abc1234",
            head="def5678",
            scope_label="origin/main...HEAD",
            total_chunks=1,
        )
    )
    store.set_status(run_id, "running", mark_started=True)
    findings = findings or []
    store.finalize(
        run_id,
        ReviewResult(model="gpt-4.1-mini", review="## Overview\nSeeded narrative.", findings=findings),
        status,
    )
    return thread


# ---------------------------------------------------------------------------
# review
# ---------------------------------------------------------------------------


class TestReviewValidation:
    def test_missing_openai_key(self, mocker):
        _patch_common(mocker, config=_make_config(openai_key=None))

        result = CliRunner().invoke(main, ["review"])
        assert result.exit_code != 0
        assert "OPENAI_API_KEY" in result.output

    def test_openai_key_not_needed_for_opencode(self, mocker, tmp_path):
        _patch_common(mocker, config=_make_config(openai_key=None))
        mocker.patch("rovex_core.git.workspace.compare_workspace_diff", return_value=_workspace_diff(tmp_path))
        mocker.patch("rovex_cli.commands.review.get_transport", return_value=_CannedTransport())

        result = CliRunner().invoke(main, ["review", "--provider", "opencode", "--workspace", str(tmp_path)])
        assert result.exit_code == 0, result.output

    def test_repo_requires_pr(self, mocker):
        _patch_common(mocker)

        result = CliRunner().invoke(main, ["review", "--repo", "owner/repo"])
        assert result.exit_code != 0
        assert "--repo and --pr must be given together" in result.output

    def test_missing_github_token_for_pr(self, mocker):
        _patch_common(mocker)
        mocker.patch("rovex_cli.auth.resolve_github_token", return_value=None)

        result = CliRunner().invoke(main, ["review", "--repo", "owner/repo", "--pr", "1"])
        assert result.exit_code != 0
        assert "GITHUB_TOKEN" in result.output

    def test_nothing_to_review(self, mocker, tmp_path):
        _patch_common(mocker)
        mocker.patch("rovex_core.git.workspace.compare_workspace_diff", return_value=_workspace_diff(tmp_path, diff=""))

        result = CliRunner().invoke(main, ["review", "--workspace", str(tmp_path)])
        assert result.exit_code != 0
        assert "There are no changes to review." in result.output

    def test_unknown_thread(self, mocker, tmp_path):
        _patch_common(mocker)
        mocker.patch("rovex_core.git.workspace.compare_workspace_diff", return_value=_workspace_diff(tmp_path))

        result = CliRunner().invoke(main, ["review", "--workspace", str(tmp_path), "--thread", "nope"])
        assert result.exit_code != 0
        assert "--thread" in result.output


class TestReviewRun:
    def test_local_review_completes(self, mocker, tmp_path):
        _, store = _patch_common(mocker)
        compare = mocker.patch(
            "rovex_core.git.workspace.compare_workspace_diff", return_value=_workspace_diff(tmp_path)
        )
        mocker.patch("rovex_cli.commands.review.get_transport", return_value=_CannedTransport())

        result = CliRunner().invoke(main, ["review", "--workspace", str(tmp_path), "--base", "origin/dev"])

        assert result.exit_code == 0, result.output
        compare.assert_called_once_with(str(tmp_path), base_ref="origin/dev", fetch_remote=False)
        assert "completed" in result.output
        assert "Unchecked None" in result.output
        (run,) = store.list_runs()
        assert run.status == "completed"
        assert run.finding_count == 1
        assert run.scope_label == "origin/main...HEAD"

    def test_prompt_and_model_overrides(self, mocker, tmp_path):
        _, store = _patch_common(mocker)
        mocker.patch("rovex_core.git.workspace.compare_workspace_diff", return_value=_workspace_diff(tmp_path))
        factory = mocker.patch("rovex_cli.commands.review.get_transport", return_value=_CannedTransport())

        result = CliRunner().invoke(
            main, ["review", "--workspace", str(tmp_path), "--prompt", "Check SQL injection.", "--model", "gpt-5"]
        )

        assert result.exit_code == 0, result.output
        assert factory.call_args.args[0]["model"] == "gpt-5"
        (run,) = store.list_runs()
        assert run.prompt == "Check SQL injection."
        assert run.model == "gpt-5"

    def test_reuses_existing_thread(self, mocker, tmp_path):
        _, store = _patch_common(mocker)
        thread = store.create_thread("Existing")
        mocker.patch("rovex_core.git.workspace.compare_workspace_diff", return_value=_workspace_diff(tmp_path))
        mocker.patch("rovex_cli.commands.review.get_transport", return_value=_CannedTransport())

        result = CliRunner().invoke(main, ["review", "--workspace", str(tmp_path), "--thread", thread.id])

        assert result.exit_code == 0, result.output
        assert store.list_runs(thread_id=thread.id)[0].thread_id == thread.id
        assert [m.role for m in store.list_messages(thread.id)] == ["user", "assistant"]

    def test_failed_chunks_reported(self, mocker, tmp_path):
        _, store = _patch_common(mocker)
        mocker.patch("rovex_core.git.workspace.compare_workspace_diff", return_value=_workspace_diff(tmp_path))
        transport = _CannedTransport(structured_error=RuntimeError("AI provider returned 400. Response: nope"))
        mocker.patch("rovex_cli.commands.review.get_transport", return_value=transport)

        result = CliRunner().invoke(main, ["review", "--workspace", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "completed_with_errors" in result.output
        assert store.list_runs()[0].failed_chunks == 1

    def test_pull_request_review(self, mocker, tmp_path):
        _, store = _patch_common(mocker, config=_make_config(github_token="tok"))
        get_repo = mocker.patch("rovex_core.gh.pull_request.get_repo", return_value=MagicMock())
        mocker.patch("rovex_core.gh.pull_request.get_pull", return_value=MagicMock())
        mocker.patch(
            "rovex_core.gh.pull_request.build_pull_diff",
            return_value=PullRequestDiff(
                base_ref="main", merge_base="a" * 40, head="b" * 40, diff=DIFF, title="Strict loading", files_changed=1
            ),
        )
        mocker.patch("rovex_cli.commands.review.get_transport", return_value=_CannedTransport())

        result = CliRunner().invoke(main, ["review", "--repo", "owner/repo", "--pr", "42", "--workspace", str(tmp_path)])

        assert result.exit_code == 0, result.output
        get_repo.assert_called_once_with("owner/repo", token="tok")
        (run,) = store.list_runs()
        assert run.scope_label == "owner/repo#42"
        assert run.base_ref == "main"
        assert store.load_thread(run.thread_id).title == "owner/repo#42 Strict loading"


# ---------------------------------------------------------------------------
# runs / show / stats
# ---------------------------------------------------------------------------


class TestRunsCommand:
    def test_shows_table_when_runs_exist(self, mocker):
        _, store = _patch_common(mocker)
        _seed_run(store)

        result = CliRunner().invoke(main, ["runs"])
        assert result.exit_code == 0
        assert "run-1-1" in result.output

    def test_shows_empty_message(self, mocker):
        _patch_common(mocker)

        result = CliRunner().invoke(main, ["runs"])
        assert result.exit_code == 0
        assert "No review runs found" in result.output

    def test_thread_filter(self, mocker):
        store = MagicMock(spec=SQLiteStore)
        store.list_runs.return_value = []
        _patch_common(mocker, store=store)

        CliRunner().invoke(main, ["runs", "--thread", "t-1", "--limit", "5"])
        store.list_runs.assert_called_once_with(thread_id="t-1", limit=5)


class TestShowCommand:
    def test_prints_run(self, mocker):
        _, store = _patch_common(mocker)
        finding = ReviewFinding(
            id="app.py#file-1:additions:1:1",
            file_path="app.py",
            chunk_id="app.py#file-1",
            chunk_index=1,
            hunk_header="@@ -1,2 +1,2 @@",
            side="additions",
            line_number=1,
            title="Unchecked None",
            body="load() may return None.",
            severity="high",
        )
        _seed_run(store, findings=[finding])

        result = CliRunner().invoke(main, ["show", "run-1-1"])
        assert result.exit_code == 0
        assert "Seeded narrative." in result.output
        assert "load() may return None." in result.output

    def test_unknown_run(self, mocker):
        _patch_common(mocker)

        result = CliRunner().invoke(main, ["show", "run-missing"])
        assert result.exit_code != 0
        assert "run-missing" in result.output


class TestStatsCommand:
    def test_aggregates_findings(self, mocker):
        _, store = _patch_common(mocker)
        finding = ReviewFinding(
            id="f1",
            file_path="app.py",
            chunk_id="app.py#file-1",
            chunk_index=1,
            hunk_header="",
            side="additions",
            line_number=1,
            title="Bug",
            body="Body",
            severity="critical",
        )
        _seed_run(store, run_id="run-1-1", findings=[finding])
        _seed_run(store, run_id="run-1-2", status="completed_with_errors")

        result = CliRunner().invoke(main, ["stats"])
        assert result.exit_code == 0
        assert "Total runs:      2" in result.output
        assert "Total findings:  1" in result.output
        assert "app.py" in result.output

    def test_empty(self, mocker):
        _patch_common(mocker)

        result = CliRunner().invoke(main, ["stats"])
        assert "No review runs found" in result.output

# ---------------------------------------------------------------------------
# follow-up
# ---------------------------------------------------------------------------


def _reviewed_thread(store, workspace="/repo"):
    thread = store.create_thread("repo origin/main...HEAD", workspace=workspace)
    store.persist_message(thread.id, "user", "AI review request for current diff.")
    store.persist_message(thread.id, "assistant", "## Overview\nTightens loading.")
    return thread


class TestFollowUpCommand:
    def test_answers_and_records(self, mocker):
        _, store = _patch_common(mocker)
        thread = _reviewed_thread(store)
        get_transport = mocker.patch("rovex_cli.commands.follow_up.get_transport", return_value=_CannedTransport())

        result = CliRunner().invoke(main, ["follow-up", thread.id, "Is strict mode tested?"])

        assert result.exit_code == 0, result.output
        assert "Tightens loading." in result.output
        assert get_transport.call_args[0][1] == "/repo"
        messages = store.list_messages(thread.id)
        assert [m.role for m in messages[-2:]] == ["user", "assistant"]
        assert messages[-2].content == "Is strict mode tested?"

    def test_workspace_override(self, mocker):
        _, store = _patch_common(mocker)
        thread = _reviewed_thread(store)
        get_transport = mocker.patch("rovex_cli.commands.follow_up.get_transport", return_value=_CannedTransport())

        result = CliRunner().invoke(main, ["follow-up", thread.id, "Why?", "--workspace", "/other"])

        assert result.exit_code == 0, result.output
        assert get_transport.call_args[0][1] == "/other"

    def test_requires_review_first(self, mocker):
        _, store = _patch_common(mocker)
        thread = store.create_thread("fresh", workspace="/repo")

        result = CliRunner().invoke(main, ["follow-up", thread.id, "Why?"])

        assert result.exit_code != 0
        assert "Start review before asking follow-up questions." in result.output

    def test_unknown_thread(self, mocker):
        _patch_common(mocker)

        result = CliRunner().invoke(main, ["follow-up", "thread-missing", "Why?"])

        assert result.exit_code != 0
        assert "thread-missing" in result.output

    def test_missing_openai_key(self, mocker):
        _, store = _patch_common(mocker, config=_make_config(openai_key=None))
        thread = _reviewed_thread(store)

        result = CliRunner().invoke(main, ["follow-up", thread.id, "Why?"])

        assert result.exit_code != 0
        assert "OPENAI_API_KEY" in result.output


# ---------------------------------------------------------------------------
# comment / comments
# ---------------------------------------------------------------------------


class TestCommentCommands:
    def test_comment_then_list(self, mocker):
        _, store = _patch_common(mocker)
        thread = _seed_run(store)

        added = CliRunner().invoke(
            main, ["comment", "run-1-1", "--file", "app.py", "--line", "3", "--end-line", "1", "--body", "Check None"]
        )
        listed = CliRunner().invoke(main, ["comments", "run-1-1"])

        assert added.exit_code == 0, added.output
        assert "app.py:+1..+3" in added.output
        assert listed.exit_code == 0, listed.output
        assert "Check None" in listed.output
        stored = store.list_inline_comments(thread.id, "/repo", "origin/main", "abc1234", "def5678")
        assert [(c.line_number, c.end_line_number, c.author) for c in stored] == [(1, 3, "You")]

    def test_side_alias_normalized(self, mocker):
        _, store = _patch_common(mocker)
        thread = _seed_run(store)

        result = CliRunner().invoke(
            main, ["comment", "run-1-1", "--file", "app.py", "--line", "1", "--side", "removed", "--body", "Old path"]
        )

        assert result.exit_code == 0, result.output
        stored = store.list_inline_comments(thread.id, "/repo", "origin/main", "abc1234", "def5678")
        assert stored[0].side == "deletions"

    def test_invalid_comment_rejected(self, mocker):
        _, store = _patch_common(mocker)
        _seed_run(store)

        result = CliRunner().invoke(main, ["comment", "run-1-1", "--file", "app.py", "--line", "0", "--body", "x"])

        assert result.exit_code != 0
        assert "Comment line number must be positive." in result.output

    def test_unknown_run(self, mocker):
        _patch_common(mocker)

        result = CliRunner().invoke(main, ["comments", "run-missing"])

        assert result.exit_code != 0
        assert "run-missing" in result.output

    def test_no_comments(self, mocker):
        _, store = _patch_common(mocker)
        _seed_run(store)

        result = CliRunner().invoke(main, ["comments", "run-1-1"])

        assert result.exit_code == 0
        assert "No inline comments found" in result.output


# ---------------------------------------------------------------------------
# resolve_github_token
# ---------------------------------------------------------------------------


class TestResolveGithubToken:
    def test_returns_env_var_when_set(self, monkeypatch):
        from rovex_cli.auth import resolve_github_token

        monkeypatch.setenv("GITHUB_TOKEN", "env-token")
        assert resolve_github_token() == "env-token"

    def test_config_token_takes_precedence(self, monkeypatch):
        from rovex_cli.auth import resolve_github_token

        monkeypatch.setenv("GITHUB_TOKEN", "env-token")
        assert resolve_github_token({"github_token": "cfg-token"}) == "cfg-token"

    def test_blank_sources_fall_through_to_gh(self, monkeypatch):
        from rovex_cli.auth import resolve_github_token

        monkeypatch.setenv("GITHUB_TOKEN", "  ")
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="gh-token\n")
            assert resolve_github_token({"github_token": None}) == "gh-token"
        mock_run.assert_called_once()
        assert mock_run.call_args.args[0] == ["gh", "auth", "token"]

    def test_returns_none_when_gh_fails(self, monkeypatch):
        from rovex_cli.auth import resolve_github_token

        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=1, stdout="")
            assert resolve_github_token() is None

    def test_falls_back_to_gh_cli(self, monkeypatch):
        from rovex_cli.auth import resolve_github_token

        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="gh-token\n")
            result = resolve_github_token()
        assert result == "gh-token"

    def test_returns_none_when_gh_not_installed(self, monkeypatch):
        from rovex_cli.auth import resolve_github_token

        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        with patch("subprocess.run", side_effect=FileNotFoundError):
            assert resolve_github_token() is None

    def test_returns_none_when_gh_times_out(self, monkeypatch):
        from rovex_cli.auth import resolve_github_token

        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="gh", timeout=5)):
            assert resolve_github_token() is None

    def test_returns_none_when_gh_returns_empty(self, monkeypatch):
        from rovex_cli.auth import resolve_github_token

        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="   ")
            assert resolve_github_token() is None


# ---------------------------------------------------------------------------
# _build_store
# ---------------------------------------------------------------------------


class TestBuildStore:
    def test_returns_sqlite_by_default(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        store = _build_store({})
        assert isinstance(store, SQLiteStore)
        store.close()

    def test_returns_memory_store(self):
        assert isinstance(_build_store({"store": "memory"}), MemoryStore)

    def test_sqlite_uses_configured_path(self, tmp_path):
        db = tmp_path / "runs.db"
        store = _build_store({"store": "sqlite", "store_path": str(db)})
        store.close()
        assert db.exists()

    def test_unknown_store(self):
        import click

        with pytest.raises(click.UsageError):
            _build_store({"store": "gist"})
