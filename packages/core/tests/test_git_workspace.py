"""Tests for local workspace diffs. git itself is mocked."""

import subprocess

import pytest

from rovex_core.errors import PreconditionError
from rovex_core.git.workspace import compare_workspace_diff, parse_numstat

DIFF = "diff --git a/a.py b/a.py\n--- a/a.py\n+++ b/a.py\n@@ -1 +1 @@\n-x\n+y\n"


def _completed(args, stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=args, returncode=returncode, stdout=stdout, stderr=stderr)


def _fake_git(existing_refs=("origin/main",), fail=None):
    """Build a subprocess.run replacement answering the git calls compare_workspace_diff makes."""
    calls = []

    def run(cmd, **kwargs):
        args = cmd[3:]  # strip "git -C <path>"
        calls.append(args)
        assert kwargs["env"]["GIT_TERMINAL_PROMPT"] == "0"
        if fail and args[0] == fail:
            return _completed(cmd, returncode=128, stderr=f"fatal: {fail} exploded")
        if args[:2] == ["rev-parse", "--is-inside-work-tree"]:
            return _completed(cmd, "true\n")
        if args[:2] == ["rev-parse", "--verify"]:
            ref = args[3].removesuffix("^{commit}")
            return _completed(cmd, returncode=0 if ref in existing_refs else 1)
        if args == ["rev-parse", "HEAD"]:
            return _completed(cmd, "head123\n")
        if args[0] == "merge-base":
            return _completed(cmd, "base456\n")
        if args[0] == "diff" and "--numstat" in args:
            return _completed(cmd, "1\t1\ta.py\n-\t-\timage.png\n10\t0\tb.py\n")
        if args[0] == "diff":
            return _completed(cmd, DIFF)
        if args[0] == "fetch":
            return _completed(cmd)
        raise AssertionError(f"unexpected git call: {args}")

    return run, calls


def test_parse_numstat():
    assert parse_numstat("1\t2\ta.py\n-\t-\tlogo.png\n\n30\t0\tb.py\n") == (3, 31, 2)


def test_parse_numstat_empty():
    assert parse_numstat("") == (0, 0, 0)


def test_compare_workspace_diff(tmp_path, mocker):
    run, calls = _fake_git()
    mocker.patch("rovex_core.git.workspace.subprocess.run", side_effect=run)

    result = compare_workspace_diff(str(tmp_path))

    assert result.workspace == str(tmp_path.resolve())
    assert result.base_ref == "origin/main"
    assert result.head == "head123"
    assert result.merge_base == "base456"
    assert result.diff == DIFF
    assert (result.files_changed, result.insertions, result.deletions) == (3, 11, 1)
    diff_call = next(c for c in calls if c[0] == "diff" and "--patch" in c)
    assert diff_call == ["diff", "--merge-base", "origin/main", "--no-color", "--no-ext-diff", "--patch", "--find-renames"]
    assert not any(c[0] == "fetch" for c in calls)


def test_default_base_falls_back_to_main(tmp_path, mocker):
    run, _ = _fake_git(existing_refs=("main",))
    mocker.patch("rovex_core.git.workspace.subprocess.run", side_effect=run)

    assert compare_workspace_diff(str(tmp_path)).base_ref == "main"


def test_unknown_base_ref(tmp_path, mocker):
    run, _ = _fake_git(existing_refs=())
    mocker.patch("rovex_core.git.workspace.subprocess.run", side_effect=run)

    with pytest.raises(PreconditionError, match="Unable to resolve base ref 'release'"):
        compare_workspace_diff(str(tmp_path), base_ref="release")


def test_fetch_remote(tmp_path, mocker):
    run, calls = _fake_git()
    mocker.patch("rovex_core.git.workspace.subprocess.run", side_effect=run)

    compare_workspace_diff(str(tmp_path), fetch_remote=True)

    assert ["fetch", "--quiet", "origin"] in calls


def test_git_failure_is_precondition_error(tmp_path, mocker):
    run, _ = _fake_git(fail="merge-base")
    mocker.patch("rovex_core.git.workspace.subprocess.run", side_effect=run)

    with pytest.raises(PreconditionError, match="git resolve merge-base failed: fatal: merge-base exploded"):
        compare_workspace_diff(str(tmp_path))


def test_empty_workspace():
    with pytest.raises(PreconditionError, match="must not be empty"):
        compare_workspace_diff("  ")


def test_missing_workspace(tmp_path):
    with pytest.raises(PreconditionError, match="does not exist"):
        compare_workspace_diff(str(tmp_path / "missing"))


def test_git_not_installed(tmp_path, mocker):
    mocker.patch("rovex_core.git.workspace.subprocess.run", side_effect=FileNotFoundError("git"))

    with pytest.raises(PreconditionError, match="Failed to run git"):
        compare_workspace_diff(str(tmp_path))
