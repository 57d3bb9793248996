"""Compare a local git workspace against a base ref.

The diff is taken against the merge base of HEAD and the base ref, the
same range a pull request would show, and includes uncommitted changes in
the working tree.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from rovex_core.errors import PreconditionError
from rovex_core.utils.text import snippet

logger = logging.getLogger(__name__)

DEFAULT_BASE_REF = "origin/main"
_FALLBACK_BASE_REFS = ("origin/master", "main", "master")


@dataclass
class WorkspaceDiff:
    workspace: str
    base_ref: str
    merge_base: str
    head: str
    diff: str
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0


def _run_git(repo_path: Path, args: list[str], context: str, check: bool = True) -> subprocess.CompletedProcess:
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    try:
        result = subprocess.run(
            ["git", "-C", str(repo_path), *args],
            capture_output=True,
            text=True,
            errors="replace",
            env=env,
        )
    except OSError as e:
        raise PreconditionError(f"Failed to run git {context}: {e}") from e
    if check and result.returncode != 0:
        output = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        raise PreconditionError(f"git {context} failed: {snippet(output, 500)}")
    return result


def _ref_exists(repo_path: Path, ref: str) -> bool:
    result = _run_git(repo_path, ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], "rev-parse", check=False)
    return result.returncode == 0


def resolve_base_ref(repo_path: Path, requested: str) -> str:
    """Return the first existing ref among the requested one and its usual fallbacks."""
    candidates = [requested]
    if requested == DEFAULT_BASE_REF:
        candidates.extend(_FALLBACK_BASE_REFS)
    for candidate in candidates:
        if _ref_exists(repo_path, candidate):
            return candidate
    raise PreconditionError(
        f"Unable to resolve base ref '{requested}'. Make sure the branch exists and has been fetched."
    )


def parse_numstat(output: str) -> tuple[int, int, int]:
    """Sum `git diff --numstat` output into (files, insertions, deletions).

    Binary files report "-" counts; they count as changed files only.
    """
    files_changed = insertions = deletions = 0
    for line in output.splitlines():
        columns = line.strip().split("\t", 2)
        if len(columns) < 3:
            continue
        files_changed += 1
        insertions += int(columns[0]) if columns[0].isdigit() else 0
        deletions += int(columns[1]) if columns[1].isdigit() else 0
    return files_changed, insertions, deletions


def resolve_workspace(workspace: str) -> Path:
    workspace = workspace.strip()
    if not workspace:
        raise PreconditionError("Workspace path must not be empty.")
    repo_path = Path(workspace).expanduser().resolve()
    if not repo_path.exists():
        raise PreconditionError(f"Workspace does not exist: {repo_path}")
    if not repo_path.is_dir():
        raise PreconditionError(f"Workspace is not a directory: {repo_path}")
    inside = _run_git(repo_path, ["rev-parse", "--is-inside-work-tree"], "rev-parse").stdout.strip()
    if inside != "true":
        raise PreconditionError(f"Workspace is not a git repository: {repo_path}")
    return repo_path


def compare_workspace_diff(workspace: str, base_ref: str = DEFAULT_BASE_REF, fetch_remote: bool = False) -> WorkspaceDiff:
    """Diff the workspace against the merge base of HEAD and ``base_ref``.

    Raises PreconditionError when the workspace is not a usable git
    repository or any git step fails.
    """
    repo_path = resolve_workspace(workspace)
    requested = base_ref.strip() or DEFAULT_BASE_REF

    if fetch_remote and requested.startswith("origin/"):
        logger.debug("Fetching origin for %s", repo_path)
        _run_git(repo_path, ["fetch", "--quiet", "origin"], "fetch origin")

    resolved = resolve_base_ref(repo_path, requested)
    head = _run_git(repo_path, ["rev-parse", "HEAD"], "resolve HEAD").stdout.strip()
    merge_base = _run_git(repo_path, ["merge-base", "HEAD", resolved], "resolve merge-base").stdout.strip()
    diff = _run_git(
        repo_path,
        ["diff", "--merge-base", resolved, "--no-color", "--no-ext-diff", "--patch", "--find-renames"],
        "diff",
    ).stdout
    numstat = _run_git(repo_path, ["diff", "--merge-base", resolved, "--numstat"], "diff --numstat").stdout
    files_changed, insertions, deletions = parse_numstat(numstat)
    logger.debug("Compared %s against %s: %d file(s) changed", repo_path, resolved, files_changed)

    return WorkspaceDiff(
        workspace=str(repo_path),
        base_ref=resolved,
        merge_base=merge_base,
        head=head,
        diff=diff,
        files_changed=files_changed,
        insertions=insertions,
        deletions=deletions,
    )
