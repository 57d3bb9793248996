from __future__ import annotations

from dataclasses import dataclass

from github import Github


@dataclass
class PullRequestDiff:
    base_ref: str
    merge_base: str
    head: str
    diff: str
    title: str
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0


def get_repo(repo_name: str, token: str):
    return Github(token).get_repo(repo_name)


def get_pull(repo, pr_number: int):
    return repo.get_pull(pr_number)


def _file_header(f) -> list[str]:
    old_path = (f.previous_filename or f.filename) if f.status == "renamed" else f.filename
    lines = [f"diff --git a/{old_path} b/{f.filename}"]
    if f.status == "renamed":
        lines += [f"rename from {old_path}", f"rename to {f.filename}"]
    if f.status == "added":
        lines += ["new file mode 100644", "--- /dev/null", f"+++ b/{f.filename}"]
    elif f.status == "removed":
        lines += ["deleted file mode 100644", f"--- a/{f.filename}", "+++ /dev/null"]
    elif f.patch:
        lines += [f"--- a/{old_path}", f"+++ b/{f.filename}"]
    return lines


def build_pull_diff(pr) -> PullRequestDiff:
    """Rebuild a unified diff for a pull request from its per-file patches.

    GitHub omits the patch for binary and very large files; those keep only
    their header and are skipped by the chunk parser.
    """
    sections: list[str] = []
    files_changed = insertions = deletions = 0
    for f in pr.get_files():
        files_changed += 1
        insertions += f.additions or 0
        deletions += f.deletions or 0
        lines = _file_header(f)
        if f.patch:
            lines.append(f.patch.rstrip("\n"))
        sections.append("\n".join(lines))

    diff = "\n".join(sections)
    return PullRequestDiff(
        base_ref=pr.base.ref,
        merge_base=pr.base.sha,
        head=pr.head.sha,
        diff=diff + "\n" if diff else "",
        title=pr.title,
        files_changed=files_changed,
        insertions=insertions,
        deletions=deletions,
    )
