"""Split a unified diff into addressable, line-mapped units of review work.

Two granularities:
  parse_diff_chunks       one DiffChunk per hunk, ids "<path>#chunk-<n>"
  parse_diff_file_chunks  one DiffChunk per file, hunks merged, ids
                          "<path>#file-<n>" numbered across the whole diff

Each chunk's ``patch`` is self-contained (file headers + hunk header + body)
so it can be sent to a model without the rest of the diff. Addition and
deletion line numbers are computed by walking the hunk body with running
new/old cursors seeded from the ``@@`` header.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from rovex_core.utils.text import truncate_chars

logger = logging.getLogger(__name__)

SIDE_ADDITIONS = "additions"
SIDE_DELETIONS = "deletions"

CONTEXT_RADIUS = 10
CONTEXT_MERGE_GAP = 2
MAX_CONTEXT_WINDOWS = 8
MAX_CONTEXT_CHARS = 6000

_DELETION_SIDES = {"deletion", "deletions", "old", "left", "minus", "removed"}
_SEVERITIES = {"critical", "high", "medium", "low"}


@dataclass(frozen=True)
class DiffChunk:
    id: str
    file_path: str
    chunk_index: int
    hunk_header: str
    patch: str
    previous_path: Optional[str] = None
    addition_lines: tuple[int, ...] = ()
    deletion_lines: tuple[int, ...] = ()


@dataclass
class _FileState:
    file_path: Optional[str] = None
    previous_path: Optional[str] = None
    headers: list[str] = field(default_factory=list)
    chunk_count: int = 0


@dataclass
class _HunkState:
    header: str
    old_line: int
    new_line: int
    lines: list[str] = field(default_factory=list)
    addition_lines: set[int] = field(default_factory=set)
    deletion_lines: set[int] = field(default_factory=set)


def _diff_lines(text: str) -> list[str]:
    # Split on "\n" only: diffs may legitimately contain form feeds and
    # other characters str.splitlines() would treat as line breaks.
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def normalize_patch_path(value: str) -> Optional[str]:
    """Strip quotes and the a/ or b/ prefix. /dev/null and blanks become None."""
    normalized = value.strip().strip('"')
    if not normalized or normalized == "/dev/null":
        return None
    for prefix in ("a/", "b/"):
        if normalized.startswith(prefix):
            return normalized[len(prefix):]
    return normalized


def _range_start(span: str, sign: str) -> Optional[int]:
    span = span.strip()
    if not span.startswith(sign):
        return None
    start = span[1:].split(",", 1)[0].strip()
    try:
        return int(start)
    except ValueError:
        return None


def parse_hunk_positions(header: str) -> Optional[tuple[int, int]]:
    """Return (old_start, new_start) from an ``@@ -a,b +c,d @@`` header."""
    parts = header.split()
    if len(parts) < 3 or parts[0] != "@@":
        return None
    old_start = _range_start(parts[1], "-")
    new_start = _range_start(parts[2], "+")
    if old_start is None or new_start is None:
        return None
    return old_start, new_start


def _is_hunk_header(line: str) -> bool:
    return line.startswith("@@ ") and " @@" in line


def _flush_hunk(chunks: list[DiffChunk], file_state: _FileState, hunk: Optional[_HunkState]) -> None:
    if hunk is None or file_state.file_path is None:
        return
    file_state.chunk_count += 1
    index = file_state.chunk_count
    patch = "\n".join([*file_state.headers, hunk.header, *hunk.lines]) + "\n"
    chunks.append(
        DiffChunk(
            id=f"{file_state.file_path}#chunk-{index}",
            file_path=file_state.file_path,
            previous_path=file_state.previous_path,
            chunk_index=index,
            hunk_header=hunk.header,
            patch=patch,
            addition_lines=tuple(sorted(hunk.addition_lines)),
            deletion_lines=tuple(sorted(hunk.deletion_lines)),
        )
    )


def parse_diff_chunks(diff: str) -> list[DiffChunk]:
    """Parse a unified diff into one chunk per hunk, in diff order.

    Files without hunks (pure renames, mode changes, binary files) produce
    no chunks.
    """
    chunks: list[DiffChunk] = []
    file_state = _FileState()
    hunk: Optional[_HunkState] = None

    for line in _diff_lines(diff):
        if line.startswith("diff --git "):
            _flush_hunk(chunks, file_state, hunk)
            hunk = None
            file_state = _FileState(headers=[line])
            parts = line.split()
            old_path = normalize_patch_path(parts[2]) if len(parts) > 2 else None
            new_path = normalize_patch_path(parts[3]) if len(parts) > 3 else None
            file_state.previous_path = old_path
            file_state.file_path = new_path or old_path
            continue

        if _is_hunk_header(line):
            _flush_hunk(chunks, file_state, hunk)
            old_start, new_start = parse_hunk_positions(line) or (1, 1)
            hunk = _HunkState(header=line, old_line=max(old_start, 1), new_line=max(new_start, 1))
            continue

        if hunk is not None:
            hunk.lines.append(line)
            if line.startswith("+"):
                if not line.startswith("+++"):
                    hunk.addition_lines.add(max(hunk.new_line, 1))
                    hunk.new_line += 1
            elif line.startswith("-"):
                if not line.startswith("---"):
                    hunk.deletion_lines.add(max(hunk.old_line, 1))
                    hunk.old_line += 1
            elif line.startswith(" "):
                hunk.old_line += 1
                hunk.new_line += 1
            continue

        if file_state.file_path is not None:
            if line.startswith("--- "):
                file_state.previous_path = normalize_patch_path(line[4:])
            elif line.startswith("+++ "):
                new_path = normalize_patch_path(line[4:])
                if new_path is not None:
                    file_state.file_path = new_path
            file_state.headers.append(line)

    _flush_hunk(chunks, file_state, hunk)
    return chunks


def _split_patch(patch: str) -> tuple[list[str], list[str]]:
    headers: list[str] = []
    hunks: list[str] = []
    in_hunk = False
    for line in _diff_lines(patch):
        if not in_hunk and line.startswith("@@ "):
            in_hunk = True
        (hunks if in_hunk else headers).append(line)
    return headers, hunks


def parse_diff_file_chunks(diff: str) -> list[DiffChunk]:
    """Parse a unified diff into one review unit per file.

    Hunks of the same file are merged: line sets are unioned, the first
    hunk's file headers are kept and every hunk body is concatenated.
    Units are ordered by path and numbered 1..N across the diff.
    """
    hunks = sorted(parse_diff_chunks(diff), key=lambda c: (c.file_path, c.chunk_index))
    files: list[DiffChunk] = []

    group: list[DiffChunk] = []
    for chunk in hunks:
        if group and chunk.file_path != group[0].file_path:
            files.append(_merge_file_group(group, len(files) + 1))
            group = []
        group.append(chunk)
    if group:
        files.append(_merge_file_group(group, len(files) + 1))

    return files


def _merge_file_group(group: list[DiffChunk], index: int) -> DiffChunk:
    first = group[0]
    headers: list[str] = []
    bodies: list[str] = []
    additions: set[int] = set()
    deletions: set[int] = set()
    for position, chunk in enumerate(group):
        additions.update(chunk.addition_lines)
        deletions.update(chunk.deletion_lines)
        chunk_headers, chunk_hunks = _split_patch(chunk.patch)
        if position == 0:
            headers = chunk_headers
        bodies.extend(chunk_hunks)

    patch = "\n".join([*headers, *bodies]) or first.patch
    if patch and not patch.endswith("\n"):
        patch += "\n"

    return DiffChunk(
        id=f"{first.file_path}#file-{index}",
        file_path=first.file_path,
        previous_path=first.previous_path,
        chunk_index=index,
        hunk_header=first.hunk_header,
        patch=patch,
        addition_lines=tuple(sorted(additions)),
        deletion_lines=tuple(sorted(deletions)),
    )


# ---------------------------------------------------------------------------
# Line resolution and finding normalisation
# ---------------------------------------------------------------------------


def normalize_side(value: Optional[str]) -> str:
    if value is not None and value.strip().lower() in _DELETION_SIDES:
        return SIDE_DELETIONS
    return SIDE_ADDITIONS


def normalize_severity(value: Optional[str]) -> str:
    normalized = value.strip().lower() if value is not None else "medium"
    return normalized if normalized in _SEVERITIES else "medium"


def resolve_line_number(chunk: DiffChunk, side: str, requested: Optional[int]) -> Optional[int]:
    """Snap a model-reported line onto a line the chunk actually touches.

    Returns the requested line if it is on the given side, otherwise the
    nearest one by absolute distance (the smaller line wins ties). Returns
    None if the chunk has no lines on that side.
    """
    lines = chunk.deletion_lines if side == SIDE_DELETIONS else chunk.addition_lines
    if not lines:
        return None

    candidate = max(requested if requested is not None else lines[0], 1)
    if candidate in lines:
        return candidate
    # lines is ascending and min() keeps the first minimum, so ties go to the smaller line.
    return min(lines, key=lambda line: abs(candidate - line))


# ---------------------------------------------------------------------------
# Workspace context
# ---------------------------------------------------------------------------


def merge_line_windows(line_numbers, max_line: int) -> list[tuple[int, int]]:
    """Build ±10 line windows around each line, merging near neighbours.

    Windows closer than two lines apart are merged; at most
    MAX_CONTEXT_WINDOWS windows are produced.
    """
    windows: list[list[int]] = []
    upper = max(max_line, 1)
    for line in sorted({n for n in line_numbers if n > 0}):
        start = max(line - CONTEXT_RADIUS, 1)
        end = min(line + CONTEXT_RADIUS, upper)
        if windows and start <= windows[-1][1] + CONTEXT_MERGE_GAP:
            windows[-1][1] = max(windows[-1][1], end)
            continue
        windows.append([start, end])
        if len(windows) >= MAX_CONTEXT_WINDOWS:
            break
    return [(start, end) for start, end in windows]


def _existing_file(path: Path) -> bool:
    try:
        return path.is_file()
    except OSError as e:
        logger.debug("Cannot stat %s: %s", path, e)
        return False


def format_workspace_file_context(workspace: str, chunk: DiffChunk) -> Optional[str]:
    """Render numbered excerpts of the file on disk around the chunk's added lines.

    Falls back to the rename source when the new path is missing. Returns
    None when neither file exists or it is empty or unreadable.
    """
    root = Path(workspace)
    source = chunk.file_path
    path = root / chunk.file_path
    if not _existing_file(path):
        if not chunk.previous_path:
            return None
        source = chunk.previous_path
        path = root / chunk.previous_path
        if not _existing_file(path):
            return None

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("Skipping workspace context for %s: %s", source, e)
        return None

    lines = content.splitlines()
    if not lines:
        return None

    targets = chunk.addition_lines or (1,)
    windows = merge_line_windows(targets, len(lines))
    if not windows:
        return None

    sections: list[str] = []
    for start, end in windows:
        sections.append(f"Lines {start}-{end}:")
        for number in range(start, end + 1):
            if number - 1 < len(lines):
                sections.append(f"{number:>5} | {lines[number - 1]}")
        sections.append("")

    rendered = f"Current workspace snapshot for {source}\n" + "\n".join(sections)
    text, truncated = truncate_chars(rendered, MAX_CONTEXT_CHARS)
    return f"{text}\n[...truncated...]" if truncated else text
