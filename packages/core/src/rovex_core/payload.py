"""Turn raw model output for one chunk into a summary and resolved findings.

Model output is not guaranteed to be well-formed, so parsing never raises.
It tries, in order:
  1. the whole text as a JSON object
  2. the slice from the first "{" to the last "}" (prose around the JSON)
  3. the first 1,200 characters of the text as the summary, no findings
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

from rovex_core.diff_chunks import DiffChunk, normalize_severity, normalize_side, resolve_line_number
from rovex_core.utils.text import non_empty, snippet
from rovex_store.models import ReviewChunk, ReviewFinding

logger = logging.getLogger(__name__)

EMPTY_OUTPUT_SUMMARY = "No output returned for this chunk."
DEFAULT_FINDING_TITLE = "Potential bug"
DEFAULT_FINDING_BODY = "Potential issue detected in this diff chunk."
SUMMARY_FALLBACK_CHARS = 1200


@dataclass
class RawFinding:
    """A finding exactly as the model reported it, before normalisation."""

    title: Optional[str] = None
    body: Optional[str] = None
    severity: Optional[str] = None
    confidence: Optional[float] = None
    side: Optional[str] = None
    line_number: Optional[int] = None
    line: Optional[int] = None  # legacy field name

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> RawFinding:
        return cls(
            title=_as_str(data.get("title")),
            body=_as_str(data.get("body")),
            severity=_as_str(data.get("severity")),
            confidence=_as_float(data.get("confidence")),
            side=_as_str(data.get("side")),
            line_number=_as_int(data.get("lineNumber", data.get("line_number"))),
            line=_as_int(data.get("line")),
        )


@dataclass
class ChunkPayload:
    summary: Optional[str]
    findings: list[RawFinding] = field(default_factory=list)


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _load_payload(text: str) -> Optional[ChunkPayload]:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return None
    if not isinstance(data, dict):
        return None
    findings = data.get("findings")
    return ChunkPayload(
        summary=_as_str(data.get("summary")),
        findings=[RawFinding.from_json(f) for f in findings if isinstance(f, dict)]
        if isinstance(findings, list)
        else [],
    )


def parse_chunk_payload(raw: str) -> ChunkPayload:
    """Parse raw model output for one chunk. Never raises."""
    trimmed = raw.strip()
    if not trimmed:
        return ChunkPayload(summary=EMPTY_OUTPUT_SUMMARY, findings=[])

    payload = _load_payload(trimmed)
    if payload is not None:
        return payload

    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start != -1 and end > start:
        payload = _load_payload(trimmed[start : end + 1])
        if payload is not None:
            return payload

    logger.warning("Chunk output was not valid JSON, keeping it as the summary: %s", trimmed[:200])
    return ChunkPayload(summary=snippet(trimmed, SUMMARY_FALLBACK_CHARS), findings=[])


def build_chunk_review(chunk: DiffChunk, raw: str) -> ReviewChunk:
    """Parse ``raw`` and pin every finding to a line the chunk actually touches.

    Findings whose line cannot be resolved on their side are dropped.
    """
    payload = parse_chunk_payload(raw)
    summary = non_empty(payload.summary)
    if summary is None:
        summary = snippet(raw, SUMMARY_FALLBACK_CHARS) if raw.strip() else EMPTY_OUTPUT_SUMMARY

    findings: list[ReviewFinding] = []
    for index, raw_finding in enumerate(payload.findings):
        side = normalize_side(raw_finding.side)
        requested = raw_finding.line_number if raw_finding.line_number is not None else raw_finding.line
        line_number = resolve_line_number(chunk, side, requested)
        if line_number is None:
            logger.debug("Dropping finding %d for %s: no %s lines", index + 1, chunk.id, side)
            continue

        confidence = raw_finding.confidence
        findings.append(
            ReviewFinding(
                id=f"{chunk.id}:{side}:{line_number}:{index + 1}",
                file_path=chunk.file_path,
                chunk_id=chunk.id,
                chunk_index=chunk.chunk_index,
                hunk_header=chunk.hunk_header,
                side=side,
                line_number=line_number,
                title=non_empty(raw_finding.title) or DEFAULT_FINDING_TITLE,
                body=non_empty(raw_finding.body) or DEFAULT_FINDING_BODY,
                severity=normalize_severity(raw_finding.severity),
                confidence=min(max(confidence, 0.0), 1.0) if confidence is not None else None,
            )
        )

    return ReviewChunk(
        id=chunk.id,
        file_path=chunk.file_path,
        chunk_index=chunk.chunk_index,
        hunk_header=chunk.hunk_header,
        summary=summary,
        findings=findings,
    )
