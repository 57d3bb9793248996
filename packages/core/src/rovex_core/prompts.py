"""Prompt text for the provider calls a run or a follow-up question makes.

The description call gets the whole (possibly truncated) diff and asks for
a high-level narrative. Each chunk call gets one file's patch, the line
numbers findings may point at, and optional on-disk context, and must
answer with strict JSON (see rovex_core.payload). A follow-up call gets
the thread's recent history and the user's question.
"""

from __future__ import annotations

from typing import Optional

from rovex_core.diff_chunks import DiffChunk

DEFAULT_REVIEWER_GOAL = "Review the changed files and report real bugs with actionable fixes."

NARRATIVE_SYSTEM_PROMPT = (
    "You are a senior code reviewer. Review the diff and provide concise, high-signal findings. "
    "Prioritize functional bugs, regressions, security risks, and missing tests. "
    "Use markdown with sections: Summary, Findings, Suggested Tests. If no issues, say that clearly."
)

STRUCTURED_SYSTEM_PROMPT = (
    "You are a senior code reviewer focused on bug detection for a single diff chunk. "
    "Inspect context carefully, avoid style nits, and return strict JSON only."
)


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def _line_list(lines) -> str:
    return ", ".join(str(n) for n in lines) if lines else "none"


def build_description_prompt(
    reviewer_goal: str,
    workspace: str,
    base_ref: str,
    merge_base: str,
    head: str,
    diff_for_review: str,
    diff_truncated: bool,
) -> str:
    return f"""Write a high-level code review description for this change set.

Focus: {reviewer_goal}
Workspace: {workspace}
Base ref: {base_ref}
Merge base: {merge_base}
Head: {head}
Diff content truncated: {_yes_no(diff_truncated)}

Return markdown with sections:
1) Overview
2) Important files
3) Top risks
4) Recommended next checks

Rules:
- Keep this as a concise high-level narrative, not a per-file issue list.
- Mention only the most important files and changes.
- Avoid style nits.

Unified diff:
```diff
{diff_for_review}
```"""


def build_chunk_prompt(
    reviewer_goal: str,
    workspace: str,
    base_ref: str,
    merge_base: str,
    head: str,
    chunk: DiffChunk,
    patch_for_review: str,
    patch_truncated: bool,
    workspace_context: Optional[str] = None,
) -> str:
    context_block = f"\nWorkspace file context:\n```\n{workspace_context}\n```\n" if workspace_context else ""
    return f"""Review this changed file for bugs.

Focus: {reviewer_goal}
Workspace: {workspace}
Base ref: {base_ref}
Merge base: {merge_base}
Head: {head}
File path: {chunk.file_path}
File index: {chunk.chunk_index}
Allowed addition line numbers: {_line_list(chunk.addition_lines)}
Allowed deletion line numbers: {_line_list(chunk.deletion_lines)}
Diff content truncated: {_yes_no(patch_truncated)}

Return STRICT JSON only with this schema:
{{
  "summary": "short summary of what changed in this file",
  "findings": [
    {{
      "title": "bug title",
      "body": "why this is a real bug and how to fix or test it",
      "severity": "critical|high|medium|low",
      "confidence": 0.0,
      "side": "additions|deletions",
      "lineNumber": 123
    }}
  ]
}}

Rules:
- If there is no clear bug, return an empty findings array.
- Do not include style nits.
- Do not return markdown.

File diff:
```diff
{patch_for_review}
```{context_block}"""


def build_request_message(prompt: Optional[str]) -> str:
    """The user message recorded in the thread when a review starts."""
    if prompt and prompt.strip():
        return f"AI review request. Focus: {prompt.strip()}"
    return "AI review request for current diff."


def build_follow_up_prompt(thread_title: str, workspace: str, question: str, history: str, history_truncated: bool) -> str:
    return f"""Continue this code review conversation.

Thread: {thread_title}
Workspace: {workspace}
Conversation history truncated: {_yes_no(history_truncated)}

Conversation history:
{history}

User follow-up question:
{question}

Answer only based on available context. If context is missing, say exactly what is missing. Keep the answer concise and actionable."""
