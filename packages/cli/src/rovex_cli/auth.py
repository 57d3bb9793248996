"""GitHub credentials for pull request reviews.

Local workspace reviews never need these.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Optional

logger = logging.getLogger(__name__)

GH_TOKEN_COMMAND = ("gh", "auth", "token")
GH_TIMEOUT_SECONDS = 5


def gh_cli_token() -> Optional[str]:
    """Ask the GitHub CLI for the token of its logged-in session."""
    try:
        proc = subprocess.run(list(GH_TOKEN_COMMAND), capture_output=True, text=True, timeout=GH_TIMEOUT_SECONDS)
    except FileNotFoundError:
        logger.debug("gh is not installed")
        return None
    except subprocess.TimeoutExpired:
        logger.debug("gh auth token timed out after %ss", GH_TIMEOUT_SECONDS)
        return None
    token = proc.stdout.strip() if proc.returncode == 0 else ""
    return token or None


def resolve_github_token(config: Optional[dict] = None) -> Optional[str]:
    """Token for GitHub API calls: config, then GITHUB_TOKEN, then `gh auth token`.

    Returns None when every source is empty.
    """
    for candidate in ((config or {}).get("github_token"), os.environ.get("GITHUB_TOKEN")):
        if candidate and candidate.strip():
            return candidate.strip()
    return gh_cli_token()
