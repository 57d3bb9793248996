import enum
import logging
import os
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_REVIEW_MODEL = "gpt-4.1-mini"

DEFAULT_CONFIG: dict = {
    "provider": "openai",
    "model": DEFAULT_REVIEW_MODEL,
    "base_url": "https://api.openai.com/v1",
    "timeout_ms": 120000,
    "max_diff_chars": 120000,
    "max_parallel_chunks": 4,
    "max_parallel_runs": 8,
    "max_progress_events": 200,
    "follow_up_history_chars": 40000,
    "opencode_command": "opencode",
    "opencode_provider": "openai",
    "opencode_model": None,  # None = derive from provider + model
    "opencode_agent": "plan",
    "opencode_hostname": "127.0.0.1",
    "opencode_port": 4096,
    "opencode_server_timeout_ms": 5000,
    "app_server_command": "codex",
    "guidelines": None,  # None = use built-in default; set to a path string to override
    "store": "sqlite",
    "store_path": ".rovex.db",
}

# (config key, env var, minimum) for integer settings.
_ENV_INTS = (
    ("timeout_ms", "ROVEX_REVIEW_TIMEOUT_MS", 1000),
    ("max_diff_chars", "ROVEX_REVIEW_MAX_DIFF_CHARS", 1000),
    ("max_parallel_chunks", "ROVEX_MAX_PARALLEL_CHUNKS", 1),
    ("max_parallel_runs", "ROVEX_MAX_PARALLEL_RUNS", 1),
    ("follow_up_history_chars", "ROVEX_FOLLOW_UP_HISTORY_CHARS", 1000),
    ("opencode_port", "ROVEX_OPENCODE_PORT", 1),
    ("opencode_server_timeout_ms", "ROVEX_OPENCODE_SERVER_TIMEOUT_MS", 500),
)

_ENV_STRINGS = (
    ("provider", "ROVEX_REVIEW_PROVIDER"),
    ("model", "ROVEX_REVIEW_MODEL"),
    ("base_url", "ROVEX_REVIEW_BASE_URL"),
    ("opencode_provider", "ROVEX_OPENCODE_PROVIDER"),
    ("opencode_model", "ROVEX_OPENCODE_MODEL"),
    ("opencode_agent", "ROVEX_OPENCODE_AGENT"),
    ("opencode_hostname", "ROVEX_OPENCODE_HOSTNAME"),
    ("app_server_command", "ROVEX_APP_SERVER_COMMAND"),
)

BUILTIN_GUIDELINES_DIR = Path(__file__).parent / "guidelines"
_BUILTIN_DEFAULT = BUILTIN_GUIDELINES_DIR / "default.md"


class ReviewProvider(str, enum.Enum):
    OPENAI = "openai"
    OPENCODE = "opencode"
    APP_SERVER = "app-server"


_PROVIDER_ALIASES = {
    "openai": ReviewProvider.OPENAI,
    "opencode": ReviewProvider.OPENCODE,
    "app-server": ReviewProvider.APP_SERVER,
    "app_server": ReviewProvider.APP_SERVER,
    "codex": ReviewProvider.APP_SERVER,
}


def resolve_provider(value: Optional[str]) -> ReviewProvider:
    """Map a configured provider string (case-insensitive, aliases allowed) to the enum."""
    key = (value or DEFAULT_CONFIG["provider"]).strip().lower()
    try:
        return _PROVIDER_ALIASES[key]
    except KeyError:
        raise ValueError(
            f"Unsupported review provider '{value}'. Use one of: openai, opencode, app-server."
        ) from None


def env_int(name: str, fallback: int, minimum: int) -> int:
    """Read a positive integer from the environment, ignoring unusable values."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return fallback
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer.", name, raw)
        return fallback
    if value < minimum:
        logger.warning("Ignoring %s=%d: must be at least %d.", name, value, minimum)
        return fallback
    return value


def load_config(config_path: str = ".rovex.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .rovex.yml in the current directory
      3. ROVEX_* environment variables
      4. CLI argument overrides
    """
    config = dict(DEFAULT_CONFIG)

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        config.update(file_config)

    for key, env_name in _ENV_STRINGS:
        value = os.environ.get(env_name)
        if value and value.strip():
            config[key] = value.strip()

    for key, env_name, minimum in _ENV_INTS:
        config[key] = env_int(env_name, int(config[key]), minimum)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Resolve credentials from environment variables
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")
    config["github_token"] = os.environ.get("GITHUB_TOKEN")

    return config


def load_guidelines(config: dict) -> str:
    """
    Load the reviewer goal text.

    If ``guidelines`` is set in config, loads from that path (relative to cwd).
    Otherwise falls back to the built-in default.
    """
    custom_path = config.get("guidelines")
    if custom_path:
        p = Path(custom_path)
        if not p.exists():
            raise FileNotFoundError(f"Guidelines file not found: {custom_path}")
        return p.read_text()

    if _BUILTIN_DEFAULT.exists():
        return _BUILTIN_DEFAULT.read_text()

    raise FileNotFoundError("No guidelines configured and built-in default is missing.")
