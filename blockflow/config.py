"""Shared Blockflow configuration utilities.

Centralises reading of ~/.blockflow/configuration.json so that the CLI,
the executor and the default provider registry share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

# ---------------------------------------------------------------------------
# Engine limits
# ---------------------------------------------------------------------------

MAX_TOOL_ITERATIONS = 10
MAX_LOOP_ITERATIONS = 1000
MAX_FOREACH_ITEMS = 1000
MAX_PARALLEL_BRANCHES = 20
DEFAULT_MAX_TOKENS = 4096
DEFAULT_MODEL = "openai/gpt-4o"

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

BLOCKFLOW_HOME = Path.home() / ".blockflow"
BLOCKFLOW_CONFIG_FILE = BLOCKFLOW_HOME / "configuration.json"


def get_blockflow_config() -> dict[str, Any]:
    """Load configuration from ~/.blockflow/configuration.json."""
    if not BLOCKFLOW_CONFIG_FILE.exists():
        return {}
    try:
        with open(BLOCKFLOW_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the preferred model string (e.g. 'openai/gpt-4o')."""
    llm = get_blockflow_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    """Return the configured max_tokens, falling back to DEFAULT_MAX_TOKENS."""
    return get_blockflow_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_blockflow_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_log_dir() -> Path:
    """Return the directory where execution records are written."""
    configured = get_blockflow_config().get("log_dir")
    if configured:
        return Path(configured).expanduser()
    return BLOCKFLOW_HOME / "executions"


def get_memory_dir() -> Path:
    """Return the directory where agent conversation memory is kept."""
    configured = get_blockflow_config().get("memory_dir")
    if configured:
        return Path(configured).expanduser()
    return BLOCKFLOW_HOME / "memory"


def _engine_setting(key: str, default: Any) -> Any:
    return get_blockflow_config().get("engine", {}).get(key, default)


# ---------------------------------------------------------------------------
# EngineConfig – shared by the executor, tool loop and CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from ~/.blockflow/configuration.json."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = 0.7
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None
    max_tool_iterations: int = field(
        default_factory=lambda: _engine_setting("max_tool_iterations", MAX_TOOL_ITERATIONS)
    )
    max_loop_iterations: int = field(
        default_factory=lambda: _engine_setting("max_loop_iterations", MAX_LOOP_ITERATIONS)
    )
    max_foreach_items: int = field(
        default_factory=lambda: _engine_setting("max_foreach_items", MAX_FOREACH_ITEMS)
    )
    max_parallel_branches: int = field(
        default_factory=lambda: _engine_setting("max_parallel_branches", MAX_PARALLEL_BRANCHES)
    )
    parallel_failure_policy: Literal["collect_all", "fail_fast"] = field(
        default_factory=lambda: _engine_setting("parallel_failure_policy", "collect_all")
    )
    log_dir: Path = field(default_factory=get_log_dir)
    memory_dir: Path = field(default_factory=get_memory_dir)
