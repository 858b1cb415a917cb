"""Minion settings.

Settings come from minion.toml, with secrets layered in from the process
environment (and an optional .env beside the TOML file). A Config is
validated once on construction and never reloaded.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are Minion, a personal AI assistant running on a Mac Mini. "
    "Be concise and helpful."
)


class ConfigError(Exception):
    """minion.toml is missing, unreadable or fails validation."""


# (env var, section, key, replace existing value)
_SECRET_ENV = [
    ("MINION_ANTHROPIC_KEY", "api_keys", "anthropic", True),
    ("ANTHROPIC_API_KEY", "api_keys", "anthropic", False),
]


def _lookup(tree: Any, *keys: str, default: Any = None) -> Any:
    """Walk nested tables, returning default at the first missing level."""
    node = tree
    for key in keys:
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    return node


def _expand(raw: str) -> Path:
    return Path(raw).expanduser().resolve()


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


class Config:
    """Typed, read-only view over the parsed TOML tables."""

    def __init__(self, data: dict, config_dir: Path | None = None):
        self._data = data
        self._config_dir = config_dir or Path.cwd()
        self._layer_secrets()
        self._validate()

    def _layer_secrets(self) -> None:
        for env_var, section, key, replace in _SECRET_ENV:
            value = os.environ.get(env_var)
            if not value:
                continue
            table = self._data.setdefault(section, {})
            if replace or not table.get(key):
                table[key] = value

    def _validate(self) -> None:
        """Collect every problem so one run reports them all."""
        problems: list[str] = []
        get = self.raw

        if not get("agent", "workspace"):
            problems.append("[agent] workspace is required")

        channel = get("channel", "type")
        if not channel:
            problems.append("[channel] type is required")
        elif channel == "telegram":
            telegram = self.telegram_config
            if not telegram.get("token_env"):
                problems.append("[channel.telegram] token_env is required")
            if not telegram.get("allow_from"):
                problems.append("[channel.telegram] allow_from must list at least one user id")

        primary = get("models", "primary")
        if not isinstance(primary, dict) or not primary:
            problems.append("[models.primary] section is required")
        elif not primary.get("model"):
            problems.append("[models.primary] model is required")

        for key in ("max_iterations", "api_retries"):
            value = get("behavior", key)
            if value is not None and not _positive_int(value):
                problems.append(f"[behavior] {key} must be a positive integer")

        timeout = get("jobs", "timeout_seconds")
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            problems.append("[jobs] timeout_seconds must be positive")

        if problems:
            raise ConfigError("Invalid minion config:\n" + "\n".join(f"  - {p}" for p in problems))

    # --- Agent ---

    @property
    def agent_name(self) -> str:
        return self.raw("agent", "name", default="Minion")

    @property
    def workspace(self) -> Path:
        return self._relative_path(self._data["agent"]["workspace"])

    @property
    def system_prompt_file(self) -> Path | None:
        p = self.raw("agent", "system_prompt_file", default="")
        return self._relative_path(p) if p else None

    @property
    def default_system_prompt(self) -> str:
        return self.raw("agent", "default_system_prompt",
                         default=DEFAULT_SYSTEM_PROMPT)

    @property
    def memory_file(self) -> Path:
        p = self.raw("agent", "memory_file", default="")
        return self._relative_path(p) if p else self.workspace / "MEMORY.md"

    # --- Channel ---

    @property
    def channel_type(self) -> str:
        return self._data["channel"]["type"]

    @property
    def telegram_config(self) -> dict:
        return self.raw("channel", "telegram", default={})

    @property
    def message_chunk_limit(self) -> int:
        return self.raw("channel", "chunk_limit", default=4000)

    # --- Models ---

    def model_config(self, name: str) -> dict:
        cfg = self.raw("models", name, default={})
        if not cfg:
            raise ValueError(f"No model config for '{name}'")
        return cfg

    @property
    def primary_model(self) -> str:
        return self._data["models"]["primary"]["model"]

    @property
    def deep_model(self) -> str:
        """Model used by /model opus and the think_hard tool."""
        return self.raw("models", "deep", "model", default=self.primary_model)

    # --- Vision ---

    @property
    def vision_max_image_bytes(self) -> int:
        return self.raw("vision", "max_image_bytes", default=5 * 1024 * 1024)

    @property
    def vision_max_dimension(self) -> int:
        return self.raw("vision", "max_dimension", default=1568)

    @property
    def vision_jpeg_quality_steps(self) -> list[int]:
        return self.raw("vision", "jpeg_quality_steps", default=[85, 60, 40])

    # --- Behavior ---

    @property
    def typing_indicators(self) -> bool:
        return self.raw("behavior", "typing_indicators", default=True)

    @property
    def max_iterations(self) -> int:
        return self.raw("behavior", "max_iterations", default=25)

    @property
    def api_retries(self) -> int:
        return self.raw("behavior", "api_retries", default=3)

    @property
    def api_retry_base_delay(self) -> float:
        return float(self.raw("behavior", "api_retry_base_delay", default=1.0))

    @property
    def api_rate_limit_delay(self) -> float:
        return float(self.raw("behavior", "api_rate_limit_delay", default=5.0))

    @property
    def tool_result_max_chars(self) -> int:
        return self.raw("behavior", "tool_result_max_chars", default=50_000)

    # --- History ---

    @property
    def history_ttl_minutes(self) -> int:
        return self.raw("history", "ttl_minutes", default=360)

    @property
    def history_max_messages(self) -> int:
        return self.raw("history", "max_messages", default=50)

    # --- Background jobs ---

    @property
    def job_command(self) -> list[str]:
        return list(self.raw("jobs", "command", default=[
            "claude", "--verbose", "--output-format", "stream-json", "-p",
        ]))

    @property
    def job_timeout(self) -> float:
        return float(self.raw("jobs", "timeout_seconds", default=300))

    @property
    def job_kill_grace(self) -> float:
        return float(self.raw("jobs", "kill_grace_seconds", default=5))

    @property
    def job_stdout_tail(self) -> int:
        return self.raw("jobs", "stdout_tail_bytes", default=200_000)

    @property
    def job_stderr_tail(self) -> int:
        return self.raw("jobs", "stderr_tail_bytes", default=50_000)

    @property
    def job_result_max_chars(self) -> int:
        return self.raw("jobs", "result_max_chars", default=50_000)

    @property
    def job_error_max_chars(self) -> int:
        return self.raw("jobs", "error_max_chars", default=10_000)

    @property
    def job_excerpt_max_chars(self) -> int:
        return self.raw("jobs", "excerpt_max_chars", default=200)

    @property
    def job_watchdog_interval(self) -> float:
        return float(self.raw("jobs", "watchdog_seconds", default=30))

    # --- Scheduler ---

    @property
    def scheduler_tick(self) -> float:
        return float(self.raw("scheduler", "tick_seconds", default=60))

    @property
    def scheduler_timezone(self) -> str:
        """IANA zone name for cron evaluation; empty means host local time."""
        return self.raw("scheduler", "timezone", default="")

    # --- Tools ---

    @property
    def tools_enabled(self) -> list[str]:
        return self.raw("tools", "enabled", default=[
            "bash", "read_file", "write_file", "memory_read", "memory_update",
            "claude_code", "schedule_task", "think_hard", "twitter",
        ])

    @property
    def server_tools(self) -> list[str]:
        return self.raw("tools", "server", default=["web_search", "web_fetch"])

    @property
    def server_tool_max_uses(self) -> int:
        return self.raw("tools", "server_max_uses", default=5)

    @property
    def extra_path(self) -> list[str]:
        """Directories prepended to PATH for bash and delegated jobs."""
        return self.raw("tools", "extra_path", default=[
            "~/.local/bin", "/opt/homebrew/bin", "/usr/local/bin",
        ])

    @property
    def bash_timeout(self) -> int:
        return self.raw("tools", "bash", "timeout", default=30)

    @property
    def read_max_chars(self) -> int:
        return self.raw("tools", "read_max_chars", default=100_000)

    @property
    def think_max_tokens(self) -> int:
        return self.raw("tools", "think_hard", "max_tokens", default=16_000)

    @property
    def think_budget_tokens(self) -> int:
        return self.raw("tools", "think_hard", "budget_tokens", default=10_000)

    @property
    def twitter_token(self) -> str:
        env_var = self.raw("tools", "twitter", "token_env", default="X_BEARER_TOKEN")
        return os.environ.get(env_var, "") if env_var else ""

    # --- Paths ---

    @property
    def config_dir(self) -> Path:
        """Directory containing minion.toml (for resolving relative paths)."""
        return self._config_dir

    @property
    def state_dir(self) -> Path:
        return _expand(self.raw("paths", "state_dir", default="~/.minion"))

    @property
    def db_path(self) -> Path:
        p = self.raw("paths", "db", default="")
        return self._relative_path(p) if p else self.state_dir / "minion.db"

    @property
    def log_file(self) -> Path:
        p = self.raw("paths", "log_file", default="")
        return self._relative_path(p) if p else self.state_dir / "logs" / "minion.log"

    @property
    def error_log_file(self) -> Path:
        p = self.raw("paths", "error_log_file", default="")
        return self._relative_path(p) if p else self.state_dir / "logs" / "minion-errors.log"

    @property
    def log_max_bytes(self) -> int:
        return self.raw("logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return self.raw("logging", "backup_count", default=5)

    # --- API Keys ---

    def api_key(self, provider: str) -> str:
        return self.raw("api_keys", provider, default="")

    # --- Raw access ---

    def raw(self, *keys: str, default: Any = None) -> Any:
        return _lookup(self._data, *keys, default=default)

    def _relative_path(self, p: str) -> Path:
        path = Path(p).expanduser()
        if not path.is_absolute():
            path = self._config_dir / path
        return path.resolve()


def _read_dotenv(path: Path) -> dict[str, str]:
    """Parse KEY=VALUE lines, skipping blanks, comments and malformed lines."""
    pairs: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        pairs[key.strip()] = value.strip().strip("\"'")
    return pairs


def _set_dotted(data: dict, dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    for part in parents:
        data = data.setdefault(part, {})
    data[leaf] = value


def load_config(path: str | Path, overrides: dict | None = None) -> Config:
    """Read minion.toml at path and return a validated Config.

    A .env file next to it fills in environment variables that are not
    already set. ``overrides`` maps dotted keys such as ``channel.type`` to
    values applied on top of the file before validation.
    """
    toml_path = Path(path).expanduser().resolve()
    if not toml_path.is_file():
        raise ConfigError(f"Config file not found: {toml_path}")

    dotenv = toml_path.parent / ".env"
    if dotenv.is_file():
        for key, value in _read_dotenv(dotenv).items():
            os.environ.setdefault(key, value)

    try:
        data = tomllib.loads(toml_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Cannot parse {toml_path}: {e}") from e

    for dotted, value in (overrides or {}).items():
        _set_dotted(data, dotted, value)
    log.debug("Loaded config from %s", toml_path)
    return Config(data, config_dir=toml_path.parent)
