"""Server configuration for pushtocode.

Settings are layered: built-in defaults, then an optional JSON config file,
then ``PUSHTOCODE_<FIELD>`` environment variables.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)

ENV_PREFIX = "PUSHTOCODE_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _default_tmp(name: str) -> Path:
    return Path(tempfile.gettempdir()) / name


@dataclass
class Settings:
    """Runtime settings for the session server."""

    api_key: str | None = None
    agent_command: str = "claude"
    default_workdir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))

    # Terminal geometry used for every new interactive PTY
    terminal_cols: int = 120
    terminal_rows: int = 30
    scrollback_lines: int = 1000

    # Timing
    snapshot_throttle_ms: int = 50
    stop_grace_seconds: float = 5.0
    login_url_timeout: float = 60.0
    heartbeat_interval: float = 30.0
    init_debounce_seconds: float = 10.0

    # Session lifecycle
    destroy_sessions_on_disconnect: bool = False
    session_idle_timeout: float = 24 * 60 * 60
    idle_sweep_interval: float = 60.0
    session_store_path: Path = field(
        default_factory=lambda: Path.home() / ".pushtocode" / "sessions.json"
    )
    session_ttl_days: int = 7

    # Uploads
    upload_dir: Path = field(default_factory=lambda: _default_tmp("pushtocode-uploads"))
    max_upload_bytes: int = 25 * 1024 * 1024

    check_auth_on_startup: bool = True
    pidfile: Path = field(default_factory=lambda: _default_tmp("pushtocode_processes.pid"))
    log_level: str = "INFO"

    @property
    def agent_argv(self) -> list[str]:
        """The agent command split into argv form."""
        return shlex.split(self.agent_command)

    def resolve_workdir(self, project_path: str | None) -> Path:
        """Return ``project_path`` if it is an existing directory, else the default workdir."""
        if project_path:
            candidate = Path(project_path).expanduser()
            try:
                if candidate.is_dir():
                    return candidate.resolve()
            except OSError as exc:
                logger.warning("Error checking path %s: %s", project_path, exc)
            logger.info("Project path %s doesn't exist, using %s", project_path, self.default_workdir)
        return Path(self.default_workdir)


def _coerce(value: Any, default: Any, name: str) -> Any:
    """Convert a raw config/env value to the type of the field default."""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise ValueError(f"{name}: expected a boolean, got {value!r}")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, Path):
        return Path(str(value)).expanduser()
    if value is None:
        return None
    return str(value)


def _config_file_path(environ: Mapping[str, str]) -> Path:
    env_config = environ.get(f"{ENV_PREFIX}CONFIG")
    if env_config:
        return Path(env_config).expanduser()
    return Path.home() / ".pushtocode.json"


def _load_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: top level must be an object", path)
        return {}
    return data


def load_settings(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from defaults, the JSON config file and the environment.

    Args:
        config_path: Explicit config file (defaults to $PUSHTOCODE_CONFIG or ~/.pushtocode.json)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Populated Settings instance
    """
    env = os.environ if environ is None else environ
    settings = Settings()
    file_values = _load_config_file(config_path or _config_file_path(env))

    for f in fields(Settings):
        default = getattr(settings, f.name)
        raw: Any = file_values.get(f.name)
        env_value = env.get(f"{ENV_PREFIX}{f.name.upper()}")
        if env_value is not None:
            raw = env_value
        if raw is None:
            continue
        try:
            setattr(settings, f.name, _coerce(raw, default, f.name))
        except (TypeError, ValueError) as exc:
            logger.warning("Invalid value for %s (%r), keeping default: %s", f.name, raw, exc)

    return settings
