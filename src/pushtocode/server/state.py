"""Server state management."""

import time

from pushtocode.util.config import Settings, load_settings

# Track server start time for uptime calculation
_start_time: float = 0.0

_settings: Settings | None = None


def init_start_time() -> None:
    """Initialize the server start time."""
    global _start_time
    _start_time = time.time()


def get_uptime() -> float:
    """Get server uptime in seconds."""
    if _start_time == 0.0:
        return 0.0
    return time.time() - _start_time


def get_settings() -> Settings:
    """Get the global Settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Install explicit settings (CLI flags, tests)."""
    global _settings
    _settings = settings


def reset_state() -> None:
    """Reset all global state (for testing)."""
    global _start_time, _settings
    _start_time = 0.0
    _settings = None
