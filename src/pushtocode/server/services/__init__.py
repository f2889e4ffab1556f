"""Services layer for the pushtocode server."""

from pushtocode.server.services.session_manager import InitGuard, Session, SessionRegistry
from pushtocode.server.services.session_store import SessionMetadataStore
from pushtocode.server.services.supervisor import SessionSupervisor
from pushtocode.server.services.terminal_buffer import TerminalBufferService
from pushtocode.server.state import get_settings
from pushtocode.util.process_registry import ProcessRegistry

_supervisor: SessionSupervisor | None = None
_init_guard: InitGuard | None = None


def get_supervisor() -> SessionSupervisor:
    """Get the global session supervisor, building it from the current settings.

    Returns:
        The global SessionSupervisor
    """
    global _supervisor
    if _supervisor is None:
        settings = get_settings()
        _supervisor = SessionSupervisor(
            settings,
            store=SessionMetadataStore(settings.session_store_path, settings.session_ttl_days),
            process_registry=ProcessRegistry(pidfile=settings.pidfile),
        )
    return _supervisor


def get_init_guard() -> InitGuard:
    """Get the global in-flight initialization guard."""
    global _init_guard
    if _init_guard is None:
        _init_guard = InitGuard(timeout=get_settings().init_debounce_seconds)
    return _init_guard


def reset_services() -> None:
    """Shut down and forget the global services (for testing)."""
    global _supervisor, _init_guard
    if _supervisor is not None:
        _supervisor.shutdown()
    _supervisor = None
    _init_guard = None


__all__ = [
    "InitGuard",
    "Session",
    "SessionRegistry",
    "SessionSupervisor",
    "TerminalBufferService",
    "get_supervisor",
    "get_init_guard",
    "reset_services",
]
