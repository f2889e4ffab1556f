"""API routes."""

from . import auth, health, sessions, ws

__all__ = ["auth", "health", "sessions", "ws"]
