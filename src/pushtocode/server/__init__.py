"""pushtocode WebSocket/API server."""

from pushtocode import __version__

__all__ = ["__version__"]
