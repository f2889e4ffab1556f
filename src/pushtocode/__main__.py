"""Command line entry point: ``pushtocode serve`` and ``pushtocode attach``."""

import argparse
import logging
import os
import shutil
import signal
import sys
import threading
import uuid
from pathlib import Path

from pushtocode import __version__

logger = logging.getLogger("pushtocode")

DETACH_KEY = b"\x1d"  # Ctrl-]


def run_server(host: str, port: int, config_path: Path | None) -> None:
    """Run the session server.

    Args:
        host: Host to bind to
        port: Port to run on
        config_path: Optional JSON config file
    """
    import uvicorn

    from pushtocode.server.main import create_app
    from pushtocode.server.state import set_settings
    from pushtocode.util.config import load_settings

    settings = load_settings(config_path)
    set_settings(settings)
    level = settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = create_app()
    logger.info("Starting pushtocode %s on %s:%s", __version__, host, port)
    uvicorn.run(app, host=host, port=port, log_level=level.lower())


def run_attach(url: str, api_key: str, session_id: str, project_path: str | None) -> None:
    """Mirror a session to this terminal and forward keystrokes to it.

    Ctrl-] detaches; the session keeps running on the server.
    """
    import termios
    import tty

    from pushtocode.client import ReconnectingClient, render_to_terminal

    def write(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    client = ReconnectingClient(
        url, api_key, session_id, project_path, on_screen=render_to_terminal(write)
    )
    receiver = threading.Thread(target=client.run, name="attach-receiver", daemon=True)
    receiver.start()

    def send_size(*_args) -> None:
        size = shutil.get_terminal_size()
        client.send_resize(size.columns, size.lines)

    fd = sys.stdin.fileno()
    interactive = os.isatty(fd)
    saved = termios.tcgetattr(fd) if interactive else None
    if interactive:
        signal.signal(signal.SIGWINCH, send_size)
        tty.setraw(fd)
    try:
        while receiver.is_alive():
            data = os.read(fd, 1024)
            if not data or DETACH_KEY in data:
                break
            client.send_input(data.decode("utf-8", errors="replace"))
    finally:
        if saved is not None:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        client.close()
    print(f"\r\nDetached from session {session_id}")


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(prog="pushtocode", description="Agent CLI session server")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the WebSocket session server")
    serve.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    serve.add_argument("--port", type=int, default=8000, help="Port to listen on (default: 8000)")
    serve.add_argument("--config", type=Path, default=None, help="JSON config file")

    attach = subparsers.add_parser("attach", help="Mirror a session in this terminal")
    attach.add_argument("--url", type=str, default="ws://127.0.0.1:8000/ws", help="Server WebSocket URL")
    attach.add_argument(
        "--api-key", type=str, default=os.environ.get("PUSHTOCODE_API_KEY"),
        help="Shared secret (default: $PUSHTOCODE_API_KEY)",
    )
    attach.add_argument("--session", type=str, default=None, help="Session ID (default: new session)")
    attach.add_argument("--project", type=str, default=None, help="Project path on the server")
    attach.add_argument("-v", "--verbose", action="store_true", help="Log client events to stderr")

    args = parser.parse_args()

    try:
        if args.command == "serve":
            run_server(args.host, args.port, args.config)
            return 0

        if not args.api_key:
            parser.error("attach needs --api-key or PUSHTOCODE_API_KEY")
        logging.basicConfig(level=logging.INFO if args.verbose else logging.ERROR)
        session_id = args.session or uuid.uuid4().hex
        print(f"Attaching to session {session_id} (Ctrl-] to detach)")
        run_attach(args.url, args.api_key, session_id, args.project)
        return 0
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
