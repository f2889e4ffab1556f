from __future__ import annotations

import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"

# Force current worktree src to the front of sys.path so imports use this tree,
# not any installed copy.
SRC_STR = str(SRC_PATH)
sys.path = [SRC_STR] + [p for p in sys.path if p != SRC_STR]


@pytest.fixture(autouse=True)
def _isolate_config(tmp_path_factory, monkeypatch):
    """Keep config, session store and pidfile private to each test."""
    base = tmp_path_factory.mktemp("pushtocode")
    for name in list(os.environ):
        if name.startswith("PUSHTOCODE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PUSHTOCODE_CONFIG", str(base / "config.json"))
    monkeypatch.setenv("PUSHTOCODE_SESSION_STORE_PATH", str(base / "sessions.json"))
    monkeypatch.setenv("PUSHTOCODE_PIDFILE", str(base / "processes.pid"))
    monkeypatch.setenv("PUSHTOCODE_UPLOAD_DIR", str(base / "uploads"))
    monkeypatch.setenv("PUSHTOCODE_DEFAULT_WORKDIR", str(base))
    monkeypatch.setenv("PUSHTOCODE_CHECK_AUTH_ON_STARTUP", "false")
    yield


FAKE_AGENT = textwrap.dedent(
    """
    import json, os, signal, sys, time

    args = sys.argv[1:]
    if "--version" in args:
        print("fake-agent 1.0.0")
        sys.exit(0)
    if args and args[0] == "login":
        print("Browser didn't open? Use the url below to sign in:")
        print("https://claude.ai/oauth/authorize?code=true&client_id=abc")
        sys.stdout.flush()
        line = sys.stdin.readline().strip()
        if line != "good-code":
            print("Invalid code")
            sys.exit(1)
        print("Login successful")
        sys.exit(0)
    if "-p" in args:
        prompt = args[args.index("-p") + 1]
        if prompt == "ignore-term":
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            print(json.dumps({"type": "system", "session_id": "conv-slow"}), flush=True)
            time.sleep(60)
        if prompt == "needs-login":
            print(json.dumps({"type": "result", "result": "Invalid API key. Please run /login"}))
            sys.exit(1)
        resumed = " (resumed " + args[args.index("--resume") + 1] + ")" if "--resume" in args else ""
        print(json.dumps({"type": "system", "subtype": "init", "session_id": "conv-123"}))
        print(json.dumps({
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": "echo: " + prompt + resumed}]},
        }))
        print(json.dumps({"type": "result", "result": "done", "session_id": "conv-123"}))
        sys.exit(0)
    # Interactive mode: echo lines until EOF or "exit"
    sys.stdout.write("\\x1b[32mready\\x1b[0m> ")
    sys.stdout.flush()
    for line in sys.stdin:
        line = line.strip()
        if line == "exit":
            sys.exit(3)
        sys.stdout.write("you said " + line + "\\r\\n> ")
        sys.stdout.flush()
    """
)


@pytest.fixture
def fake_agent(tmp_path) -> str:
    """Command line of a small script standing in for the agent CLI."""
    script = tmp_path / "fake_agent.py"
    script.write_text(FAKE_AGENT)
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return f"{sys.executable} {script}"
