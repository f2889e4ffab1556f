"""Agent CLI authentication state and the interactive login flow.

AuthFlowState is the single process-wide record of whether the agent CLI is
logged in. LoginFlow drives ``<agent> login`` under a PTY: it acknowledges
harmless onboarding prompts, captures the OAuth URL, and relays the code the
user pastes back.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal
from urllib.parse import unquote

from pushtocode.server.services.errors import ProcessSpawnError
from pushtocode.server.services.output_classifier import strip_ansi_and_control
from pushtocode.server.services.pty_stream import ProcessHandle
from pushtocode.util.process_registry import ProcessRegistry

logger = logging.getLogger(__name__)

_AUTH_URL_PATTERNS = [
    re.compile(r"https://console\.anthropic\.com\S*", re.IGNORECASE),
    re.compile(r"https://\S+(?:login|auth|oauth|code|device)\S*", re.IGNORECASE),
    re.compile(r"(?:visit|open|go to|navigate to)[:\s]+(\S+)", re.IGNORECASE),
    re.compile(r"https://\S*anthropic\.com\S*", re.IGNORECASE),
    re.compile(r"https://\S*claude\.ai\S*", re.IGNORECASE),
]
_URL_TRAILING_RE = re.compile(r"[.,;:!?)\"'\]]+$")
_URL_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")

# Prompts that only pick a theme or confirm a welcome screen
ONBOARDING_PROMPT_MARKERS = (
    "Dark mode",
    "Light mode",
    "Choose the text style",
    "Let's get started",
    "Ready to code here",
    "Yes, continue",
)
ONBOARDING_PROMPT_RE = re.compile(r"[❯>]\s*\d+\.\s*(Yes|Dark|Light)", re.IGNORECASE)

# Prompts that ask for secret input and must never be auto-acknowledged
AUTH_CODE_PROMPT_MARKERS = (
    "Paste your",
    "Enter the code",
    "authorization code",
    "paste the code",
    "console.anthropic.com",
)

AUTH_SUCCESS_MARKERS = (
    "Successfully authenticated",
    "Authentication successful",
    "Logged in as",
)
ALREADY_AUTHENTICATED_MARKER = "Welcome back"
AUTH_FAILURE_MARKERS = ("OAuth error", "Invalid code", "expired")

AUTO_ACK_DELAY = 0.5
AUTO_ACK_MIN_INTERVAL = 1.0


def extract_auth_url(content: str) -> str | None:
    """Find an OAuth/login URL in agent output, or None."""
    clean = strip_ansi_and_control(content)
    for pattern in _AUTH_URL_PATTERNS:
        match = pattern.search(clean)
        if not match:
            continue
        url = match.group(1) if match.groups() else match.group(0)
        url = _URL_CONTROL_RE.sub("", _URL_TRAILING_RE.sub("", url))
        if url.startswith("https://"):
            try:
                return unquote(url)
            except (TypeError, ValueError):
                return url
    return None


def is_onboarding_prompt(text: str) -> bool:
    return any(marker in text for marker in ONBOARDING_PROMPT_MARKERS) or bool(
        ONBOARDING_PROMPT_RE.search(text)
    )


def is_auth_code_prompt(text: str) -> bool:
    return any(marker in text for marker in AUTH_CODE_PROMPT_MARKERS)


def should_auto_acknowledge(text: str) -> bool:
    """True for theme/welcome prompts that are safe to accept with Enter."""
    return is_onboarding_prompt(text) and not is_auth_code_prompt(text)


def has_success_marker(text: str) -> bool:
    return any(marker in text for marker in AUTH_SUCCESS_MARKERS)


def has_failure_marker(text: str) -> bool:
    return any(marker in text for marker in AUTH_FAILURE_MARKERS)


@dataclass
class AuthFlowState:
    """Process-wide agent authentication status.

    ``is_authenticated`` is optimistic: any successful one-shot run or login
    success marker sets it.
    """

    pending_login_url: str | None = None
    is_authenticated: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def require_login(self, url: str) -> bool:
        """Record a login URL. Returns True if it was not already pending."""
        with self._lock:
            changed = self.pending_login_url != url
            self.pending_login_url = url
            self.is_authenticated = False
        if changed:
            logger.warning("Agent CLI requires authentication: %s", url)
        return changed

    def mark_authenticated(self) -> bool:
        """Clear any pending login. Returns True if this changed the state."""
        with self._lock:
            changed = not self.is_authenticated or self.pending_login_url is not None
            self.is_authenticated = True
            self.pending_login_url = None
        if changed:
            logger.info("Agent CLI authenticated")
        return changed

    def pending_url(self) -> str | None:
        with self._lock:
            return self.pending_login_url


LoginEventKind = Literal["auth_success", "auth_failed"]
LoginListener = Callable[[LoginEventKind, str], None]


@dataclass
class LoginResult:
    url: str | None = None
    already_authenticated: bool = False


class LoginFlow:
    """Runs ``<agent> login`` in a PTY. At most one login process exists at a time."""

    def __init__(
        self,
        auth: AuthFlowState,
        argv: list[str],
        cwd: Path,
        *,
        url_timeout: float = 60.0,
        cols: int = 120,
        rows: int = 30,
        registry: ProcessRegistry | None = None,
        listener: LoginListener | None = None,
    ):
        self.auth = auth
        self.argv = list(argv)
        self.cwd = cwd
        self.url_timeout = url_timeout
        self.cols = cols
        self.rows = rows
        self.registry = registry
        self.listener = listener

        self._lock = threading.Lock()
        self._handle: ProcessHandle | None = None

    @property
    def active(self) -> bool:
        with self._lock:
            return self._handle is not None and self._handle.is_alive

    def trigger(self) -> LoginResult:
        """Start a login attempt and block until a URL is found.

        Kills any previous login process first. Returns an empty result when
        no URL appears within ``url_timeout`` or the process exits first.

        Raises:
            ProcessSpawnError: the agent CLI could not be started
        """
        attempt = _LoginAttempt()
        handle = ProcessHandle(
            self.argv + ["login"],
            self.cwd,
            {"TERM": "xterm-256color", "FORCE_COLOR": "1"},
            use_pty=True,
            cols=self.cols,
            rows=self.rows,
            on_output=lambda h, data: self._on_output(h, attempt, data),
            on_exit=lambda h, code: self._on_exit(h, attempt, code),
            registry=self.registry,
            description="agent login",
        )

        with self._lock:
            previous = self._handle
            self._handle = handle
        if previous is not None:
            logger.info("Killing existing login process (pid %s)", previous.pid)
            previous.detached = True
            previous.kill()

        logger.info("Triggering agent login flow")
        try:
            handle.start()
        except ProcessSpawnError:
            self._discard(handle)
            raise

        if not attempt.resolved.wait(self.url_timeout):
            logger.warning(
                "No auth URL found within %.0fs. Output: %.500s",
                self.url_timeout,
                attempt.output_text(),
            )
            attempt.killed_by_timeout = True
            self._discard(handle)
            handle.kill()
            return LoginResult()

        return LoginResult(url=attempt.url, already_authenticated=attempt.already_authenticated)

    def submit_code(self, code: str) -> bool:
        """Write the pasted authorization code to the login process."""
        with self._lock:
            handle = self._handle
        if handle is None or not handle.is_alive:
            logger.error("No active login process to submit code to")
            return False
        logger.info("Submitting auth code: %s...", code.strip()[:6])
        return handle.write((code.strip() + "\n").encode("utf-8"))

    def cancel(self) -> None:
        with self._lock:
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.detached = True
            handle.kill()

    def _discard(self, handle: ProcessHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None

    def _is_current(self, handle: ProcessHandle) -> bool:
        with self._lock:
            return self._handle is handle and not handle.detached

    def _emit(self, kind: LoginEventKind, detail: str = "") -> None:
        if self.listener is None:
            return
        try:
            self.listener(kind, detail)
        except Exception:
            logger.exception("Login listener failed")

    def _on_output(self, handle: ProcessHandle, attempt: "_LoginAttempt", data: bytes) -> None:
        if not self._is_current(handle):
            return
        raw = data.decode("utf-8", errors="replace")
        text = strip_ansi_and_control(raw)
        attempt.append(text)

        if not attempt.success_emitted and ALREADY_AUTHENTICATED_MARKER in text:
            logger.info("Agent CLI already authenticated")
            attempt.success_emitted = True
            attempt.already_authenticated = True
            self.auth.mark_authenticated()
            self._emit("auth_success")
            attempt.resolved.set()
            timer = threading.Timer(0.1, self._finish_handle, args=(handle,))
            timer.daemon = True
            timer.start()
            return

        if is_auth_code_prompt(text):
            attempt.ready_for_code = True
        elif should_auto_acknowledge(text) and not attempt.ready_for_code:
            now = time.monotonic()
            if now - attempt.last_enter_press > AUTO_ACK_MIN_INTERVAL:
                attempt.last_enter_press = now
                timer = threading.Timer(AUTO_ACK_DELAY, self._press_enter, args=(handle,))
                timer.daemon = True
                timer.start()

        url = extract_auth_url(raw)
        if url and attempt.url is None:
            attempt.url = url
            attempt.ready_for_code = True
            self.auth.require_login(url)
            attempt.resolved.set()

        if not attempt.success_emitted and has_success_marker(text):
            attempt.success_emitted = True
            self.auth.mark_authenticated()
            self._emit("auth_success")

        if has_failure_marker(text):
            logger.warning("Auth error detected: %.100s", text)
            attempt.failed = True
            self._emit("auth_failed", text.strip())

    def _press_enter(self, handle: ProcessHandle) -> None:
        if self._is_current(handle):
            logger.info("Auto-acknowledging onboarding prompt")
            handle.write(b"\r")

    def _finish_handle(self, handle: ProcessHandle) -> None:
        if self._is_current(handle):
            self._discard(handle)
            handle.kill()

    def _on_exit(self, handle: ProcessHandle, attempt: "_LoginAttempt", code: int) -> None:
        self._discard(handle)
        if handle.detached or attempt.killed_by_timeout or attempt.already_authenticated:
            attempt.resolved.set()
            return
        if code == 0 and not attempt.success_emitted and not attempt.failed and attempt.url:
            attempt.success_emitted = True
            self.auth.mark_authenticated()
            self._emit("auth_success")
        elif code != 0 and not attempt.failed:
            self._emit("auth_failed", f"Process exited with code {code}")
        if attempt.url is None:
            logger.warning("Login exited without an auth URL. Output: %.500s", attempt.output_text())
        attempt.resolved.set()


@dataclass
class _LoginAttempt:
    url: str | None = None
    ready_for_code: bool = False
    success_emitted: bool = False
    failed: bool = False
    already_authenticated: bool = False
    killed_by_timeout: bool = False
    last_enter_press: float = 0.0
    resolved: threading.Event = field(default_factory=threading.Event)
    _output: list[str] = field(default_factory=list)

    def append(self, text: str) -> None:
        self._output.append(text)

    def output_text(self) -> str:
        return "".join(self._output)
