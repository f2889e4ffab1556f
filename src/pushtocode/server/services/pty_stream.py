"""Child process handles for the agent CLI.

A ProcessHandle owns one OS process, started either under a pseudo-terminal
(interactive sessions and the login flow) or with plain pipes (one-shot
stream-json runs). A daemon reader thread forwards output to callbacks and
reports the exit code once the process is gone.
"""

from __future__ import annotations

import fcntl
import itertools
import logging
import os
import select
import signal
import struct
import subprocess
import termios
import threading
import time
from pathlib import Path
from typing import Callable

from pushtocode.server.services.errors import ProcessSpawnError
from pushtocode.util.process_registry import ProcessRegistry

try:
    import pty
except ImportError:
    pty = None

logger = logging.getLogger(__name__)

CPR_REQUEST = b"\x1b[6n"
CPR_RESPONSE = b"\x1b[1;1R\r"
READ_SIZE = 4096

OutputCallback = Callable[["ProcessHandle", bytes], None]
ExitCallback = Callable[["ProcessHandle", int], None]

_handle_ids = itertools.count(1)


def set_winsize(fd: int, rows: int, cols: int) -> None:
    """Set terminal window size."""
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


class ProcessHandle:
    """One spawned agent process and its reader thread.

    Callbacks run on the reader thread. ``on_exit`` is called exactly once,
    after all output has been delivered.
    """

    def __init__(
        self,
        argv: list[str],
        cwd: Path,
        env: dict[str, str] | None = None,
        *,
        use_pty: bool = True,
        cols: int = 120,
        rows: int = 30,
        on_output: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
        registry: ProcessRegistry | None = None,
        description: str = "",
        first_output_timeout: float | None = None,
    ):
        self.id = next(_handle_ids)
        self.argv = list(argv)
        self.cwd = Path(cwd)
        self.env = env or {}
        self.use_pty = use_pty
        self.cols = cols
        self.rows = rows
        self.description = description or " ".join(self.argv[:2])

        self._on_output = on_output
        self._on_stderr = on_stderr
        self._on_exit = on_exit
        self._registry = registry
        self._first_output_timeout = first_output_timeout

        self._proc: subprocess.Popen | None = None
        self._master_fd: int | None = None
        self._reader: threading.Thread | None = None
        self._watchdog: threading.Timer | None = None
        self._force_kill_timer: threading.Timer | None = None
        self._write_lock = threading.Lock()
        self._exited = threading.Event()

        self.exit_code: int | None = None
        self.started_at: float | None = None
        # Set by the owner when this handle's events must no longer be published
        self.detached = False
        # Set by a graceful stop; the eventual exit is not reported again
        self.stop_requested = False

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def is_alive(self) -> bool:
        return self._proc is not None and not self._exited.is_set() and self._proc.poll() is None

    def start(self) -> "ProcessHandle":
        """Spawn the process and its reader thread.

        Raises:
            ProcessSpawnError: the executable could not be started
        """
        full_env = os.environ.copy()
        full_env.update(self.env)
        full_env["LINES"] = str(self.rows)
        full_env["COLUMNS"] = str(self.cols)

        try:
            if self.use_pty:
                self._spawn_pty(full_env)
            else:
                self._spawn_pipes(full_env)
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            raise ProcessSpawnError(f"Failed to start {self.argv[0]}: {exc}") from exc

        self.started_at = time.time()
        logger.info(
            "Spawned %s (pid %s, %s) in %s: %s",
            self.description,
            self.pid,
            "pty" if self.use_pty else "pipes",
            self.cwd,
            self.argv,
        )
        if self._registry is not None:
            self._registry.register(self._proc.pid, self.description)

        if self._first_output_timeout:
            self._watchdog = threading.Timer(self._first_output_timeout, self._warn_no_output)
            self._watchdog.daemon = True
            self._watchdog.start()

        self._reader = threading.Thread(
            target=self._read_pty_loop if self.use_pty else self._read_pipes_loop,
            name=f"agent-reader-{self.id}",
            daemon=True,
        )
        self._reader.start()
        return self

    def _spawn_pty(self, env: dict[str, str]) -> None:
        if pty is None:
            raise ProcessSpawnError("PTY not available on this platform")

        # pty.openpty + Popen instead of pty.fork, which can deadlock in threaded servers
        master_fd, slave_fd = pty.openpty()
        set_winsize(master_fd, self.rows, self.cols)

        def setup_child():
            os.setsid()
            fcntl.ioctl(slave_fd, termios.TIOCSCTTY, 0)

        try:
            self._proc = subprocess.Popen(
                self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(self.cwd),
                env=env,
                preexec_fn=setup_child,
                close_fds=True,
                pass_fds=(slave_fd,),
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)
        self._master_fd = master_fd

    def _spawn_pipes(self, env: dict[str, str]) -> None:
        self._proc = subprocess.Popen(
            self.argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(self.cwd),
            env=env,
            start_new_session=True,
        )
        # One-shot runs take their prompt from argv
        self._proc.stdin.close()

    def _read_pty_loop(self) -> None:
        fd = self._master_fd
        while True:
            try:
                rlist, _, _ = select.select([fd], [], [], 0.1)
            except (ValueError, OSError):
                break
            if fd not in rlist:
                if self._proc.poll() is not None and not self._drain_ready(fd):
                    break
                continue
            try:
                data = os.read(fd, READ_SIZE)
            except BlockingIOError:
                continue
            except OSError:
                # EIO once the slave side is closed
                break
            if not data:
                break
            data = self._answer_cpr(data)
            if data:
                self._deliver(self._on_output, data)

        self._finish()

    @staticmethod
    def _drain_ready(fd: int) -> bool:
        try:
            rlist, _, _ = select.select([fd], [], [], 0)
        except (ValueError, OSError):
            return False
        return bool(rlist)

    def _read_pipes_loop(self) -> None:
        streams = {
            self._proc.stdout.fileno(): self._on_output,
            self._proc.stderr.fileno(): self._on_stderr,
        }
        while streams:
            try:
                rlist, _, _ = select.select(list(streams), [], [], 0.1)
            except (ValueError, OSError):
                break
            for fd in rlist:
                try:
                    data = os.read(fd, READ_SIZE)
                except OSError:
                    data = b""
                if not data:
                    streams.pop(fd, None)
                    continue
                self._deliver(streams[fd], data)

        self._finish()

    def _deliver(self, callback: OutputCallback | None, data: bytes) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        if callback is None:
            return
        try:
            callback(self, data)
        except Exception:
            logger.exception("Output callback failed for %s (pid %s)", self.description, self.pid)

    def _finish(self) -> None:
        self.exit_code = self._proc.wait()
        if self._watchdog is not None:
            self._watchdog.cancel()
        if self._force_kill_timer is not None:
            self._force_kill_timer.cancel()
        self._close_fds()
        self._exited.set()
        if self._registry is not None:
            self._registry.unregister(self._proc.pid)

        logger.info("%s (pid %s) exited with code %s", self.description, self.pid, self.exit_code)
        if self._on_exit is not None:
            try:
                self._on_exit(self, self.exit_code)
            except Exception:
                logger.exception("Exit callback failed for %s (pid %s)", self.description, self.pid)

    def _close_fds(self) -> None:
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None
        for stream in (self._proc.stdout, self._proc.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass

    def _answer_cpr(self, data: bytes) -> bytes:
        """Answer cursor position requests (CSI 6n) and strip them from the stream.

        TUI libraries query the cursor position at startup and hang without
        a reply, and there is no real terminal here to give one.
        """
        if CPR_REQUEST not in data:
            return data
        try:
            # Trailing CR so cooked mode delivers the reply immediately
            os.write(self._master_fd, CPR_RESPONSE)
        except OSError:
            pass
        return data.replace(CPR_REQUEST, b"")

    def _warn_no_output(self) -> None:
        logger.warning(
            "%s (pid %s) produced no output for %.0fs",
            self.description,
            self.pid,
            self._first_output_timeout,
        )

    def write(self, data: bytes) -> bool:
        """Write raw bytes to the terminal. Returns False if that is not possible."""
        if not self.use_pty or not self.is_alive or self._master_fd is None:
            return False
        with self._write_lock:
            try:
                view = memoryview(data)
                while view:
                    try:
                        written = os.write(self._master_fd, view)
                    except BlockingIOError:
                        select.select([], [self._master_fd], [], 1.0)
                        continue
                    view = view[written:]
                return True
            except OSError as exc:
                logger.warning("Write to %s (pid %s) failed: %s", self.description, self.pid, exc)
                return False

    def resize(self, cols: int, rows: int) -> bool:
        if not self.use_pty or not self.is_alive or self._master_fd is None:
            return False
        try:
            set_winsize(self._master_fd, rows, cols)
            os.killpg(self._proc.pid, signal.SIGWINCH)
        except (OSError, ProcessLookupError):
            return False
        self.cols, self.rows = cols, rows
        return True

    def _signal(self, sig: int) -> bool:
        if self._proc is None or self._exited.is_set():
            return False
        try:
            # The child is a session leader, so its pid is the process group id
            os.killpg(self._proc.pid, sig)
            return True
        except (ProcessLookupError, PermissionError):
            try:
                self._proc.send_signal(sig)
                return True
            except OSError:
                return False
        except OSError:
            return False

    def terminate(self, grace: float = 5.0) -> None:
        """SIGTERM now, SIGKILL if the process is still alive after ``grace`` seconds."""
        if not self.is_alive:
            return
        logger.info("Sending SIGTERM to %s (pid %s)", self.description, self.pid)
        self._signal(signal.SIGTERM)

        def force_kill():
            if self.is_alive:
                logger.warning("Force killing %s (pid %s) after %.1fs", self.description, self.pid, grace)
                self._signal(signal.SIGKILL)

        if self._force_kill_timer is not None:
            return
        self._force_kill_timer = threading.Timer(grace, force_kill)
        self._force_kill_timer.daemon = True
        self._force_kill_timer.start()

    def kill(self, wait: float = 1.0) -> bool:
        """SIGKILL the process group and wait briefly for it to go away.

        Returns:
            True if the process is confirmed gone
        """
        if self._proc is None:
            return True
        if self._proc.poll() is None:
            logger.info("Killing %s (pid %s)", self.description, self.pid)
            self._signal(signal.SIGKILL)
        try:
            self._proc.wait(timeout=wait)
        except subprocess.TimeoutExpired:
            logger.warning("%s (pid %s) still alive after SIGKILL", self.description, self.pid)
            return False
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Wait until the exit has been fully processed."""
        return self._exited.wait(timeout)
