"""Headless terminal buffers mirroring each session's PTY.

A pyte screen (extended with scrollback and the dim attribute) ingests the
raw PTY stream. Snapshots expose the plain text of every row plus an ANSI
re-encoding of the grid that a dumb remote renderer can replay to obtain the
same screen.
"""

from __future__ import annotations

import codecs
import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, NamedTuple

import pyte
from pyte import graphics, modes

from pushtocode.util.debounce import Debouncer

logger = logging.getLogger(__name__)

DEFAULT_COLS = 120
DEFAULT_ROWS = 30
DEFAULT_SCROLLBACK = 1000
SYNC_THROTTLE_MS = 50

SGR_RESET = "\x1b[0m"

# Color names as stored by pyte, mapped to their 16-color palette index
NAMED_COLORS = {
    "black": 0,
    "red": 1,
    "green": 2,
    "yellow": 3,
    "brown": 3,
    "blue": 4,
    "magenta": 5,
    "cyan": 6,
    "white": 7,
}

# pyte stores 256-color values as hex; map them back to the lowest palette index
_HEX_TO_256: dict[str, int] = {}
for _index, _hex in enumerate(graphics.FG_BG_256):
    _HEX_TO_256.setdefault(_hex.lower(), _index)


class Cell(NamedTuple):
    """A screen cell: pyte's character attributes plus ``dim``."""

    data: str
    fg: str = "default"
    bg: str = "default"
    bold: bool = False
    italics: bool = False
    underscore: bool = False
    strikethrough: bool = False
    reverse: bool = False
    blink: bool = False
    dim: bool = False


class Style(NamedTuple):
    """The subset of cell attributes that the ANSI re-encoding reproduces."""

    fg: str = "default"
    bg: str = "default"
    bold: bool = False
    dim: bool = False
    italics: bool = False
    underscore: bool = False
    reverse: bool = False
    strikethrough: bool = False


DEFAULT_STYLE = Style()
BLANK_CELL = Cell(" ")


class ScrollbackScreen(pyte.Screen):
    """pyte screen that keeps rows scrolled off the top and tracks SGR 2 (dim)."""

    def __init__(self, columns: int, lines: int, scrollback: int = DEFAULT_SCROLLBACK):
        self.scrollback: deque[dict[int, Cell]] = deque(maxlen=scrollback)
        super().__init__(columns, lines)

    @property
    def default_char(self) -> Cell:
        reverse = modes.DECSCNM in self.mode
        return Cell(data=" ", fg="default", bg="default", reverse=reverse)

    def reset(self) -> None:
        super().reset()
        self.cursor.attrs = self.default_char

    def clear_all(self) -> None:
        """Hard clear: screen, cursor, attributes and scrollback."""
        self.reset()
        self.scrollback.clear()

    def index(self) -> None:
        margins = self.margins
        top = margins.top if margins else 0
        bottom = margins.bottom if margins else self.lines - 1
        # Only full-screen scrolls feed the scrollback; scroll regions (status bars) do not
        if self.cursor.y == bottom and top == 0:
            self.scrollback.append(dict(self.buffer.get(0, {})))
        super().index()

    def erase_in_display(self, how: int = 0, *args: Any, **kwargs: Any) -> None:
        if how == 3:
            # xterm: erase saved lines only, the visible screen is untouched
            self.scrollback.clear()
            self.dirty.update(range(self.lines))
            return
        super().erase_in_display(how, *args, **kwargs)

    def select_graphic_rendition(self, *attrs: int, **kwargs: Any) -> None:
        dim = getattr(self.cursor.attrs, "dim", False)
        passthrough: list[int] = []
        params = list(attrs)
        i = 0
        while i < len(params):
            attr = params[i]
            if attr in (38, 48):
                # Extended color: 38;5;n or 38;2;r;g;b, the arguments are not attributes
                span = 3 if i + 1 < len(params) and params[i + 1] == 5 else 5
                passthrough.extend(params[i:i + span])
                i += span
                continue
            if attr == 2:
                dim = True
            else:
                if attr in (0, 22):
                    dim = False
                passthrough.append(attr)
            i += 1

        if passthrough or not attrs:
            super().select_graphic_rendition(*passthrough, **kwargs)
        if not isinstance(self.cursor.attrs, Cell):
            self.cursor.attrs = Cell(*self.cursor.attrs)
        self.cursor.attrs = self.cursor.attrs._replace(dim=dim)

    def resize(self, lines: int | None = None, columns: int | None = None) -> None:
        """Resize keeping every row that still fits.

        Shrinking drops blank rows below the cursor first and moves rows
        pushed off the top into scrollback; growing pulls them back.
        """
        lines = lines or self.lines
        columns = columns or self.columns
        if lines == self.lines and columns == self.columns:
            return

        self.dirty.update(range(max(lines, self.lines)))

        if lines < self.lines:
            overflow = self.lines - lines
            drop_bottom = 0
            y = self.lines - 1
            while drop_bottom < overflow and y > self.cursor.y and self._row_is_blank(y):
                drop_bottom += 1
                y -= 1
            for y in range(self.lines - drop_bottom, self.lines):
                self.buffer.pop(y, None)
            push_top = overflow - drop_bottom
            for y in range(push_top):
                self.scrollback.append(dict(self.buffer.get(y, {})))
            self._shift_rows(-push_top, lines)
            self.cursor.y = max(self.cursor.y - push_top, 0)
        elif lines > self.lines and self.scrollback:
            pull = min(lines - self.lines, len(self.scrollback))
            self._shift_rows(pull, lines)
            for y in range(pull - 1, -1, -1):
                self.buffer[y].update(self.scrollback.pop())
            self.cursor.y += pull

        if columns < self.columns:
            for row in self.buffer.values():
                for x in range(columns, self.columns):
                    row.pop(x, None)

        self.lines, self.columns = lines, columns
        self.tabstops = set(range(8, self.columns, 8))
        self.set_margins()
        self.ensure_hbounds()
        self.ensure_vbounds()

    def _shift_rows(self, offset: int, new_lines: int) -> None:
        if offset == 0:
            return
        moved = {}
        for y, row in list(self.buffer.items()):
            target = y + offset
            if 0 <= target < new_lines:
                moved[target] = row
        self.buffer.clear()
        self.buffer.update(moved)

    def _row_is_blank(self, y: int) -> bool:
        row = self.buffer.get(y)
        if not row:
            return True
        return all(_is_blank(cell) for cell in row.values())

    def rows(self) -> list[Mapping[int, Cell]]:
        """Scrollback rows followed by the visible rows, top to bottom."""
        visible = [self.buffer.get(y, {}) for y in range(self.lines)]
        return list(self.scrollback) + visible


def _cell_at(row: Mapping[int, Any], x: int) -> Any:
    return row[x] if x in row else BLANK_CELL


def _is_blank(cell: Any) -> bool:
    """A cell that renders exactly like an untouched cell."""
    return (
        cell.data == " "
        and cell.bg == "default"
        and not cell.reverse
        and not cell.underscore
        and not cell.strikethrough
    )


def _style_of(cell: Any) -> Style:
    return Style(
        fg=cell.fg,
        bg=cell.bg,
        bold=cell.bold,
        dim=getattr(cell, "dim", False),
        italics=cell.italics,
        underscore=cell.underscore,
        reverse=cell.reverse,
        strikethrough=cell.strikethrough,
    )


def _color_params(color: str, background: bool) -> str | None:
    """Convert a pyte color value to SGR parameters."""
    if not color or color == "default":
        return None

    name = color.lower()
    bright = name.startswith("bright")
    if bright:
        name = name[len("bright"):]
    if name in NAMED_COLORS:
        index = NAMED_COLORS[name]
        if background:
            return str((100 if bright else 40) + index)
        return str((90 if bright else 30) + index)

    hex_value = name.lstrip("#")
    if re.fullmatch(r"[0-9a-f]{6}", hex_value):
        prefix = "48" if background else "38"
        if hex_value in _HEX_TO_256:
            return f"{prefix};5;{_HEX_TO_256[hex_value]}"
        r, g, b = (int(hex_value[i:i + 2], 16) for i in (0, 2, 4))
        return f"{prefix};2;{r};{g};{b}"

    return None


def _style_params(style: Style) -> list[str]:
    params = []
    if style.bold:
        params.append("1")
    if style.dim:
        params.append("2")
    if style.italics:
        params.append("3")
    if style.underscore:
        params.append("4")
    if style.reverse:
        params.append("7")
    if style.strikethrough:
        params.append("9")
    fg = _color_params(style.fg, background=False)
    if fg:
        params.append(fg)
    bg = _color_params(style.bg, background=True)
    if bg:
        params.append(bg)
    return params


def sgr_transition(prev: Style, cur: Style) -> str:
    """Minimal SGR sequence that turns the ``prev`` style into ``cur``."""
    if cur == prev:
        return ""
    if cur == DEFAULT_STYLE:
        return SGR_RESET

    turned_off = (
        (prev.bold and not cur.bold)
        or (prev.dim and not cur.dim)
        or (prev.italics and not cur.italics)
        or (prev.underscore and not cur.underscore)
        or (prev.reverse and not cur.reverse)
        or (prev.strikethrough and not cur.strikethrough)
        or (prev.fg != "default" and cur.fg == "default")
        or (prev.bg != "default" and cur.bg == "default")
    )
    if turned_off:
        params = ["0"] + _style_params(cur)
    else:
        delta = Style(
            fg=cur.fg if cur.fg != prev.fg else "default",
            bg=cur.bg if cur.bg != prev.bg else "default",
            bold=cur.bold and not prev.bold,
            dim=cur.dim and not prev.dim,
            italics=cur.italics and not prev.italics,
            underscore=cur.underscore and not prev.underscore,
            reverse=cur.reverse and not prev.reverse,
            strikethrough=cur.strikethrough and not prev.strikethrough,
        )
        params = _style_params(delta)
    return f"\x1b[{';'.join(params)}m"


def encode_rows_ansi(rows: Iterable[Mapping[int, Any]], columns: int) -> str:
    """Re-encode rows of cells as ANSI text.

    Attributes are emitted only where they change, every styled line ends
    with a reset, trailing blank cells and trailing blank lines are dropped.
    """
    lines: list[str] = []
    for row in rows:
        last_visible = -1
        for x in range(columns - 1, -1, -1):
            if not _is_blank(_cell_at(row, x)):
                last_visible = x
                break

        parts: list[str] = []
        style = DEFAULT_STYLE
        for x in range(last_visible + 1):
            cell = _cell_at(row, x)
            cell_style = _style_of(cell)
            if cell_style != style:
                parts.append(sgr_transition(style, cell_style))
                style = cell_style
            parts.append(cell.data)
        if style != DEFAULT_STYLE:
            parts.append(SGR_RESET)
        lines.append("".join(parts))

    while lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines)


def row_text(row: Mapping[int, Any], columns: int) -> str:
    return "".join(_cell_at(row, x).data for x in range(columns)).rstrip()


@dataclass
class TerminalBufferSnapshot:
    """Rendered state of a terminal buffer."""

    lines: list[str]
    cursor_x: int
    cursor_y: int
    cols: int
    rows: int
    ansi_content: str = ""

    @classmethod
    def empty(cls, cols: int = DEFAULT_COLS, rows: int = DEFAULT_ROWS) -> "TerminalBufferSnapshot":
        return cls(lines=[], cursor_x=0, cursor_y=0, cols=cols, rows=rows, ansi_content="")

    def to_dict(self) -> dict[str, Any]:
        """Wire representation used in terminal_buffer / session_resumed messages."""
        return {
            "lines": list(self.lines),
            "cursorX": self.cursor_x,
            "cursorY": self.cursor_y,
            "cols": self.cols,
            "rows": self.rows,
            "ansiContent": self.ansi_content,
        }

    @property
    def fingerprint(self) -> str:
        return f"{self.cols}x{self.rows}@{self.cursor_x},{self.cursor_y}\n{self.ansi_content}"


class TerminalEmulator:
    """A headless terminal: feed it bytes, read back the screen."""

    def __init__(
        self,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        scrollback: int = DEFAULT_SCROLLBACK,
    ):
        self.screen = ScrollbackScreen(cols, rows, scrollback=scrollback)
        self.stream = pyte.Stream(self.screen)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._total_bytes = 0

    @property
    def cols(self) -> int:
        return self.screen.columns

    @property
    def rows(self) -> int:
        return self.screen.lines

    def feed(self, data: bytes | str) -> None:
        """Feed raw terminal output (bytes may split multi-byte characters)."""
        if isinstance(data, bytes):
            self._total_bytes += len(data)
            text = self._decoder.decode(data)
        else:
            self._total_bytes += len(data.encode("utf-8"))
            text = data

        # Normalize bare LFs to CRLF so the cursor returns to column 0 on new lines.
        text = re.sub(r"(?<!\r)\n", "\r\n", text)
        self.stream.feed(text)

    def resize(self, cols: int, rows: int) -> None:
        self.screen.resize(rows, cols)

    def clear(self) -> None:
        self.screen.clear_all()
        self._decoder.reset()

    def get_lines(self) -> list[str]:
        """Plain text of every row including scrollback, right-trimmed."""
        return [row_text(row, self.cols) for row in self.screen.rows()]

    def get_text(self) -> str:
        """Visible screen as plain text without trailing empty lines."""
        lines = [row_text(self.screen.buffer.get(y, {}), self.cols) for y in range(self.rows)]
        while lines and not lines[-1]:
            lines.pop()
        return "\n".join(lines)

    def render_ansi(self) -> str:
        return encode_rows_ansi(self.screen.rows(), self.cols)

    def snapshot(self) -> TerminalBufferSnapshot:
        cursor = self.screen.cursor
        return TerminalBufferSnapshot(
            lines=self.get_lines(),
            cursor_x=min(cursor.x, self.cols - 1),
            cursor_y=cursor.y,
            cols=self.cols,
            rows=self.rows,
            ansi_content=self.render_ansi(),
        )

    def cells(self) -> list[list[Cell]]:
        """Full grid (scrollback + screen) as cell lists, for comparisons."""
        return [[_cell_at(row, x) for x in range(self.cols)] for row in self.screen.rows()]

    @property
    def total_bytes(self) -> int:
        return self._total_bytes


@dataclass
class _BufferSession:
    emulator: TerminalEmulator
    last_sent: str = ""
    last_sync_time: float = 0.0
    pending_sync: Debouncer = field(default_factory=Debouncer)
    lock: threading.RLock = field(default_factory=threading.RLock)


SnapshotCallback = Callable[[TerminalBufferSnapshot], None]


class TerminalBufferService:
    """Per-session terminal emulators with de-duplicated, throttled snapshots."""

    def __init__(
        self,
        throttle_ms: int = SYNC_THROTTLE_MS,
        scrollback: int = DEFAULT_SCROLLBACK,
    ):
        self._sessions: dict[str, _BufferSession] = {}
        self._lock = threading.Lock()
        self.throttle_seconds = throttle_ms / 1000.0
        self.scrollback = scrollback

    def _get(self, session_id: str) -> _BufferSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def create_buffer(self, session_id: str, cols: int = DEFAULT_COLS, rows: int = DEFAULT_ROWS) -> None:
        """Create a fresh buffer for a session, disposing any existing one."""
        self.destroy_buffer(session_id)
        state = _BufferSession(emulator=TerminalEmulator(cols, rows, scrollback=self.scrollback))
        with self._lock:
            self._sessions[session_id] = state
        logger.info("Created terminal buffer for session %s (%sx%s)", session_id, cols, rows)

    def write(self, session_id: str, data: bytes | str) -> bool:
        state = self._get(session_id)
        if state is None:
            logger.warning("No terminal buffer for session %s", session_id)
            return False
        with state.lock:
            state.emulator.feed(data)
        return True

    def get_snapshot(self, session_id: str, force: bool = False) -> TerminalBufferSnapshot | None:
        """Snapshot the buffer.

        Returns None when there is no buffer, or when nothing changed since the
        last returned snapshot and ``force`` is False. A forced snapshot is a
        read for one client and leaves the broadcast fingerprint alone, so a
        pending trailing delivery still goes out.
        """
        state = self._get(session_id)
        if state is None:
            return None
        with state.lock:
            snapshot = state.emulator.snapshot()
            fingerprint = snapshot.fingerprint
            if force:
                return snapshot
            if fingerprint == state.last_sent:
                return None
            state.last_sent = fingerprint
            return snapshot

    def get_snapshot_throttled(self, session_id: str, callback: SnapshotCallback) -> None:
        """Deliver a snapshot no more often than the throttle interval.

        Calls inside the interval schedule a single trailing delivery, so the
        last update is never dropped.
        """
        state = self._get(session_id)
        if state is None:
            return

        with state.lock:
            now = time.monotonic()
            elapsed = now - state.last_sync_time
            if elapsed < self.throttle_seconds:
                state.pending_sync.schedule(
                    self.throttle_seconds - elapsed,
                    self._deliver_pending,
                    session_id,
                    callback,
                )
                return
            state.pending_sync.cancel()
            snapshot = self.get_snapshot(session_id)
            if snapshot is not None:
                state.last_sync_time = now

        if snapshot is not None:
            callback(snapshot)

    def _deliver_pending(self, session_id: str, callback: SnapshotCallback) -> None:
        state = self._get(session_id)
        if state is None:
            return
        with state.lock:
            snapshot = self.get_snapshot(session_id)
            if snapshot is not None:
                state.last_sync_time = time.monotonic()
        if snapshot is not None:
            callback(snapshot)

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        state = self._get(session_id)
        if state is None:
            return False
        with state.lock:
            state.emulator.resize(cols, rows)
        logger.info("Resized terminal buffer for session %s to %sx%s", session_id, cols, rows)
        return True

    def clear(self, session_id: str) -> None:
        state = self._get(session_id)
        if state is None:
            return
        with state.lock:
            state.emulator.clear()
            state.last_sent = ""

    def destroy_buffer(self, session_id: str) -> None:
        with self._lock:
            state = self._sessions.pop(session_id, None)
        if state is not None:
            state.pending_sync.cancel()
            logger.info("Destroyed terminal buffer for session %s", session_id)

    def dimensions(self, session_id: str) -> tuple[int, int] | None:
        state = self._get(session_id)
        if state is None:
            return None
        return state.emulator.cols, state.emulator.rows
