"""Tests for the pyte-based terminal buffers and their ANSI re-encoding."""

import threading
import time

import pytest

from pushtocode.server.services.terminal_buffer import (
    DEFAULT_STYLE,
    Style,
    TerminalBufferService,
    TerminalBufferSnapshot,
    TerminalEmulator,
    sgr_transition,
)


def replay(snapshot_ansi: str, cols: int, rows: int, scrollback: int = 1000) -> TerminalEmulator:
    emulator = TerminalEmulator(cols, rows, scrollback=scrollback)
    emulator.feed(snapshot_ansi)
    return emulator


def visible_cells(emulator: TerminalEmulator):
    """(char, fg, bg, bold) of every non-blank cell, keyed by position in the whole grid."""
    cells = {}
    for y, row in enumerate(emulator.cells()):
        for x, cell in enumerate(row):
            if cell.data != " " or cell.bg != "default":
                cells[(y, x)] = (cell.data, cell.fg, cell.bg, cell.bold, cell.dim)
    return cells


class TestEmulator:
    """Feeding bytes and reading the grid back."""

    def test_colored_line_scenario(self):
        """A red word is re-encoded with SGR 31 before it and a reset after it."""
        emulator = TerminalEmulator(cols=10, rows=2)
        emulator.feed(b"hello\x1b[31mworld\x1b[0m\n")
        snapshot = emulator.snapshot()
        assert snapshot.lines == ["helloworld", ""]
        assert snapshot.ansi_content == "hello\x1b[31mworld\x1b[0m"

    def test_bare_newline_returns_to_column_zero(self):
        """LF without CR still starts the next line at column 0."""
        emulator = TerminalEmulator(cols=20, rows=3)
        emulator.feed("one\ntwo")
        assert emulator.get_text() == "one\ntwo"

    def test_split_utf8_sequence(self):
        """A multi-byte character split across writes is decoded once complete."""
        emulator = TerminalEmulator(cols=10, rows=2)
        data = "héllo".encode("utf-8")
        emulator.feed(data[:2])
        emulator.feed(data[2:])
        assert emulator.get_text() == "héllo"
        assert emulator.total_bytes == len(data)

    def test_cursor_movement_overwrites(self):
        """Cursor positioning rewrites cells in place instead of appending."""
        emulator = TerminalEmulator(cols=20, rows=3)
        emulator.feed("Progress: 10%")
        emulator.feed("\x1b[1;11H50%")
        assert emulator.get_text() == "Progress: 50%"

    def test_scrollback_keeps_scrolled_rows(self):
        """Rows scrolled off the top stay in the line list."""
        emulator = TerminalEmulator(cols=10, rows=2)
        emulator.feed("a\nb\nc\nd")
        assert emulator.get_lines() == ["a", "b", "c", "d"]
        assert emulator.get_text() == "c\nd"

    def test_erase_scrollback(self):
        """CSI 3 J drops the scrollback."""
        emulator = TerminalEmulator(cols=10, rows=2)
        emulator.feed("a\nb\nc\nd")
        emulator.feed("\x1b[3J")
        assert emulator.get_lines() == ["c", "d"]

    def test_dim_attribute(self):
        """SGR 2 is tracked and re-emitted."""
        emulator = TerminalEmulator(cols=20, rows=2)
        emulator.feed("\x1b[2mfaint\x1b[22m plain")
        row = emulator.cells()[0]
        assert row[0].dim is True
        assert row[6].dim is False
        assert emulator.render_ansi() == "\x1b[2mfaint\x1b[0m plain"

    def test_256_and_truecolor(self):
        """Extended colors survive the re-encoding."""
        emulator = TerminalEmulator(cols=20, rows=2)
        emulator.feed("\x1b[38;5;208mA\x1b[0m\x1b[38;2;1;2;3mB\x1b[0m")
        ansi = emulator.render_ansi()
        assert "\x1b[38;5;208mA" in ansi
        assert "38;2;1;2;3mB" in ansi

    def test_cursor_x_clamped_after_full_line(self):
        """A pending wrap does not report a cursor outside the grid."""
        emulator = TerminalEmulator(cols=5, rows=2)
        emulator.feed("12345")
        assert emulator.snapshot().cursor_x == 4

    def test_clear(self):
        """clear resets grid, scrollback and cursor."""
        emulator = TerminalEmulator(cols=10, rows=2)
        emulator.feed("a\nb\nc")
        emulator.clear()
        snapshot = emulator.snapshot()
        assert snapshot.ansi_content == ""
        assert (snapshot.cursor_x, snapshot.cursor_y) == (0, 0)


class TestAnsiEncoding:
    """Minimal diff-based SGR emission."""

    def test_no_transition_for_same_style(self):
        """Identical styles emit nothing."""
        assert sgr_transition(DEFAULT_STYLE, DEFAULT_STYLE) == ""

    def test_adding_attribute_emits_only_delta(self):
        """Turning bold on over red adds just SGR 1."""
        red = Style(fg="red")
        assert sgr_transition(red, red._replace(bold=True)) == "\x1b[1m"

    def test_removing_attribute_resets_and_restates(self):
        """Turning an attribute off resets and re-applies what remains."""
        bold_red = Style(fg="red", bold=True)
        assert sgr_transition(bold_red, Style(fg="red")) == "\x1b[0;31m"

    def test_bright_and_background(self):
        """Bright foreground and background colors map to 9x and 4x codes."""
        assert sgr_transition(DEFAULT_STYLE, Style(fg="brightgreen", bg="blue")) == "\x1b[92;44m"

    def test_attributes_not_repeated_per_cell(self):
        """A styled run is opened once."""
        emulator = TerminalEmulator(cols=20, rows=1)
        emulator.feed("\x1b[1;34mbold blue\x1b[0m")
        assert emulator.render_ansi() == "\x1b[1;34mbold blue\x1b[0m"

    def test_trailing_blanks_trimmed(self):
        """Trailing spaces and trailing empty lines are dropped."""
        emulator = TerminalEmulator(cols=20, rows=5)
        emulator.feed("text   \n\n")
        assert emulator.render_ansi() == "text"

    def test_background_blanks_kept(self):
        """Spaces with a background color are visible and kept."""
        emulator = TerminalEmulator(cols=10, rows=1)
        emulator.feed("\x1b[41m  \x1b[0m")
        assert emulator.render_ansi() == "\x1b[41m  \x1b[0m"


class TestRoundTrip:
    """Replaying ansiContent into a fresh terminal reproduces the grid."""

    @pytest.mark.parametrize(
        "stream",
        [
            "hello\x1b[31mworld\x1b[0m\n",
            "\x1b[1mBold\x1b[0m \x1b[3;4mitalic under\x1b[0m \x1b[7mrev\x1b[0m",
            "\x1b[32mgreen\x1b[1m and bold\x1b[22m not bold\x1b[0m",
            "line1\r\n\x1b[44m  bg  \x1b[0m\r\n\x1b[2mdim\x1b[0m end",
            "\x1b[38;5;196mred256\x1b[48;5;21m on blue\x1b[0m",
            "abc\x1b[2;5Hxyz\x1b[1;1H\x1b[35mM\x1b[0m",
        ],
    )
    def test_round_trip(self, stream):
        """Characters and styles match cell for cell."""
        original = TerminalEmulator(cols=30, rows=4)
        original.feed(stream)
        copy = replay(original.snapshot().ansi_content, 30, 4)
        assert visible_cells(copy) == visible_cells(original)
        assert copy.render_ansi() == original.render_ansi()

    def test_round_trip_with_scrollback(self):
        """Scrolled content is part of the re-encoding."""
        original = TerminalEmulator(cols=10, rows=3)
        original.feed("".join(f"\x1b[3{i % 7}mrow{i}\x1b[0m\n" for i in range(8)))
        snapshot = original.snapshot()
        copy = replay(snapshot.ansi_content, 10, 3)
        assert copy.get_lines()[: len(snapshot.lines)] == snapshot.lines[: len(copy.get_lines())]
        assert copy.render_ansi() == original.render_ansi()


class TestResize:
    """Resizing keeps representable content."""

    def test_shrink_rows_moves_top_to_scrollback(self):
        """Rows pushed off the top are kept in scrollback."""
        emulator = TerminalEmulator(cols=10, rows=4)
        emulator.feed("1\n2\n3\n4")
        emulator.resize(10, 2)
        assert emulator.rows == 2
        assert emulator.get_text() == "3\n4"
        assert emulator.get_lines() == ["1", "2", "3", "4"]

    def test_shrink_drops_blank_rows_first(self):
        """Blank rows below the cursor go before content does."""
        emulator = TerminalEmulator(cols=10, rows=5)
        emulator.feed("1\n2")
        emulator.resize(10, 2)
        assert emulator.get_text() == "1\n2"
        assert emulator.get_lines() == ["1", "2"]

    def test_grow_pulls_scrollback_back(self):
        """Growing restores rows from scrollback."""
        emulator = TerminalEmulator(cols=10, rows=2)
        emulator.feed("1\n2\n3\n4")
        emulator.resize(10, 4)
        assert emulator.get_text() == "1\n2\n3\n4"
        assert emulator.snapshot().cursor_y == 3

    def test_narrow_truncates_columns(self):
        """Columns beyond the new width are cut."""
        emulator = TerminalEmulator(cols=10, rows=2)
        emulator.feed("abcdefghij")
        emulator.resize(4, 2)
        assert emulator.cols == 4
        assert emulator.get_text() == "abcd"


class TestBufferService:
    """Per-session buffers with de-duplicated snapshots."""

    def test_snapshot_idempotence(self):
        """A second snapshot with no write in between is None unless forced."""
        service = TerminalBufferService()
        service.create_buffer("s1", 20, 3)
        service.write("s1", b"hi")
        first = service.get_snapshot("s1")
        assert first is not None
        assert service.get_snapshot("s1") is None
        forced = service.get_snapshot("s1", force=True)
        assert forced is not None
        assert forced.ansi_content == first.ansi_content

    def test_write_without_visible_change_is_deduplicated(self):
        """Writes that leave the screen unchanged produce no snapshot."""
        service = TerminalBufferService()
        service.create_buffer("s1", 20, 3)
        service.write("s1", b"hi")
        service.get_snapshot("s1")
        service.write("s1", b"\x1b[0m")
        assert service.get_snapshot("s1") is None

    def test_unknown_session(self):
        """Operations on unknown sessions do not raise."""
        service = TerminalBufferService()
        assert service.write("nope", b"x") is False
        assert service.get_snapshot("nope") is None
        assert service.resize("nope", 10, 10) is False
        service.clear("nope")
        service.destroy_buffer("nope")

    def test_clear_resets_fingerprint(self):
        """After clear the next snapshot is delivered even if it looks the same as an old one."""
        service = TerminalBufferService()
        service.create_buffer("s1", 20, 3)
        service.get_snapshot("s1")
        service.clear("s1")
        assert service.get_snapshot("s1") is not None

    def test_create_replaces_buffer(self):
        """create_buffer disposes the old emulator."""
        service = TerminalBufferService()
        service.create_buffer("s1", 20, 3)
        service.write("s1", b"old")
        service.create_buffer("s1", 40, 5)
        snapshot = service.get_snapshot("s1")
        assert snapshot.ansi_content == ""
        assert service.dimensions("s1") == (40, 5)

    def test_resize(self):
        """resize changes the reported dimensions."""
        service = TerminalBufferService()
        service.create_buffer("s1", 20, 3)
        assert service.resize("s1", 30, 6)
        snapshot = service.get_snapshot("s1", force=True)
        assert (snapshot.cols, snapshot.rows) == (30, 6)

    def test_snapshot_dict_keys(self):
        """The wire form uses camelCase keys."""
        data = TerminalBufferSnapshot.empty(80, 24).to_dict()
        assert data == {
            "lines": [],
            "cursorX": 0,
            "cursorY": 0,
            "cols": 80,
            "rows": 24,
            "ansiContent": "",
        }


class TestThrottledSnapshots:
    """snapshotThrottled delivers at most every interval and never drops the last update."""

    def test_first_call_is_immediate(self):
        """Outside the interval the callback runs synchronously."""
        service = TerminalBufferService(throttle_ms=50)
        service.create_buffer("s1", 20, 3)
        service.write("s1", b"a")
        received = []
        service.get_snapshot_throttled("s1", received.append)
        assert len(received) == 1

    def test_burst_gets_one_trailing_delivery(self):
        """Calls inside the interval collapse into one trailing callback with the latest state."""
        service = TerminalBufferService(throttle_ms=50)
        service.create_buffer("s1", 20, 3)
        received = []
        lock = threading.Lock()

        def callback(snapshot):
            with lock:
                received.append(snapshot)

        service.write("s1", b"a")
        service.get_snapshot_throttled("s1", callback)
        for ch in b"bcdef":
            service.write("s1", bytes([ch]))
            service.get_snapshot_throttled("s1", callback)

        time.sleep(0.3)
        with lock:
            assert len(received) == 2
            assert received[-1].lines[0] == "abcdef"

    def test_forced_read_does_not_swallow_trailing_delivery(self):
        """A resume-style forced snapshot between throttled calls still lets the trailing update out."""
        service = TerminalBufferService(throttle_ms=50)
        service.create_buffer("s1", 20, 3)
        received = []
        lock = threading.Lock()

        def callback(snapshot):
            with lock:
                received.append(snapshot.lines)

        service.write("s1", b"first")
        service.get_snapshot_throttled("s1", callback)
        service.write("s1", b" second")
        service.get_snapshot_throttled("s1", callback)
        forced = service.get_snapshot("s1", force=True)
        assert forced.lines == ["first second"]

        time.sleep(0.2)
        with lock:
            assert received == [["first"], ["first second"]]

    def test_destroy_cancels_trailing_delivery(self):
        """No callback fires for a destroyed buffer."""
        service = TerminalBufferService(throttle_ms=100)
        service.create_buffer("s1", 20, 3)
        received = []
        service.write("s1", b"a")
        service.get_snapshot_throttled("s1", received.append)
        service.write("s1", b"b")
        service.get_snapshot_throttled("s1", received.append)
        service.destroy_buffer("s1")
        time.sleep(0.3)
        assert len(received) == 1
