"""Classification of agent CLI output into typed events.

Non-interactive runs emit newline-delimited stream-json. Each line is parsed
and converted to zero or more OutputEvents; anything that is not JSON falls
back to plain text tagged by simple heuristics. Nothing here raises.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

OutputType = Literal["text", "thinking", "code_block", "file_change", "error"]
EventKind = Literal["output", "auth_required"]

# Tools whose invocation changes files on disk
FILE_MUTATING_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})

AUTH_REQUIRED_MARKERS = ("Please run /login", "Invalid API key")

_CSI_RE = re.compile(r"\x1b\[\??[0-9;]*[a-zA-Z]")
_OSC_RE = re.compile(r"\x1b\][^\x07]*\x07")
_DCS_APC_RE = re.compile(r"\x1b[PX^_][^\x1b]*\x1b\\")
_CHARSET_RE = re.compile(r"\x1b[()][AB012]")
_KEYPAD_RE = re.compile(r"\x1b[=>]")
_C0_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

_INDENTED_CODE_RE = re.compile(r"^\s{4,}", re.MULTILINE)
_SPINNER_RE = re.compile(r"^[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏▁▂▃▄▅▆▇█]+$")


def strip_ansi_and_control(text: str) -> str:
    """Remove escape sequences and C0 controls, keeping newline, tab and CR."""
    text = _OSC_RE.sub("", text)
    text = _DCS_APC_RE.sub("", text)
    text = _CSI_RE.sub("", text)
    text = _CHARSET_RE.sub("", text)
    text = _KEYPAD_RE.sub("", text)
    return _C0_RE.sub("", text)


def detect_output_type(content: str) -> OutputType:
    """Advisory tag for a raw text line, used for UI coloring."""
    if "```" in content or _INDENTED_CODE_RE.search(content):
        return "code_block"
    if "<thinking>" in content or "</thinking>" in content:
        return "thinking"
    if "Created:" in content or "Modified:" in content or "File:" in content:
        return "file_change"
    return "text"


def is_auth_failure(result: str) -> bool:
    return any(marker in result for marker in AUTH_REQUIRED_MARKERS)


@dataclass
class OutputEvent:
    """One semantic unit of agent output."""

    kind: EventKind = "output"
    content: str = ""
    output_type: OutputType = "text"
    is_final: bool = False


@dataclass
class ClassifiedLine:
    """Events produced by one output line, plus any conversation id it carried."""

    events: list[OutputEvent] = field(default_factory=list)
    conversation_id: str | None = None


def _text_event(content: str, output_type: OutputType = "text") -> OutputEvent:
    return OutputEvent(content=content, output_type=output_type)


def _file_change_event(tool: str, tool_input: Any) -> OutputEvent:
    file_path = tool_input.get("file_path") if isinstance(tool_input, dict) else None
    if file_path is None and isinstance(tool_input, dict):
        file_path = tool_input.get("notebook_path")
    return OutputEvent(
        content=json.dumps({"tool": tool, "file": file_path}),
        output_type="file_change",
    )


def _classify_assistant(obj: dict) -> list[OutputEvent]:
    message = obj.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else message
    if isinstance(content, str):
        return [_text_event(content)] if content else []
    if not isinstance(content, list):
        return []

    events = []
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "text" and item.get("text"):
            events.append(_text_event(item["text"]))
        elif item_type == "thinking" and item.get("thinking"):
            events.append(_text_event(item["thinking"], "thinking"))
        elif item_type == "tool_use" and item.get("name") in FILE_MUTATING_TOOLS:
            events.append(_file_change_event(item["name"], item.get("input")))
    return events


def _classify_json(obj: dict) -> list[OutputEvent]:
    event_type = obj.get("type")

    if event_type == "assistant":
        return _classify_assistant(obj)

    if event_type == "content_block_delta":
        delta = obj.get("delta") or {}
        if delta.get("type") == "text_delta":
            return [_text_event(delta.get("text") or "")]
        if delta.get("type") == "thinking_delta":
            return [_text_event(delta.get("thinking") or "", "thinking")]
        return []

    if event_type == "result":
        result = obj.get("result") or ""
        if not isinstance(result, str):
            result = json.dumps(result)
        if is_auth_failure(result):
            return [OutputEvent(kind="auth_required", content=result)]
        return [OutputEvent(content=result, output_type="text", is_final=True)]

    if event_type == "system" and obj.get("subtype") == "tool_use":
        tool = obj.get("tool")
        if tool in FILE_MUTATING_TOOLS:
            return [_file_change_event(tool, obj.get("input"))]

    # system/init, user tool results and anything unknown are not surfaced
    return []


def classify_line(line: str) -> ClassifiedLine:
    """Classify one line of agent output.

    Structured lines become typed events; unparseable lines become a single
    plain-text event tagged by detect_output_type.
    """
    stripped = line.strip()
    if not stripped:
        return ClassifiedLine()

    try:
        obj = json.loads(stripped)
    except (json.JSONDecodeError, ValueError):
        return ClassifiedLine(events=[_text_event(line, detect_output_type(line))])

    if isinstance(obj, str):
        return ClassifiedLine(events=[_text_event(obj, detect_output_type(obj))])
    if not isinstance(obj, dict):
        return ClassifiedLine(events=[_text_event(line, detect_output_type(line))])

    conversation_id = obj.get("session_id")
    if not isinstance(conversation_id, str) or not conversation_id:
        conversation_id = None

    try:
        events = _classify_json(obj)
    except (AttributeError, TypeError, KeyError) as exc:
        logger.debug("Unexpected stream-json shape (%s): %.200s", exc, stripped)
        events = [_text_event(line, detect_output_type(line))]
    return ClassifiedLine(events=events, conversation_id=conversation_id)


class LineBuffer:
    """Accumulates a byte stream and yields complete decoded lines."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[str]:
        self._buffer.extend(data)
        lines = []
        while b"\n" in self._buffer:
            line_end = self._buffer.index(b"\n")
            line = bytes(self._buffer[:line_end])
            del self._buffer[:line_end + 1]
            lines.append(line.decode("utf-8", errors="replace").rstrip("\r"))
        return lines

    def flush(self) -> str:
        """Return and clear any trailing partial line."""
        rest = bytes(self._buffer).decode("utf-8", errors="replace")
        self._buffer.clear()
        return rest


class SpinnerFilter:
    """Suppresses logging of back-to-back pure-spinner chunks.

    Returns False from ``should_log`` for a chunk that only contains spinner
    glyphs when the previous spinner chunk was less than ``window`` seconds ago.
    """

    def __init__(self, window: float = 0.5):
        self.window = window
        self._spinning = False
        self._last_spinner_at = 0.0

    def should_log(self, text: str) -> bool:
        clean = strip_ansi_and_control(text).strip()
        now = time.monotonic()
        if clean and _SPINNER_RE.match(clean):
            if self._spinning and now - self._last_spinner_at < self.window:
                return False
            self._spinning = True
            self._last_spinner_at = now
        elif clean:
            self._spinning = False
        return True
