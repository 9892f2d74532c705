"""Incremental JSONL splitting and per-vendor normalization into display events.

Each supported CLI writes newline-delimited JSON on stdout. The pieces here
turn arbitrary stdout chunks into complete lines (``LineSplitter``) and turn
each line into an optional ``StreamEvent`` for a live progress display.
Normalizers are pure functions: anything they cannot interpret yields None.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

StreamEventType = Literal["assistant_text", "tool_use"]

SNIPPET_MAX_LEN = 200
ELLIPSIS = "…"
PI_DELTA_FLUSH_CHARS = 80

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class StreamEvent:
    """A normalized progress event for the live display."""

    type: StreamEventType
    text: str
    timestamp: int


NormalizeFn = Callable[..., "StreamEvent | None"]
LineHandler = Callable[[str], None]
EventSink = Callable[[StreamEvent], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def truncate_snippet(text: str | None, max_len: int = SNIPPET_MAX_LEN) -> str:
    """Collapse whitespace and cap length for single-line display.

    Args:
        text: Raw text, possibly multi-line
        max_len: Maximum number of characters kept before the ellipsis

    Returns:
        Single-line text, suffixed with an ellipsis when it was cut
    """
    if not text:
        return ""
    collapsed = _WHITESPACE_RE.sub(" ", text.strip())
    if len(collapsed) <= max_len:
        return collapsed
    return collapsed[:max_len] + ELLIPSIS


def strip_path_prefix(path: str | None, cwd_prefix: str | None) -> str:
    """Make a path relative to ``cwd_prefix``, matching whole segments only.

    ``/tmp/work`` strips ``/tmp/work/src/a.py`` to ``src/a.py`` but leaves
    ``/tmp/worker/a.py`` untouched.
    """
    if path is None:
        return ""
    if not cwd_prefix:
        return path
    prefix = cwd_prefix.rstrip("/") or "/"
    if path == prefix:
        return ""
    if prefix == "/":
        return path[1:] if path.startswith("/") else path
    if path.startswith(prefix + "/"):
        return path[len(prefix) + 1 :]
    return path


def _coerce_tool_input(tool_input: Any) -> dict[str, Any] | None:
    if isinstance(tool_input, str):
        try:
            tool_input = json.loads(tool_input)
        except ValueError:
            return None
    if isinstance(tool_input, dict):
        return tool_input
    return None


def extract_tool_detail(tool_input: Any, cwd: str | None = None) -> str:
    """Pick the most informative argument of a tool invocation.

    Preference order is ``command``, then ``file_path``, then ``path``.
    String inputs are decoded as JSON first; anything else yields "".
    """
    args = _coerce_tool_input(tool_input)
    if not args:
        return ""
    command = args.get("command")
    if isinstance(command, str) and command:
        return command
    for key in ("file_path", "path"):
        value = args.get(key)
        if isinstance(value, str) and value:
            return strip_path_prefix(value, cwd)
    return ""


def make_text_event(text: Any) -> StreamEvent | None:
    if not isinstance(text, str):
        return None
    snippet = truncate_snippet(text)
    if not snippet:
        return None
    return StreamEvent(type="assistant_text", text=snippet, timestamp=_now_ms())


def make_tool_event(name: Any, tool_input: Any, cwd: str | None = None) -> StreamEvent:
    tool_name = name if isinstance(name, str) and name else "unknown"
    detail = extract_tool_detail(tool_input, cwd)
    label = f"{tool_name}: {detail}" if detail else tool_name
    return StreamEvent(type="tool_use", text=truncate_snippet(label), timestamp=_now_ms())


def _load_object(line: str | None) -> dict[str, Any] | None:
    if not line or not line.strip():
        return None
    try:
        event = json.loads(line)
    except ValueError:
        return None
    return event if isinstance(event, dict) else None


def _is_assistant_message(message: Any, require_role: bool = False) -> bool:
    if not isinstance(message, dict):
        return False
    role = message.get("role")
    if role is None:
        return not require_role
    return role == "assistant"


def _first_text_block(content: Any) -> str | None:
    if isinstance(content, str):
        return content if content.strip() else None
    if not isinstance(content, list):
        return None
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str) and text.strip():
                return text
    return None


# --- Claude Code (stream-json) -------------------------------------------


def normalize_claude_line(line: str, cwd: str | None = None) -> StreamEvent | None:
    """Normalize one Claude Code ``--output-format stream-json`` line."""
    event = _load_object(line)
    if event is None:
        return None
    event_type = event.get("type")

    if event_type == "stream_event":
        inner = event.get("event")
        delta = inner.get("delta") if isinstance(inner, dict) else None
        if isinstance(delta, dict) and delta.get("type") == "text_delta":
            return make_text_event(delta.get("text"))
        return None

    if event_type == "assistant":
        message = event.get("message")
        if not _is_assistant_message(message):
            return None
        content = message.get("content")
        text = _first_text_block(content if isinstance(content, list) else None)
        if text is not None:
            return make_text_event(text)
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_use":
                    return make_tool_event(block.get("name"), block.get("input"), cwd)
        return None

    return None


# --- Cursor Agent (stream-json) ------------------------------------------


def _cursor_tool_call(tool_call: Any) -> tuple[Any, Any]:
    if not isinstance(tool_call, dict):
        return None, None
    for key, value in tool_call.items():
        if key.endswith("ToolCall") and len(key) > len("ToolCall"):
            args = value.get("args") if isinstance(value, dict) else None
            return key[: -len("ToolCall")], args
    function = tool_call.get("function")
    if isinstance(function, dict):
        return function.get("name"), function.get("arguments")
    return None, None


def normalize_cursor_agent_line(line: str, cwd: str | None = None) -> StreamEvent | None:
    """Normalize one Cursor Agent ``--output-format stream-json`` line."""
    event = _load_object(line)
    if event is None:
        return None
    event_type = event.get("type")

    if event_type == "assistant":
        message = event.get("message")
        if not _is_assistant_message(message):
            return None
        content = message.get("content")
        return make_text_event(_first_text_block(content if isinstance(content, list) else None))

    if event_type == "tool_call" and event.get("subtype") == "started":
        name, args = _cursor_tool_call(event.get("tool_call"))
        return make_tool_event(name, args, cwd)

    return None


# --- Pi (--mode json) ----------------------------------------------------


def _pi_text_delta(event: dict[str, Any]) -> str | None:
    if event.get("type") != "message_update":
        return None
    update = event.get("assistantMessageEvent")
    if isinstance(update, dict) and update.get("type") == "text_delta":
        delta = update.get("delta")
        return delta if isinstance(delta, str) else None
    return None


def _pi_task_summary(result: Any) -> str:
    if isinstance(result, dict):
        result = result.get("content")
    text = _first_text_block(result) or ""
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def _normalize_pi_event(event: dict[str, Any], cwd: str | None) -> StreamEvent | None:
    event_type = event.get("type")

    if event_type == "message_update":
        return make_text_event(_pi_text_delta(event))

    if event_type == "message_end":
        message = event.get("message")
        if not _is_assistant_message(message, require_role=True):
            return None
        return make_text_event(_first_text_block(message.get("content")))

    if event_type == "tool_execution_start":
        return make_tool_event(event.get("toolName"), event.get("args"), cwd)

    # Only sub-agent task completions are shown; other tool results are dropped
    if event_type == "tool_execution_end" and event.get("toolName") == "task":
        status = "✗" if event.get("isError") else "✓"
        summary = _pi_task_summary(event.get("result"))
        label = f"task {status}: {summary}" if summary else f"task {status}"
        return StreamEvent(type="tool_use", text=truncate_snippet(label), timestamp=_now_ms())

    return None


def normalize_pi_line(line: str, cwd: str | None = None) -> StreamEvent | None:
    """Normalize one Pi ``--mode json`` line."""
    event = _load_object(line)
    if event is None:
        return None
    return _normalize_pi_event(event, cwd)


class PiDeltaCoalescer:
    """Stateful Pi normalizer that batches text deltas for display.

    Pi emits one ``message_update`` per token. Deltas are buffered until at
    least ``min_chars`` characters are pending. Non-text updates such as
    thinking deltas leave the buffer alone; any other event discards the
    pending text and is normalized as usual. One instance per invocation.
    """

    def __init__(self, min_chars: int = PI_DELTA_FLUSH_CHARS):
        self.min_chars = min_chars
        self._pending = ""

    def __call__(self, line: str, cwd: str | None = None) -> StreamEvent | None:
        event = _load_object(line)
        if event is None:
            return None
        delta = _pi_text_delta(event)
        if delta is not None:
            self._pending += delta
            if len(self._pending) < self.min_chars:
                return None
            text, self._pending = self._pending, ""
            return make_text_event(text)
        if event.get("type") == "message_update":
            # Thinking and other non-text updates keep the pending text
            return None
        self._pending = ""
        return _normalize_pi_event(event, cwd)


# --- Line splitting ------------------------------------------------------


class LineSplitter:
    """Reassemble newline-delimited lines from arbitrarily chunked input.

    ``feed`` accepts ``str`` or ``bytes``; bytes are decoded incrementally so a
    UTF-8 sequence split across chunks survives. Every complete line, blank
    ones included, is handed to ``on_line`` without its terminating newline.
    A handler exception is logged and does not stop later lines.
    """

    def __init__(self, on_line: LineHandler):
        self.on_line = on_line
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: str | bytes) -> None:
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._decoder.decode(bytes(chunk))
        if not chunk:
            return
        self._buffer += chunk
        if "\n" not in self._buffer:
            return
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._dispatch(line)

    def flush(self) -> None:
        """Deliver any trailing partial line. Safe to call more than once."""
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._buffer += tail
        if not self._buffer:
            return
        line, self._buffer = self._buffer, ""
        self._dispatch(line)

    def _dispatch(self, line: str) -> None:
        try:
            self.on_line(line)
        except Exception:
            logger.warning("Stream line handler failed", exc_info=True)


class StreamParser:
    """Line splitter wired to a vendor normalizer and an event sink."""

    def __init__(self, normalize: NormalizeFn, on_event: EventSink, cwd: str | None = None):
        self.normalize = normalize
        self.on_event = on_event
        self.cwd = cwd
        self._splitter = LineSplitter(self._handle_line)

    def feed(self, chunk: str | bytes) -> None:
        self._splitter.feed(chunk)

    def flush(self) -> None:
        self._splitter.flush()

    def _handle_line(self, line: str) -> None:
        if not line.strip():
            return
        event = self.normalize(line, cwd=self.cwd)
        if event is None:
            logger.debug("Skipped stream line: %.120s", line)
            return
        self.on_event(event)
