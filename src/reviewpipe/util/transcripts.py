"""Full-transcript extraction: from a finished run's stdout to one ParseResult.

Vendors repeat the same assistant text in several places (a streamed
message, a turn summary, an end-of-run digest). Each extractor collects the
assistant text in arrival order, skipping exact repeats, and runs the JSON
pipeline over it. Live-display deltas are never accumulated here.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterator

from .json_extractor import ParseResult, extract_json

logger = logging.getLogger(__name__)

NOT_JSON_ERROR = "Text content is not valid JSON"


class SeenTextSet:
    """Exact-match record of text already accumulated during one extraction."""

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def __contains__(self, text: str) -> bool:
        return text in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, text: str) -> bool:
        """Record ``text``. Returns False when it had already been seen."""
        if text in self._seen:
            return False
        self._seen.add(text)
        return True


def iter_json_lines(raw: str) -> Iterator[dict[str, Any]]:
    """Yield each line of ``raw`` that decodes to a JSON object."""
    for line in raw.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except ValueError:
            logger.debug("Skipping non-JSON transcript line: %.120s", line)
            continue
        if isinstance(event, dict):
            yield event


def extract_assistant_text(content: Any, seen: SeenTextSet) -> str:
    """Collect unseen text from message content (block list or plain string)."""
    if isinstance(content, str):
        return content if content and seen.add(content) else ""
    if not isinstance(content, list):
        return ""
    parts = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        text = block.get("text")
        if isinstance(text, str) and text and seen.add(text):
            parts.append(text)
    return "".join(parts)


def _assistant_content(message: Any) -> Any:
    if isinstance(message, dict) and message.get("role") == "assistant":
        return message.get("content")
    return None


def _finish(provider: str, assistant_text: str, result_text: str | None, raw: str) -> ParseResult:
    if assistant_text:
        parsed = extract_json(assistant_text, level=provider)
        if parsed.success:
            return parsed
        if result_text and result_text != assistant_text:
            fallback = extract_json(result_text, level=provider)
            if fallback.success:
                return fallback
        logger.warning("%s assistant text is not valid JSON", provider)
        return ParseResult.failure(NOT_JSON_ERROR)
    if result_text:
        return extract_json(result_text, level=provider)
    return extract_json(raw, level=provider)


def _result_text(event: dict[str, Any]) -> str | None:
    if event.get("type") != "result" or event.get("is_error"):
        return None
    result = event.get("result")
    return result if isinstance(result, str) and result.strip() else None


def extract_claude_transcript(raw: str) -> ParseResult:
    """Extract the final JSON from a Claude Code stream-json transcript."""
    seen = SeenTextSet()
    text = ""
    result_text = None
    for event in iter_json_lines(raw or ""):
        event_type = event.get("type")
        if event_type == "assistant":
            text += extract_assistant_text(_assistant_content(event.get("message")), seen)
        elif event_type == "result":
            result_text = _result_text(event) or result_text
    return _finish("claude", text, result_text, raw or "")


def extract_cursor_agent_transcript(raw: str) -> ParseResult:
    """Extract the final JSON from a Cursor Agent stream-json transcript.

    With ``--stream-partial-output`` each fragment arrives as an assistant
    event carrying ``timestamp_ms``; those are skipped in favour of the
    complete message that follows.
    """
    seen = SeenTextSet()
    text = ""
    result_text = None
    for event in iter_json_lines(raw or ""):
        event_type = event.get("type")
        if event_type == "assistant":
            if isinstance(event.get("timestamp_ms"), (int, float)):
                continue
            text += extract_assistant_text(_assistant_content(event.get("message")), seen)
        elif event_type == "result":
            result_text = _result_text(event) or result_text
    return _finish("cursor-agent", text, result_text, raw or "")


def extract_pi_transcript(raw: str) -> ParseResult:
    """Extract the final JSON from a Pi ``--mode json`` transcript.

    The same assistant message shows up in ``message_end``, ``turn_end`` and
    again in ``agent_end.messages``; the seen set keeps one copy.
    """
    seen = SeenTextSet()
    text = ""
    for event in iter_json_lines(raw or ""):
        event_type = event.get("type")
        if event_type in ("message_end", "turn_end"):
            text += extract_assistant_text(_assistant_content(event.get("message")), seen)
        elif event_type == "agent_end":
            messages = event.get("messages")
            if isinstance(messages, list):
                for message in messages:
                    text += extract_assistant_text(_assistant_content(message), seen)
    return _finish("pi", text, None, raw or "")
