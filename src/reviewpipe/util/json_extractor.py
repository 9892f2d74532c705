"""Recover a JSON value from free-form model output."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_LEADING_FENCE_RE = re.compile(r"^```[ \t]*(?:json)?[ \t]*\r?\n?(.*?)\r?\n?```$", re.DOTALL | re.IGNORECASE)
_EMBEDDED_FENCE_RE = re.compile(r"```[ \t]*(?:json)?[ \t]*\r?\n(.*?)\r?\n?```", re.DOTALL | re.IGNORECASE)

_OPENERS = {"{": "}", "[": "]"}

# Total characters the balanced-span stage may examine across all restarts
MAX_BALANCED_SCAN = 1_000_000


@dataclass(frozen=True)
class ParseResult:
    """Outcome of extracting JSON from an invocation.

    Exactly one of ``data`` (on success) or ``error`` (on failure) is set.
    """

    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any) -> "ParseResult":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str) -> "ParseResult":
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error}


def _loads_structured(text: str) -> tuple[bool, Any]:
    try:
        value = json.loads(text)
    except ValueError:
        return False, None
    if isinstance(value, (dict, list)):
        return True, value
    return False, None


def strip_code_fence(text: str) -> str | None:
    """Return the body of a markdown code fence, or None when there is none.

    A fence wrapping the whole text wins; otherwise the first fenced block
    anywhere in the text is used.
    """
    stripped = text.strip()
    match = _LEADING_FENCE_RE.match(stripped)
    if match is None:
        match = _EMBEDDED_FENCE_RE.search(stripped)
    if match is None:
        return None
    return match.group(1).strip()


def _balanced_end(text: str, start: int, limit: int) -> tuple[int | None, int]:
    """Index just past the bracket matching ``text[start]``, or None.

    At most ``limit`` characters are examined. Also returns how many were.
    """
    stack = [_OPENERS[text[start]]]
    in_string = False
    escaped = False
    stop = min(len(text), start + 1 + limit)
    for index in range(start + 1, stop):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append(_OPENERS[char])
        elif char in "}]":
            if char != stack[-1]:
                return None, index - start
            stack.pop()
            if not stack:
                return index + 1, index - start
    return None, stop - start - 1


def find_balanced_json(text: str, max_scan: int = MAX_BALANCED_SCAN) -> tuple[bool, Any]:
    """Scan for the first balanced ``{...}`` or ``[...]`` span that parses.

    Braces inside string literals are ignored and backslash escapes are
    honoured. Spans that are unbalanced or fail to parse are skipped and the
    scan continues at the next opening character. Every restart rescans the
    tail, so the total number of characters examined is capped at
    ``max_scan`` to keep long unterminated output from going quadratic.
    """
    budget = max_scan
    for start, char in enumerate(text):
        if char not in _OPENERS:
            continue
        if budget <= 0:
            logger.debug("Balanced JSON scan gave up after %d characters", max_scan)
            break
        end, scanned = _balanced_end(text, start, budget)
        budget -= max(scanned, 1)
        if end is None:
            continue
        parsed, value = _loads_structured(text[start:end])
        if parsed:
            return True, value
    return False, None


def extract_json(text: str | None, level: str = "unknown") -> ParseResult:
    """Extract a JSON object or array from model output.

    Stages run in order and the first success wins: a direct parse, the
    body of a markdown code fence, then the first balanced span.

    Args:
        text: Model output or raw transcript
        level: Label used in log messages (e.g. which analysis pass)

    Returns:
        ParseResult carrying the parsed value or an error description
    """
    if text is None or not text.strip():
        return ParseResult.failure("Empty response")

    stripped = text.strip()
    parsed, value = _loads_structured(stripped)
    if parsed:
        return ParseResult.ok(value)

    fenced = strip_code_fence(stripped)
    if fenced is not None:
        parsed, value = _loads_structured(fenced)
        if parsed:
            logger.debug("[%s] JSON recovered from code fence", level)
            return ParseResult.ok(value)

    parsed, value = find_balanced_json(stripped)
    if parsed:
        logger.debug("[%s] JSON recovered from balanced span", level)
        return ParseResult.ok(value)

    preview = stripped[:200]
    logger.debug("[%s] No JSON found in response: %s", level, preview)
    return ParseResult.failure(f"No valid JSON found in response ({len(stripped)} chars)")
