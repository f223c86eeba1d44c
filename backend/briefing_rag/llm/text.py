"""
Helpers for treating LLM output as untrusted text.

Models wrap JSON in code fences, prepend reasoning inside <think> tags, or
add a sentence of commentary around the payload. These helpers recover the
payload without trusting any of that framing.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Iterator

THINK_BLOCK_PATTERN = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
THINK_CLOSE_TAG = "</think>"
THINK_OPEN_TAG = "<think>"

CODE_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)

_OPENERS = {"{": "}", "[": "]"}


def strip_reasoning(text: str) -> str:
    """
    Remove chain-of-thought from a complete (non-streamed) response.

    When a closing tag is present everything before the last one is dropped,
    which also covers responses that omit the opening tag.
    """
    if not text:
        return ""
    if THINK_CLOSE_TAG in text:
        return text.rsplit(THINK_CLOSE_TAG, 1)[1].strip()
    return THINK_BLOCK_PATTERN.sub("", text).strip()


def _balanced_span(text: str, start: int) -> str | None:
    """Balanced bracket span opening at ``text[start]``, ignoring brackets in strings."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
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
        elif char in ("}", "]"):
            if not stack or stack.pop() != char:
                return None
            if not stack:
                return text[start : index + 1]
    return None


def _iter_json_spans(text: str) -> Iterator[tuple[str, Any]]:
    """
    Yield ``(span, value)`` for every JSON object or array in ``text``.

    Each ``{`` or ``[`` is tried as a starting point, left to right, so
    bracketed prose such as ``I compared [2] and [5].`` does not hide a
    payload that follows it. Spans that are not valid JSON are skipped.
    """
    for start, char in enumerate(text):
        if char not in _OPENERS:
            continue
        span = _balanced_span(text, start)
        if span is None:
            continue
        try:
            yield span, json.loads(span)
        except json.JSONDecodeError:
            continue


def iter_json_values(text: str) -> Iterator[Any]:
    """Yield every JSON object or array embedded in ``text``, left to right."""
    for _span, value in _iter_json_spans(text):
        yield value


def extract_json_span(text: str) -> str | None:
    """Return the first balanced span in ``text`` that parses as JSON, or None."""
    for span, _value in _iter_json_spans(text):
        return span
    return None


def parse_json_payload(text: str, accept: Callable[[Any], bool] | None = None) -> Any:
    """
    Parse the JSON payload embedded in an LLM response.

    Args:
        text: Raw model output.
        accept: Shape check. The first embedded value it accepts is
            returned; without it the first valid value is.

    Raises:
        ValueError: If no embedded JSON value is found or accepted.
    """
    cleaned = strip_reasoning(text or "")
    fenced = CODE_FENCE_PATTERN.search(cleaned)
    if fenced:
        cleaned = fenced.group(1)

    for value in iter_json_values(cleaned):
        if accept is None or accept(value):
            return value
    raise ValueError(f"No usable JSON payload in response: {cleaned[:80]!r}")


class ThinkingStreamFilter:
    """
    Hide chain-of-thought in a streamed response.

    Reasoning models are buffered until ``</think>`` arrives; only what follows
    is released. If the closing tag never arrives the buffer is flushed at the
    end so no answer is lost. For other models the first characters are
    inspected and buffering only starts when they open a ``<think>`` block.
    """

    def __init__(self, expect_reasoning: bool = False) -> None:
        self._buffer = ""
        self._buffering = expect_reasoning
        self._decided = expect_reasoning
        self._done_thinking = False

    def feed(self, chunk: str) -> str:
        """Consume a chunk and return the text that may be shown now."""
        if self._done_thinking:
            return chunk

        self._buffer += chunk

        if not self._decided:
            head = self._buffer.lstrip()
            if len(head) < len(THINK_OPEN_TAG) and THINK_OPEN_TAG.startswith(head.lower()):
                return ""
            self._decided = True
            self._buffering = head.lower().startswith(THINK_OPEN_TAG)
            if not self._buffering:
                self._done_thinking = True
                released, self._buffer = self._buffer, ""
                return released

        if THINK_CLOSE_TAG in self._buffer:
            self._done_thinking = True
            released = self._buffer.split(THINK_CLOSE_TAG, 1)[1]
            self._buffer = ""
            return released.lstrip("\n")
        return ""

    def flush(self) -> str:
        """Release whatever is still buffered once the stream has ended."""
        released, self._buffer = self._buffer, ""
        if self._done_thinking:
            return released
        return THINK_BLOCK_PATTERN.sub("", released).replace(THINK_OPEN_TAG, "")


__all__ = [
    "strip_reasoning",
    "extract_json_span",
    "iter_json_values",
    "parse_json_payload",
    "ThinkingStreamFilter",
]
