"""Incremental segmentation of streamed model output.

Models are instructed to wrap every chat message in ``<msg>...</msg>``
tags. The segmenter consumes the token stream delta by delta and emits each
message as soon as its closing tag arrives, discarding ``<think>``
reasoning spans along the way.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_PATTERN = re.compile(r"<think>[\s\S]*?</think>")
MSG_PATTERN = re.compile(r"<msg(?:[^>]*)>([\s\S]*?)</msg>")
STRAY_MSG_TAG_PATTERN = re.compile(r"</?msg(?:[^>]*)>")

FORMAT_WARNING = (
    "\n\n---\n*Warning: LLM did not correctly format this part of the message. "
    "It should have been wrapped in `<msg>` tags.*"
)

DONE = object()


@dataclass(frozen=True)
class Segment:
    """One message ready for delivery.

    Attributes:
        text: What is posted to the channel
        persisted: What is stored as the assistant turn
        formatted: False for leftover text that was never wrapped in tags
    """
    text: str
    persisted: str
    formatted: bool = True

    @property
    def reply_text(self) -> str:
        """Text relayed to other agents, without any warning suffix."""
        if self.formatted:
            return self.text
        return self.text[: -len(FORMAT_WARNING)]


class StreamSegmenter:
    """Turns a stream of text deltas into closed message segments."""

    def __init__(self):
        self._buffer = ""
        self._finished = False

    @property
    def buffer(self) -> str:
        """Text received but not yet emitted."""
        return self._buffer

    def feed(self, delta: str) -> list[Segment]:
        """Consume one delta and return the segments it completed."""
        if self._finished:
            raise RuntimeError("Segmenter already finished")
        if not delta:
            return []

        self._buffer = THINK_PATTERN.sub("", self._buffer + delta)

        # Nothing after an unclosed <think> is emitted until it closes
        open_think = self._buffer.find(THINK_OPEN)
        scannable = self._buffer if open_think == -1 else self._buffer[:open_think]

        segments = []
        last_end = 0
        for match in MSG_PATTERN.finditer(scannable):
            inner = match.group(1)
            if inner.strip():
                segments.append(Segment(text=inner.strip(), persisted=match.group(0)))
            last_end = match.end()

        self._buffer = self._buffer[last_end:]
        return segments

    def finish(self) -> list[Segment]:
        """Flush whatever remains once the stream has ended.

        Leftover text outside any complete tag is delivered with a warning
        suffix and persisted wrapped in a bare ``<msg>`` tag.
        """
        if self._finished:
            return []
        self._finished = True

        leftover = THINK_PATTERN.sub("", self._buffer)
        leftover = STRAY_MSG_TAG_PATTERN.sub("", leftover).strip()
        self._buffer = ""
        if not leftover:
            return []

        logger.debug(f"Stream ended with {len(leftover)} characters outside <msg> tags")
        return [
            Segment(
                text=leftover + FORMAT_WARNING,
                persisted=f"<msg>{leftover}</msg>",
                formatted=False,
            )
        ]


def parse_stream_line(line: str):
    """Extract the content delta from one server-sent events line.

    Returns:
        The delta text (possibly empty), ``DONE`` for the end marker, or None
        for lines that carry no chunk (comments, blank keep-alives, other
        fields and malformed JSON)
    """
    if not line.startswith("data:"):
        return None

    data = line[5:].strip()
    if data == "[DONE]":
        return DONE

    try:
        chunk = json.loads(data)
        choices = chunk.get("choices") or []
        if not choices:
            return ""
        delta = choices[0].get("delta") or {}
        return delta.get("content") or ""
    except (json.JSONDecodeError, AttributeError, TypeError) as e:
        logger.debug(f"Skipping malformed stream chunk: {e}")
        return None
