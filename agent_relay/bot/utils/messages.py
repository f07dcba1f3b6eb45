"""Shared message utilities for agent routing and Discord replies."""

from __future__ import annotations

import re
from typing import Optional

# Discord rejects messages above 2000 characters; keep room for formatting
DEFAULT_CHUNK_SIZE = 1900

AGENT_PREFIX_PATTERN = re.compile(r"^@([^\s@]+)\b")


def split_message(text: str, max_length: int = DEFAULT_CHUNK_SIZE) -> list[str]:
    """Split text into chunks no longer than ``max_length``, breaking at newlines.

    A single line longer than the limit is cut into fixed-size pieces.
    """
    chunks: list[str] = []
    buffer = ""

    for line in text.split("\n"):
        while len(line) > max_length:
            if buffer:
                chunks.append(buffer)
                buffer = ""
            chunks.append(line[:max_length])
            line = line[max_length:]

        if buffer and len(buffer) + len(line) + 1 > max_length:
            chunks.append(buffer)
            buffer = ""
        buffer = f"{buffer}\n{line}" if buffer else line

    if buffer:
        chunks.append(buffer)
    return chunks


def name_pattern(name: str) -> re.Pattern:
    """Case-insensitive whole-word pattern for an agent name."""
    return re.compile(rf"(?<!\w){re.escape(name)}(?!\w)", re.IGNORECASE)


def mentions_name(text: str, name: str) -> bool:
    """Check if an agent name occurs in text as a whole word."""
    if not name:
        return False
    return bool(name_pattern(name).search(text))


def parse_agent_prefix(text: str) -> Optional[tuple[str, str]]:
    """Split a leading ``@Name`` prefix off a message.

    Returns:
        ``(name, remaining_text)`` or None when the text has no prefix
    """
    match = AGENT_PREFIX_PATTERN.match(text)
    if not match:
        return None
    return match.group(1), text[match.end():].strip()
