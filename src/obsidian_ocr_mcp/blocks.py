"""Split markdown notes into headings, list items and paragraphs."""

from __future__ import annotations

import re
from dataclasses import dataclass

HEADING_PATTERN = re.compile(r"^#{1,6}\s")
BULLET_PATTERNS = (
    re.compile(r"^[-*+•]\s"),
    re.compile(r"^\d+\.\s"),
    re.compile(r"^[a-zA-Z]\.\s"),
)


@dataclass(frozen=True, slots=True)
class Block:
    content: str
    start_line: int
    end_line: int
    is_title: bool = False


def is_title(line: str) -> bool:
    return HEADING_PATTERN.match(line.strip()) is not None


def is_bullet_point(line: str) -> bool:
    trimmed = line.strip()
    return any(pattern.match(trimmed) for pattern in BULLET_PATTERNS)


def segment(text: str) -> list[Block]:
    """Split *text* into blocks with 1-based, inclusive line ranges.

    Headings and list items are single-line blocks; runs of other lines
    separated by blank lines form paragraphs.
    """

    blocks: list[Block] = []
    buffer: list[str] = []
    buffer_start = 0

    def flush(end_line: int) -> None:
        content = "\n".join(buffer).strip()
        if content:
            blocks.append(Block(content, buffer_start, end_line))
        buffer.clear()

    lines = text.replace("\r\n", "\n").split("\n")
    for number, line in enumerate(lines, start=1):
        if is_title(line):
            flush(number - 1)
            blocks.append(Block(line, number, number, is_title=True))
        elif is_bullet_point(line):
            flush(number - 1)
            blocks.append(Block(line, number, number))
        elif not line.strip():
            flush(number - 1)
        else:
            if not buffer:
                buffer_start = number
            buffer.append(line)

    flush(len(lines))
    return blocks
