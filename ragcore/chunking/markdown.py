"""
Markdown block parser
----------------------
Splits normalized markdown into structural blocks with exact character
offsets, which the chunker uses as its strongest break points:

  - heading     ATX headings (# .. ######), with level and title
  - code        fenced code blocks (``` or ~~~); atomic, never split
  - list_item   a list marker line plus its continuation lines
  - paragraph   consecutive non-blank lines

Offsets index the original string: `start` is the first non-blank character
of the block, `end` is the end of its last line (trailing newline excluded).
"""
from __future__ import annotations

import re
from bisect import bisect_right
from dataclasses import dataclass
from typing import Optional

from ragcore.errors import ChunkingError

_HEADING_RE = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+(.*?))?(?:[ \t]+#+)?[ \t]*$")
_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})(.*)$")
_LIST_RE = re.compile(r"^[ \t]*(?:[-*+]|\d{1,9}[.)])[ \t]+\S")


@dataclass(frozen=True)
class Block:
    kind: str                    # "heading" | "code" | "list_item" | "paragraph"
    start: int
    end: int
    level: int = 0               # heading level, 0 for other blocks
    title: Optional[str] = None  # heading text

    @property
    def atomic(self) -> bool:
        return self.kind == "code"


def _lines(text: str) -> list[tuple[int, int]]:
    """(start, end) offsets of every line, end excluding the newline."""
    spans = []
    pos = 0
    n = len(text)
    while pos < n:
        nl = text.find("\n", pos)
        if nl == -1:
            spans.append((pos, n))
            break
        spans.append((pos, nl))
        pos = nl + 1
    return spans


def _first_non_blank(text: str, start: int, end: int) -> int:
    i = start
    while i < end and text[i] in " \t\r":
        i += 1
    return i


def _rstrip_end(text: str, start: int, end: int) -> int:
    j = end
    while j > start and text[j - 1] in " \t\r":
        j -= 1
    return j


def parse_blocks(text: str, origin: Optional[str] = None) -> list[Block]:
    """
    Parse markdown into blocks in document order.

    Raises:
        ChunkingError: a code fence is opened but never closed.
    """
    blocks: list[Block] = []

    # Open (non-fence) block being accumulated: [kind, start, end]
    current: Optional[list] = None
    # Open fence: (marker_char, marker_len, block_start)
    fence: Optional[tuple[str, int, int]] = None

    def flush() -> None:
        nonlocal current
        if current is not None:
            blocks.append(Block(kind=current[0], start=current[1], end=current[2]))
            current = None

    for line_start, line_end in _lines(text):
        line = text[line_start:line_end]
        content_start = _first_non_blank(text, line_start, line_end)
        content_end = _rstrip_end(text, line_start, line_end)

        if fence is not None:
            marker, marker_len, fence_start = fence
            stripped = line.strip()
            if (
                len(stripped) >= marker_len
                and set(stripped) == {marker}
                and len(line) - len(line.lstrip(" ")) <= 3
            ):
                blocks.append(Block(kind="code", start=fence_start, end=content_end))
                fence = None
            continue

        if content_start >= content_end:
            flush()
            continue

        m = _FENCE_RE.match(line)
        if m and not (m.group(1)[0] == "`" and "`" in m.group(2)):
            flush()
            fence = (m.group(1)[0], len(m.group(1)), content_start)
            continue

        m = _HEADING_RE.match(line.rstrip("\r"))
        if m:
            flush()
            title = (m.group(2) or "").strip()
            blocks.append(
                Block(
                    kind="heading",
                    start=content_start,
                    end=content_end,
                    level=len(m.group(1)),
                    title=title,
                )
            )
            continue

        if _LIST_RE.match(line):
            flush()
            current = ["list_item", content_start, content_end]
            continue

        if current is None:
            current = ["paragraph", content_start, content_end]
        else:
            current[2] = content_end

    if fence is not None:
        raise ChunkingError("Unterminated code fence", origin=origin, offset=fence[2])

    flush()
    return blocks


class HeadingTrail:
    """
    Answers "which headings enclose this offset?" in O(log n).

    A heading of level n closes every open heading of level >= n. Paths are
    root-first: the outermost heading comes first.
    """

    def __init__(self, blocks: list[Block]) -> None:
        self._starts: list[int] = []
        self._paths: list[tuple[str, ...]] = []
        stack: list[tuple[int, str]] = []
        for block in blocks:
            if block.kind != "heading":
                continue
            while stack and stack[-1][0] >= block.level:
                stack.pop()
            stack.append((block.level, block.title or ""))
            self._starts.append(block.start)
            self._paths.append(tuple(title for _, title in stack))

    def path_at(self, offset: int) -> list[str]:
        i = bisect_right(self._starts, offset)
        if i == 0:
            return []
        return list(self._paths[i - 1])
