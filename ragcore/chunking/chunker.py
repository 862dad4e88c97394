"""
Markdown Chunker
-----------------
Splits a normalized markdown document into overlapping chunks whose edges
fall on semantic breaks, and tags each chunk with its heading path.

Pipeline per document:
  1. Parse structural blocks (headings, paragraphs, list items, code fences).
  2. Cut the block sequence into segments at every heading whose level is in
     `boundary_heading_levels`. Chunks never cross a segment edge.
  3. Inside a segment, lay chunk starts on a regular grid with stride
     target * (1 - overlap_ratio) and snap every edge back to the nearest
     break point. Break strengths: block edge (3) > sentence end (2) >
     whitespace (1); inside a small window below the limit the strongest
     break wins, otherwise the nearest one does.
  4. Code fences are atomic. A fence longer than the target becomes its own
     chunk, flagged `exceeds_target`.

Every edge is either a segment edge or borders whitespace, so chunk text
never starts or ends mid-word. The output is fully deterministic.
"""
from __future__ import annotations

import re
from bisect import bisect_left, bisect_right
from typing import Iterable, Optional

from loguru import logger

from ragcore.chunking.markdown import Block, HeadingTrail, parse_blocks
from ragcore.config import ChunkerConfig
from ragcore.errors import ChunkingError
from ragcore.schemas import Chunk, Document

BLOCK_BREAK = 3
SENTENCE_BREAK = 2
WORD_BREAK = 1

_SENTENCE_RE = re.compile(r"[.!?]+[\"')\]]*(\s+)")
_SPACE_RE = re.compile(r"\s+")


class _Breaks:
    """Sorted break positions with strengths, queried by range."""

    def __init__(self, strengths: dict[int, int]) -> None:
        self.pos = sorted(strengths)
        self.strength = [strengths[p] for p in self.pos]

    def snap_back(self, lo: int, hi: int, window: int) -> Optional[int]:
        """
        Best break p with lo < p <= hi: the strongest inside [hi - window, hi]
        (ties to the larger position), else the largest p in range.
        """
        i_lo = bisect_right(self.pos, lo)
        i_hi = bisect_right(self.pos, hi)
        if i_lo >= i_hi:
            return None
        best: Optional[tuple[int, int]] = None
        for i in range(i_hi - 1, i_lo - 1, -1):
            p = self.pos[i]
            if p < hi - window:
                break
            key = (self.strength[i], p)
            if best is None or key > best:
                best = key
        if best is not None:
            return best[1]
        return self.pos[i_hi - 1]

    def first_at_or_after(self, x: int) -> Optional[int]:
        i = bisect_left(self.pos, x)
        return self.pos[i] if i < len(self.pos) else None

    def first_after(self, x: int) -> Optional[int]:
        i = bisect_right(self.pos, x)
        return self.pos[i] if i < len(self.pos) else None


def _segment_breaks(text: str, blocks: list[Block]) -> tuple[_Breaks, _Breaks]:
    """Collect (end-break, start-break) positions for one segment."""
    ends: dict[int, int] = {}
    starts: dict[int, int] = {}

    def put(d: dict[int, int], pos: int, strength: int) -> None:
        if d.get(pos, 0) < strength:
            d[pos] = strength

    for i, block in enumerate(blocks):
        if i > 0:
            put(starts, block.start, BLOCK_BREAK)
        # A heading introduces what follows; never end a chunk right after one.
        if block.kind != "heading" or i == len(blocks) - 1:
            put(ends, block.end, BLOCK_BREAK)
        if block.atomic or block.kind == "heading":
            continue
        for m in _SENTENCE_RE.finditer(text, block.start, block.end):
            put(ends, m.start(1), SENTENCE_BREAK)
            put(starts, m.end(1), SENTENCE_BREAK)
        for m in _SPACE_RE.finditer(text, block.start, block.end):
            put(ends, m.start(), WORD_BREAK)
            put(starts, m.end(), WORD_BREAK)

    return _Breaks(ends), _Breaks(starts)


def split_segments(blocks: list[Block], boundary_levels: Iterable[int]) -> list[list[Block]]:
    """Partition blocks at headings whose level forces a hard break."""
    levels = set(boundary_levels)
    segments: list[list[Block]] = []
    current: list[Block] = []
    for block in blocks:
        if block.kind == "heading" and block.level in levels and current:
            segments.append(current)
            current = []
        current.append(block)
    if current:
        segments.append(current)
    return segments


# --- Main Chunker ---------------------------------------------------------------

class MarkdownChunker:
    """
    Structure-aware, overlapping chunker.

    Usage:
        chunker = MarkdownChunker(ChunkerConfig(target_chunk_size=1600))
        chunks = chunker.chunk_document(Document(origin="a.md", full_text=text))
    """

    def __init__(self, config: Optional[ChunkerConfig] = None) -> None:
        self.config = config or ChunkerConfig()
        target = self.config.target_chunk_size
        self.target = target
        self.overlap = int(round(target * self.config.overlap_ratio))
        self.stride = max(1, target - self.overlap)
        self.window = max(1, target // 8)

    def chunk_document(self, doc: Document) -> list[Chunk]:
        """
        Chunk a single document.

        Raises:
            ChunkingError: the document is structurally malformed.
        """
        text = doc.full_text
        blocks = parse_blocks(text, origin=doc.origin)
        trail = HeadingTrail(blocks)

        chunks: list[Chunk] = []
        segments = split_segments(blocks, self.config.boundary_heading_levels)
        for segment in segments:
            for start, end, forced in self._chunk_segment(text, segment):
                chunks.append(
                    Chunk(
                        doc_id=doc.doc_id,
                        origin=doc.origin,
                        text=text[start:end],
                        start_offset=start,
                        end_offset=end,
                        heading_path=trail.path_at(start),
                        exceeds_target=forced,
                    )
                )
                if forced:
                    logger.debug(
                        f"[Chunker] {doc.origin} | block at {start}-{end} is "
                        f"{end - start} chars, exceeds target {self.target}"
                    )

        logger.debug(
            f"[Chunker] {doc.origin} | {len(text)} chars | {len(blocks)} blocks | "
            f"{len(segments)} segment(s) -> {len(chunks)} chunk(s)"
        )
        return chunks

    def chunk_batch(self, docs: Iterable[Document]) -> tuple[list[Chunk], list[ChunkingError]]:
        """
        Chunk many documents. Malformed documents are skipped and reported,
        never fatal for the batch.
        """
        all_chunks: list[Chunk] = []
        failures: list[ChunkingError] = []
        for doc in docs:
            try:
                all_chunks.extend(self.chunk_document(doc))
            except ChunkingError as exc:
                logger.warning(f"[Chunker] Skipping document: {exc}")
                failures.append(exc)
        return all_chunks, failures

    # --- Segment walk -----------------------------------------------------------

    def _chunk_segment(self, text: str, blocks: list[Block]) -> list[tuple[int, int, bool]]:
        if not blocks:
            return []
        seg_start = blocks[0].start
        seg_end = blocks[-1].end
        if seg_end <= seg_start:
            return []

        ends, starts = _segment_breaks(text, blocks)
        target, window = self.target, self.window

        spans: list[tuple[int, int, bool]] = []
        start = nominal = seg_start
        prev_end: Optional[int] = None

        while True:
            if seg_end - start <= target:
                spans.append((start, seg_end, False))
                break

            # Tail fits from the grid position: pull the start forward instead
            # of emitting one more sliver chunk, as long as coverage is kept.
            if prev_end is not None and seg_end - nominal <= target:
                tail = starts.first_at_or_after(seg_end - target)
                if tail is not None and start < tail <= prev_end:
                    spans.append((tail, seg_end, False))
                    break

            lo = start if prev_end is None else max(start, prev_end)
            end = ends.snap_back(lo, start + target, window)

            if end is None and prev_end is not None and prev_end > start:
                # The overlap leaves no room for new content; restart right
                # after the previous chunk.
                restart = starts.first_at_or_after(prev_end)
                if restart is None or restart >= seg_end:
                    break
                start = restart
                if seg_end - start <= target:
                    spans.append((start, seg_end, False))
                    break
                end = ends.snap_back(start, start + target, window)

            forced = False
            if end is None:
                end = ends.first_after(start + target) or seg_end
                forced = True

            spans.append((start, end, forced))
            prev_end = end
            if end >= seg_end:
                break

            after_end = starts.first_at_or_after(end)
            if after_end is None or after_end >= seg_end:
                break
            if self.overlap == 0:
                start = nominal = after_end
                continue
            nominal = max(nominal + self.stride, end - self.overlap)
            nxt = starts.snap_back(start, min(nominal, after_end), window)
            start = nxt if nxt is not None else after_end

        return spans


def chunk(document: Document, config: Optional[ChunkerConfig] = None) -> list[Chunk]:
    """Chunk one document with the given configuration (no embeddings)."""
    return MarkdownChunker(config).chunk_document(document)
