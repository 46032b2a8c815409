"""Text chunking — split normalized text into overlapping, size-bounded passages.

Chunks are exact slices of the source text (``content ==
text[start_char:end_char]``).  Paragraphs are packed greedily; a paragraph
that does not fit on its own is broken at sentence boundaries, and a
sentence that still does not fit is broken at whitespace.  Adjacent chunks
either share at most ``chunk_overlap`` characters or meet exactly, so
dropping each chunk's overlap and concatenating the rest gives back the
text.  Without an overlap the separating whitespace opens the next chunk.
"""

from __future__ import annotations

import math
import re
from collections import deque

from pydantic import BaseModel, Field, model_validator

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")

Span = tuple[int, int]


class ChunkingOptions(BaseModel):
    """Size and overlap discipline for :func:`chunk_text`.

    Attributes
    ----------
    chunk_size:
        Maximum number of characters per chunk.
    chunk_overlap:
        Maximum number of characters shared by adjacent chunks.
    min_chunk_size:
        A buffer shorter than this keeps accumulating instead of being emitted.
    preserve_paragraphs:
        Pack whole paragraphs (``True``) or use a fixed sliding window.
    """

    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=200, ge=0)
    min_chunk_size: int = Field(default=100, ge=0)
    preserve_paragraphs: bool = True

    @model_validator(mode="after")
    def _check_bounds(self) -> ChunkingOptions:
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if self.min_chunk_size > self.chunk_size:
            raise ValueError("min_chunk_size must not exceed chunk_size")
        return self

    @classmethod
    def from_settings(cls) -> ChunkingOptions:
        from nexusgov_rag.config import settings

        return cls(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            min_chunk_size=settings.min_chunk_size,
            preserve_paragraphs=settings.preserve_paragraphs,
        )


class Chunk(BaseModel):
    """One passage of a document — the unit of embedding and retrieval."""

    content: str
    index: int
    start_char: int
    end_char: int
    token_count: int


class ChunkingStats(BaseModel):
    chunk_count: int = 0
    avg_chunk_size: float = 0.0
    min_chunk_size: int = 0
    max_chunk_size: int = 0
    avg_tokens: float = 0.0
    total_tokens: int = 0


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / 4)


# ---------------------------------------------------------------------------
# Span helpers
# ---------------------------------------------------------------------------


def _trim(text: str, start: int, end: int) -> Span:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def _split_on(text: str, start: int, end: int, pattern: re.Pattern[str]) -> list[Span]:
    """Non-empty, whitespace-trimmed spans of ``text[start:end]`` between *pattern* matches."""
    spans: list[Span] = []
    pos = start
    for match in pattern.finditer(text, start, end):
        spans.append(_trim(text, pos, match.start()))
        pos = match.end()
    spans.append(_trim(text, pos, end))
    return [(a, b) for a, b in spans if b > a]


def _whitespace_cut(text: str, lo: int, hi: int) -> int | None:
    """End of the content before the last whitespace run in ``(lo, hi]``."""
    for pos in range(hi, lo, -1):
        if text[pos].isspace():
            _, left_end = _trim(text, lo, pos)
            return left_end
    return None


def _split_to_fit(text: str, start: int, end: int, size: int) -> list[Span]:
    """Break ``text[start:end]`` into contiguous pieces of at most *size*, at whitespace where possible."""
    pieces: list[Span] = []
    while end - start > size:
        cut = _whitespace_cut(text, start + size // 2, start + size)
        stop = start + size if cut is None or cut <= start else cut
        pieces.append((start, stop))
        start = stop
    pieces.append((start, end))
    return pieces


def _units(text: str, size: int) -> list[Span]:
    """Contiguous spans covering *text*: paragraphs, over-long ones broken into sentences.

    Each unit carries the whitespace that precedes it, so the units tile the
    text with nothing in between.
    """
    units: list[Span] = []
    pos = 0
    for start, end in _split_on(text, 0, len(text), _PARAGRAPH_BREAK):
        if end - pos <= size:
            units.append((pos, end))
            pos = end
            continue
        for _, s_end in _split_on(text, start, end, _SENTENCE_BREAK):
            if s_end - pos <= size:
                units.append((pos, s_end))
            else:
                units.extend(_split_to_fit(text, pos, s_end, size))
            pos = s_end
    if units and len(text) - units[-1][0] <= size:
        units[-1] = (units[-1][0], len(text))
    return units


def _snap_forward(text: str, pos: int, limit: int) -> int:
    """Move *pos* off a mid-word position and past whitespace, never beyond *limit*."""
    if 0 < pos < limit and not text[pos - 1].isspace() and not text[pos].isspace():
        while pos < limit and not text[pos].isspace():
            pos += 1
    while pos < limit and text[pos].isspace():
        pos += 1
    return pos


def _next_start(text: str, prev: Span, unit: Span, opts: ChunkingOptions) -> int:
    """Start of the buffer following *prev*: inside its overlap tail, never past its end.

    *unit* begins where *prev* ends, so the result leaves no gap; it is also
    bounded so that *unit* still fits in one chunk.
    """
    prev_start, prev_end = prev
    unit_start, unit_end = unit
    start = max(prev_start + 1, prev_end - opts.chunk_overlap, unit_end - opts.chunk_size)
    return _snap_forward(text, min(start, unit_start), unit_start)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _paragraph_spans(text: str, opts: ChunkingOptions) -> list[Span]:
    pending = deque(_units(text, opts.chunk_size))
    if not pending:
        return []

    spans: list[Span] = []
    buf_start, buf_end = pending.popleft()
    while pending:
        unit_start, unit_end = pending.popleft()
        if unit_end - buf_start <= opts.chunk_size:
            buf_end = unit_end
            continue

        if buf_end - buf_start < opts.min_chunk_size:
            # Too small to stand alone: top the buffer up with the head of the unit.
            cut = _whitespace_cut(text, unit_start, buf_start + opts.chunk_size)
            if cut is not None:
                buf_end = unit_start = cut

        spans.append((buf_start, buf_end))
        buf_start = _next_start(text, (buf_start, buf_end), (unit_start, unit_end), opts)
        buf_end = unit_end

    spans.append((buf_start, buf_end))
    return spans


def _window_spans(text: str, opts: ChunkingOptions) -> list[Span]:
    spans: list[Span] = []
    start = 0
    while True:
        end = min(start + opts.chunk_size, len(text))
        spans.append((start, end))
        if end >= len(text):
            return spans
        start = end - opts.chunk_overlap


def chunk_text(text: str, options: ChunkingOptions | None = None) -> list[Chunk]:
    """Split *text* into ordered, overlapping chunks.

    Parameters
    ----------
    text:
        Normalized document text.
    options:
        Size / overlap settings; defaults to :class:`ChunkingOptions()`.

    Returns
    -------
    list[Chunk]
        Chunks indexed from 0, each at most ``chunk_size`` characters.
    """
    opts = options or ChunkingOptions()
    if not text:
        return []
    if len(text) <= opts.chunk_size:
        spans = [(0, len(text))]
    elif opts.preserve_paragraphs:
        spans = _paragraph_spans(text, opts)
    else:
        spans = _window_spans(text, opts)

    return [
        Chunk(
            content=text[start:end],
            index=i,
            start_char=start,
            end_char=end,
            token_count=estimate_tokens(text[start:end]),
        )
        for i, (start, end) in enumerate(spans)
    ]


def get_chunking_stats(chunks: list[Chunk]) -> ChunkingStats:
    if not chunks:
        return ChunkingStats()
    sizes = [len(c.content) for c in chunks]
    tokens = [c.token_count for c in chunks]
    return ChunkingStats(
        chunk_count=len(chunks),
        avg_chunk_size=sum(sizes) / len(sizes),
        min_chunk_size=min(sizes),
        max_chunk_size=max(sizes),
        avg_tokens=sum(tokens) / len(tokens),
        total_tokens=sum(tokens),
    )
