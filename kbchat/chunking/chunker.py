"""
kbchat - Text Segmenters
-------------------------
Splits extracted document text into overlapping windows for embedding.

Two strategies share the TextSegmenter interface so the ingestion pipeline
never depends on how text is cut:

  - OVERLAP (default): character windows of `chunk_size` with `overlap`
    characters carried into the next window.  Each window end is pulled back
    to the last sentence terminator (. ? !) if one sits in the final 100
    characters, else to the last space in the final 50 characters, else the
    window is cut where it lands.

  - TOKEN: fixed windows of BPE tokens (tiktoken cl100k_base) with a token
    stride, for callers who want token-bounded chunks.

Both drop windows shorter than `min_chunk_chars` after trimming.  Neither
involves randomness, so segmenting the same text twice yields the same
sequence.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

import tiktoken
from loguru import logger

from kbchat.chunking.schemas import TextSegment

# ── Constants ─────────────────────────────────────────────────────────────────

CHUNK_SIZE = 800
OVERLAP = 300
MIN_CHUNK_CHARS = 50
SENTENCE_LOOKBACK = 100   # sentence cut must land in the window's last N chars
SPACE_LOOKBACK = 50       # word cut must land in the window's last N chars
SENTENCE_TERMINATORS = ".?!"

TOKEN_WINDOW = 256
TOKEN_OVERLAP = 64


class TextSegmenter(ABC):
    """Strategy interface: text in, ordered segments out."""

    name: str

    @abstractmethod
    def segment(self, text: str) -> list[TextSegment]:
        ...

    def split(self, text: str) -> list[str]:
        """Convenience: segment texts only."""
        return [s.text for s in self.segment(text)]


# ── Overlapping character windows ─────────────────────────────────────────────

class OverlapSegmenter(TextSegmenter):
    """
    Character-window segmenter with sentence/word boundary preference.

    Usage:
        segmenter = OverlapSegmenter()
        segments = segmenter.segment(text)
    """

    name = "overlap"

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        overlap: int = OVERLAP,
        min_chunk_chars: int = MIN_CHUNK_CHARS,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if overlap < 0:
            raise ValueError("overlap must not be negative")
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.min_chunk_chars = min_chunk_chars

    def segment(self, text: str) -> list[TextSegment]:
        segments: list[TextSegment] = []
        length = len(text)
        start = 0

        while start < length:
            end = min(start + self.chunk_size, length)
            if end < length:
                end = self._boundary(text, start, end)

            chunk = text[start:end].strip()
            if chunk:
                segments.append(TextSegment(text=chunk, start=start, end=end))

            if end >= length:
                break

            next_start = end - self.overlap
            # overlap >= window length would stall or walk backwards
            start = next_start if next_start > start else end

        kept = [s for s in segments if len(s.text) >= self.min_chunk_chars]
        logger.debug(
            f"[Segmenter] overlap | {length} chars -> {len(kept)} segment(s) "
            f"({len(segments) - len(kept)} dropped as too short)"
        )
        return kept

    def _boundary(self, text: str, start: int, naive_end: int) -> int:
        """Pull a window end back to a sentence or word boundary when one is close."""
        last_sentence = max(text.rfind(t, start, naive_end) for t in SENTENCE_TERMINATORS)
        if last_sentence >= start and last_sentence > naive_end - SENTENCE_LOOKBACK:
            return last_sentence + 1

        last_space = text.rfind(" ", start, naive_end)
        if last_space > start and last_space > naive_end - SPACE_LOOKBACK:
            return last_space

        return naive_end


# ── Token windows ─────────────────────────────────────────────────────────────

_ENC = None


def _encoder():
    global _ENC
    if _ENC is None:
        _ENC = tiktoken.get_encoding("cl100k_base")
    return _ENC


def count_tokens(text: str) -> int:
    """Count BPE tokens using the cl100k_base encoder."""
    return len(_encoder().encode(text))


class TokenWindowSegmenter(TextSegmenter):
    """Fixed token windows with a token overlap (cl100k_base)."""

    name = "token"

    def __init__(
        self,
        window_tokens: int = TOKEN_WINDOW,
        overlap_tokens: int = TOKEN_OVERLAP,
        min_chunk_chars: int = MIN_CHUNK_CHARS,
    ) -> None:
        if overlap_tokens >= window_tokens:
            raise ValueError("overlap_tokens must be smaller than window_tokens")
        self.window_tokens = window_tokens
        self.overlap_tokens = overlap_tokens
        self.min_chunk_chars = min_chunk_chars

    def segment(self, text: str) -> list[TextSegment]:
        enc = _encoder()
        tokens = enc.encode(text)
        stride = self.window_tokens - self.overlap_tokens
        segments: list[TextSegment] = []

        # Character offsets are recovered by decoding the token prefix.
        i = 0
        while i < len(tokens):
            window = tokens[i: i + self.window_tokens]
            start = len(enc.decode(tokens[:i]))
            raw = enc.decode(window)
            chunk = raw.strip()
            if len(chunk) >= self.min_chunk_chars:
                segments.append(TextSegment(text=chunk, start=start, end=start + len(raw)))
            if i + self.window_tokens >= len(tokens):
                break
            i += stride

        logger.debug(f"[Segmenter] token | {len(tokens)} tokens -> {len(segments)} segment(s)")
        return segments


def build_segmenter(
    strategy: str = "overlap",
    chunk_size: int = CHUNK_SIZE,
    overlap: int = OVERLAP,
    min_chunk_chars: int = MIN_CHUNK_CHARS,
    token_window: int = TOKEN_WINDOW,
    token_overlap: int = TOKEN_OVERLAP,
) -> TextSegmenter:
    """Pick a segmenter by config name."""
    if strategy == "token":
        return TokenWindowSegmenter(token_window, token_overlap, min_chunk_chars)
    if strategy == "overlap":
        return OverlapSegmenter(chunk_size, overlap, min_chunk_chars)
    raise ValueError(f"Unknown chunking strategy: {strategy!r}")
