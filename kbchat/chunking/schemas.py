"""
Segment schema - the unit a segmenter hands to the ingestion pipeline.

Offsets index into the extracted text the segment was cut from, so
neighbouring segments can be checked for overlap and coverage.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TextSegment:
    """A trimmed window of extracted text and the raw span it came from."""

    text: str        # trimmed window text, what gets embedded
    start: int       # raw window start offset (inclusive)
    end: int         # raw window end offset (exclusive)

    def __len__(self) -> int:
        return len(self.text)
