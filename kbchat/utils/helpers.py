"""Shared utility functions used across kbchat."""
from __future__ import annotations

import re
from datetime import datetime, timezone


# --- Text Utilities -----------------------------------------------------------

def collapse_whitespace(text: str) -> str:
    """Collapse every whitespace run to one space and trim."""
    return re.sub(r"\s+", " ", text).strip()


def truncate_text(text: str, max_chars: int = 300) -> str:
    """Truncate text for display purposes."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def file_extension(filename: str) -> str:
    """Return the part after the last dot, or the whole name when there is none."""
    return filename.rsplit(".", 1)[-1]
