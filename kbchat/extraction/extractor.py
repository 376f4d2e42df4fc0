"""
Text Extractor
---------------
Turns an uploaded file into one flat string.

  text/plain       -> UTF-8 decode (undecodable bytes replaced)
  application/pdf  -> PyPDF2, page by page: the positioned text runs of a
                      page are filtered (blank runs dropped) and joined with
                      single spaces; pages are joined with blank lines.

A page that fails to extract is skipped with a warning.  An unsupported
media type, an unparseable PDF, a PDF over the caller's page cap, or an
empty result raise ExtractionError.
"""
from __future__ import annotations

import io
from typing import BinaryIO, Optional, Union

from loguru import logger
from PyPDF2 import PdfReader

from kbchat.errors import ExtractionError
from kbchat.schemas import SUPPORTED_MEDIA_TYPES

FileInput = Union[bytes, BinaryIO]


def _read_bytes(data: FileInput) -> bytes:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    return data.read()


class TextExtractor:
    """
    Usage:
        extractor = TextExtractor()
        text = extractor.extract(raw_bytes, "application/pdf")
        text = extractor.extract(raw_bytes, "application/pdf", max_pages=5)
    """

    def extract(
        self,
        data: FileInput,
        media_type: str,
        max_pages: Optional[int] = None,
    ) -> str:
        """
        Extract text from a file.

        Args:
            data:       Raw bytes or a binary file handle.
            media_type: Declared type; only text/plain and application/pdf.
            max_pages:  Reject PDFs with more pages than this (None = no cap).

        Returns:
            The extracted, non-empty text.
        """
        if media_type not in SUPPORTED_MEDIA_TYPES:
            raise ExtractionError(
                f"Unsupported file type {media_type!r}. Only .txt and .pdf files are supported."
            )

        raw = _read_bytes(data)
        if media_type == "text/plain":
            text = raw.decode("utf-8", errors="replace")
        else:
            text = self._extract_pdf(raw, max_pages)

        if not text.strip():
            raise ExtractionError("No readable text found in the document")

        logger.info(f"[Extractor] {media_type} | {len(text)} characters extracted")
        return text

    def _open(self, raw: bytes) -> PdfReader:
        try:
            return PdfReader(io.BytesIO(raw))
        except Exception as exc:
            raise ExtractionError(f"Failed to parse PDF: {exc}") from exc

    def _extract_pdf(self, raw: bytes, max_pages: Optional[int]) -> str:
        reader = self._open(raw)
        try:
            total = len(reader.pages)
        except Exception as exc:
            raise ExtractionError(f"Failed to parse PDF: {exc}") from exc

        if max_pages is not None and total > max_pages:
            raise ExtractionError(
                f"PDF has {total} pages; at most {max_pages} are allowed here"
            )

        logger.debug(f"[Extractor] PDF loaded with {total} pages")
        pages: list[str] = []
        for page_num, page in enumerate(reader.pages, start=1):
            try:
                page_text = self._page_text(page)
            except Exception as exc:
                logger.warning(f"[Extractor] Failed to extract page {page_num}/{total}: {exc}")
                continue
            if page_text:
                pages.append(page_text)

        return "\n\n".join(pages).strip()

    @staticmethod
    def _page_text(page) -> str:
        runs: list[str] = []

        def visitor(text, cm, tm, font_dict, font_size):
            if text and text.strip():
                runs.append(text.strip())

        page.extract_text(visitor_text=visitor)
        return " ".join(runs)
