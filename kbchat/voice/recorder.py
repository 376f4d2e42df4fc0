"""Accumulates timed microphone chunks into one audio blob."""
from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from kbchat.errors import ValidationError


@dataclass
class AudioBlob:
    data: bytes
    media_type: str = "audio/webm"
    filename: str = "recording.webm"

    def as_file(self) -> io.BytesIO:
        """A named file object, which is what the transcription upload expects."""
        buffer = io.BytesIO(self.data)
        buffer.name = self.filename
        return buffer


@dataclass
class RecordingSession:
    """
    Usage:
        session = RecordingSession()
        for chunk in microphone_chunks:
            session.add_chunk(chunk)
        blob = session.finish()
    """

    media_type: str = "audio/webm"
    chunks: list[bytes] = field(default_factory=list)
    finished: bool = False
    _blob: Optional[AudioBlob] = None

    def add_chunk(self, chunk: bytes) -> None:
        if self.finished:
            raise ValidationError("Recording already stopped")
        if chunk:
            self.chunks.append(bytes(chunk))

    def finish(self) -> AudioBlob:
        """Stop recording and return the joined audio; an empty capture is rejected."""
        self.finished = True
        data = b"".join(self.chunks)
        if not data:
            raise ValidationError("No audio recorded")
        extension = self.media_type.split("/")[-1].split(";")[0] or "webm"
        self._blob = AudioBlob(data, self.media_type, f"recording.{extension}")
        logger.debug(f"[Recorder] {len(self.chunks)} chunks -> {len(data)} bytes")
        return self._blob
