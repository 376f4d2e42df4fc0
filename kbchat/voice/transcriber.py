"""
Speech-to-text through the hosted transcription endpoint (whisper-1).

Plain-text output, fixed language.  A blank transcript is a user-facing
NoSpeechDetectedError, never an empty user message.
"""
from __future__ import annotations

from typing import Optional

from langsmith import traceable
from loguru import logger
from openai import OpenAI, OpenAIError

from kbchat.errors import ConfigurationError, NoSpeechDetectedError, UpstreamError
from kbchat.voice.recorder import AudioBlob


class Transcriber:

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "whisper-1",
        language: str = "en",
        client: Optional[OpenAI] = None,
    ) -> None:
        self.model = model
        self.language = language
        self._api_key = api_key
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    @traceable(name="transcribe", run_type="llm")
    def transcribe(self, audio: AudioBlob) -> str:
        if not self._api_key:
            raise ConfigurationError("Voice transcription unavailable: OpenAI API key missing")

        try:
            result = self._get_client().audio.transcriptions.create(
                model=self.model,
                file=audio.as_file(),
                language=self.language,
                response_format="text",
            )
        except OpenAIError as exc:
            raise UpstreamError(f"Transcription failed: {exc}") from exc

        # response_format="text" returns a str; older SDKs wrap it in an object
        text = result if isinstance(result, str) else getattr(result, "text", "")
        text = (text or "").strip()
        if not text:
            raise NoSpeechDetectedError("No speech detected")

        logger.info(f"[Transcriber] {len(audio.data)} bytes -> {len(text)} chars")
        return text
