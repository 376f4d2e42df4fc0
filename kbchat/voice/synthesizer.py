"""
Text-to-speech and clip playback
---------------------------------
SpeechSynthesizer  -- POST {api_base}/text-to-speech/{voice_id} with a fixed
                      voice and fixed stability / similarity / style settings;
                      returns audio/mpeg bytes.  Each bot message is
                      synthesised once per session: clips are cached under
                      (session, message id, text digest) in a bounded LRU, so
                      replays never call out again and a reused id with new
                      text is synthesised afresh.
PlaybackController -- at most one clip plays at a time; starting a clip
                      pauses whichever one was playing.
"""
from __future__ import annotations

import hashlib
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

import httpx
from langsmith import traceable
from loguru import logger

from kbchat.config import VoiceSettings
from kbchat.errors import ConfigurationError, UpstreamError, ValidationError

CacheKey = tuple[str, str, str]


@dataclass(frozen=True)
class AudioClip:
    message_id: str
    data: bytes
    media_type: str = "audio/mpeg"


class SpeechSynthesizer:
    """
    Usage:
        synth = SpeechSynthesizer(api_key, VoiceSettings())
        clip = synth.speak(message.id, message.text, session_id=state.session_id)
    """

    def __init__(
        self,
        api_key: Optional[str],
        settings: Optional[VoiceSettings] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.settings = settings or VoiceSettings()
        self._api_key = api_key
        self._transport = transport
        self._cache: OrderedDict[CacheKey, AudioClip] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    @staticmethod
    def _key(message_id: str, text: str, session_id: Optional[str]) -> CacheKey:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return (session_id or "", message_id, digest)

    def speak(self, message_id: str, text: str, session_id: Optional[str] = None) -> AudioClip:
        """Return the clip for a bot message, synthesising it on first request only."""
        key = self._key(message_id, text, session_id)
        with self._lock:
            clip = self._cache.get(key)
            if clip is not None:
                self._cache.move_to_end(key)
                return clip

        clip = AudioClip(message_id=message_id, data=self.synthesize(text))
        with self._lock:
            clip = self._cache.setdefault(key, clip)
            self._cache.move_to_end(key)
            while len(self._cache) > max(self.settings.cache_size, 1):
                self._cache.popitem(last=False)
        return clip

    @traceable(name="synthesize_speech", run_type="tool")
    def synthesize(self, text: str) -> bytes:
        if not self._api_key:
            raise ConfigurationError("Voice features unavailable: API key missing")
        if not text.strip():
            raise ValidationError("Nothing to speak")

        s = self.settings
        url = f"{s.api_base.rstrip('/')}/text-to-speech/{s.voice_id}"
        payload = {
            "text": text,
            "model_id": s.model_id,
            "voice_settings": {
                "stability": s.stability,
                "similarity_boost": s.similarity_boost,
                "style": s.style,
                "use_speaker_boost": s.use_speaker_boost,
            },
        }
        headers = {"xi-api-key": self._api_key, "Accept": "audio/mpeg"}

        try:
            with httpx.Client(timeout=s.timeout_seconds, transport=self._transport) as client:
                response = client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Text-to-speech request failed: {exc}") from exc

        if response.status_code != 200:
            raise UpstreamError(
                f"Text-to-speech failed ({response.status_code}): {response.text[:200]}"
            )

        logger.info(f"[Synthesizer] {len(text)} chars -> {len(response.content)} bytes audio")
        return response.content


class PlaybackController:
    """Tracks which message's clip is playing; only one at a time."""

    def __init__(self) -> None:
        self.playing: Optional[str] = None
        self.paused: Optional[str] = None

    def play(self, clip: AudioClip) -> Optional[str]:
        """Start `clip`; returns the id of the clip that was paused, if any."""
        interrupted = None
        if self.playing and self.playing != clip.message_id:
            interrupted = self.playing
            self.paused = interrupted
            logger.debug(f"[Playback] Paused {interrupted}")
        elif self.paused == clip.message_id:
            self.paused = None
        self.playing = clip.message_id
        return interrupted

    def stop(self, message_id: Optional[str] = None) -> None:
        if message_id is None or self.playing == message_id:
            self.playing = None
