"""Tests for recording assembly, transcription, speech synthesis and playback."""
import httpx
import openai
import orjson
import pytest

from conftest import FakeOpenAI
from kbchat.config import VoiceSettings
from kbchat.errors import ConfigurationError, NoSpeechDetectedError, UpstreamError, ValidationError
from kbchat.voice.recorder import AudioBlob, RecordingSession
from kbchat.voice.synthesizer import AudioClip, PlaybackController, SpeechSynthesizer
from kbchat.voice.transcriber import Transcriber


class TestRecordingSession:

    def test_chunks_are_joined(self):
        session = RecordingSession(media_type="audio/webm;codecs=opus")
        session.add_chunk(b"abc")
        session.add_chunk(b"")
        session.add_chunk(b"def")

        blob = session.finish()

        assert blob.data == b"abcdef"
        assert blob.filename == "recording.webm"
        assert blob.as_file().name == "recording.webm"

    def test_empty_recording_rejected(self):
        with pytest.raises(ValidationError, match="No audio recorded"):
            RecordingSession().finish()

    def test_no_chunks_after_stop(self):
        session = RecordingSession()
        session.add_chunk(b"x")
        session.finish()
        with pytest.raises(ValidationError):
            session.add_chunk(b"y")


class TestTranscriber:

    def setup_method(self):
        self.blob = AudioBlob(b"\x1a\x45\xdf\xa3", "audio/webm", "recording.webm")

    def test_transcript_returned(self):
        client = FakeOpenAI(transcript="  where is my order \n")
        text = Transcriber("sk-test", client=client).transcribe(self.blob)

        assert text == "where is my order"
        (call,) = client.transcription_calls
        assert call["model"] == "whisper-1"
        assert call["language"] == "en"
        assert call["response_format"] == "text"

    def test_blank_transcript_is_no_speech(self):
        with pytest.raises(NoSpeechDetectedError, match="No speech detected"):
            Transcriber("sk-test", client=FakeOpenAI(transcript="   ")).transcribe(self.blob)

    def test_missing_key(self):
        client = FakeOpenAI()
        with pytest.raises(ConfigurationError):
            Transcriber(None, client=client).transcribe(self.blob)
        assert client.transcription_calls == []

    def test_upstream_failure(self):
        client = FakeOpenAI()
        client.error = openai.OpenAIError("bad audio")
        with pytest.raises(UpstreamError):
            Transcriber("sk-test", client=client).transcribe(self.blob)


class TestSpeechSynthesizer:

    def setup_method(self):
        self.requests = []
        self.status = 200

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            if self.status != 200:
                return httpx.Response(self.status, text="quota exceeded")
            spoken = orjson.loads(request.content)["text"]
            return httpx.Response(200, content=b"mp3:" + spoken.encode(), headers={"content-type": "audio/mpeg"})

        self.transport = httpx.MockTransport(handler)
        self.synth = SpeechSynthesizer("el-key", VoiceSettings(), transport=self.transport)

    def test_request_shape(self):
        audio = self.synth.synthesize("Your order ships today.")

        assert audio == b"mp3:Your order ships today."
        (request,) = self.requests
        assert request.url.path == "/v1/text-to-speech/56AoDkrOh6qfVPDXZ7Pt"
        assert request.headers["xi-api-key"] == "el-key"
        body = orjson.loads(request.content)
        assert body["model_id"] == "eleven_monolingual_v1"
        assert body["voice_settings"] == {
            "stability": 0.5,
            "similarity_boost": 0.75,
            "style": 0.0,
            "use_speaker_boost": True,
        }

    def test_clip_cached_per_message(self):
        first = self.synth.speak("msg-1", "Hello", session_id="sess-1")
        again = self.synth.speak("msg-1", "Hello", session_id="sess-1")

        assert again is first
        assert len(self.requests) == 1

    def test_reused_id_with_new_text_is_synthesised_again(self):
        first = self.synth.speak("msg-1", "Hello")
        second = self.synth.speak("msg-1", "Goodbye")

        assert len(self.requests) == 2
        assert first.data == b"mp3:Hello"
        assert second.data == b"mp3:Goodbye"

    def test_clips_are_scoped_per_session(self):
        self.synth.speak("msg-1", "Hello", session_id="sess-1")
        other = self.synth.speak("msg-1", "Hello", session_id="sess-2")

        assert len(self.requests) == 2
        assert other.message_id == "msg-1"

    def test_cache_evicts_least_recently_used(self):
        synth = SpeechSynthesizer("el-key", VoiceSettings(cache_size=2), transport=self.transport)
        synth.speak("m1", "one")
        synth.speak("m2", "two")
        synth.speak("m1", "one")  # m1 becomes most recent
        synth.speak("m3", "three")  # evicts m2

        assert len(self.requests) == 3
        synth.speak("m1", "one")
        assert len(self.requests) == 3
        synth.speak("m2", "two")
        assert len(self.requests) == 4
        assert len(synth._cache) == 2

    def test_error_status_is_upstream_error(self):
        self.status = 401
        with pytest.raises(UpstreamError, match="401"):
            self.synth.speak("msg-1", "Hello")

        # failures are not cached
        self.status = 200
        self.synth.speak("msg-1", "Hello")
        assert len(self.requests) == 2

    def test_missing_key_and_blank_text(self):
        with pytest.raises(ConfigurationError):
            SpeechSynthesizer(None).synthesize("Hello")
        with pytest.raises(ValidationError):
            self.synth.synthesize("   ")
        assert self.requests == []


def test_playback_one_clip_at_a_time():
    player = PlaybackController()
    first, second = AudioClip("m1", b"a"), AudioClip("m2", b"b")

    assert player.play(first) is None
    assert player.play(second) == "m1"
    assert player.playing == "m2"
    assert player.paused == "m1"

    player.stop("m1")
    assert player.playing == "m2"
    player.stop()
    assert player.playing is None


def test_playback_tracks_only_the_last_paused_clip():
    player = PlaybackController()
    clips = [AudioClip(f"m{i}", b"x") for i in range(1, 4)]
    for clip in clips:
        player.play(clip)
    assert player.paused == "m2"

    # switching back to an earlier clip pauses the current one
    assert player.play(clips[0]) == "m3"
    assert player.paused == "m3"

    player.stop()
    player.play(clips[2])
    assert player.paused is None
    assert player.playing == "m3"
