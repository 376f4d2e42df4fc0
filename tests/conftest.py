"""Shared fixtures: an in-memory store and a scripted stand-in for the OpenAI client."""
from __future__ import annotations

import io
import zlib
from types import SimpleNamespace

import pytest
from PyPDF2 import PdfWriter

from kbchat.config import Settings
from kbchat.embedding.embedder import Embedder
from kbchat.ingestion.pipeline import IngestionPipeline
from kbchat.schemas import Chatbot, KnowledgeBase
from kbchat.storage.memory_store import MemoryStore

EMBEDDING_DIMS = 16


def bag_of_words_vector(text: str, dims: int = EMBEDDING_DIMS) -> list[float]:
    """Deterministic toy embedding: word counts hashed into `dims` buckets."""
    vector = [0.0] * dims
    for word in text.lower().split():
        vector[zlib.crc32(word.strip(".,?!").encode()) % dims] += 1.0
    return vector


class FakeOpenAI:
    """
    Mimics the three OpenAI client surfaces kbchat uses.

    Chat replies are served from `replies` in order (then `default_reply`);
    set `error` to make every call raise it.
    """

    def __init__(self, replies=None, default_reply="Here is what I found.", transcript="hello there"):
        self.replies = list(replies or [])
        self.default_reply = default_reply
        self.transcript = transcript
        self.error = None
        self.embedding_calls: list[dict] = []
        self.chat_calls: list[dict] = []
        self.transcription_calls: list[dict] = []

        self.embeddings = SimpleNamespace(create=self._embed)
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._complete))
        self.audio = SimpleNamespace(transcriptions=SimpleNamespace(create=self._transcribe))

    def _embed(self, **kwargs):
        if self.error:
            raise self.error
        self.embedding_calls.append(kwargs)
        return SimpleNamespace(
            data=[SimpleNamespace(embedding=bag_of_words_vector(kwargs["input"]))],
            usage=SimpleNamespace(prompt_tokens=7, total_tokens=7),
        )

    def _complete(self, **kwargs):
        if self.error:
            raise self.error
        self.chat_calls.append(kwargs)
        content = self.replies.pop(0) if self.replies else self.default_reply
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
            usage=SimpleNamespace(prompt_tokens=120, completion_tokens=30, total_tokens=150),
        )

    def _transcribe(self, **kwargs):
        if self.error:
            raise self.error
        self.transcription_calls.append(kwargs)
        return self.transcript


def make_pdf(pages: int) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


SAMPLE_TEXT = (
    "Our support desk is open Monday to Friday from 9am to 5pm. "
    "To reset your password, open Settings and choose Security, then Reset Password. "
    "Refunds are processed within five business days of the return being received. "
    "Shipping to Europe usually takes between three and seven days depending on the carrier. "
) * 4


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def openai_client() -> FakeOpenAI:
    return FakeOpenAI()


@pytest.fixture
def embedder(openai_client) -> Embedder:
    return Embedder("sk-test-key", client=openai_client)


@pytest.fixture
def pipeline(store, embedder) -> IngestionPipeline:
    return IngestionPipeline(store, embedder)


@pytest.fixture
def knowledge_base(store) -> KnowledgeBase:
    return store.insert_knowledge_base(KnowledgeBase(user_id="owner-1", name="Support docs"))


@pytest.fixture
def chatbot(store, knowledge_base) -> Chatbot:
    return store.insert_chatbot(
        Chatbot(user_id="owner-1", name="Helpdesk", knowledge_base_id=knowledge_base.id)
    )


@pytest.fixture
def bare_chatbot(store) -> Chatbot:
    return store.insert_chatbot(Chatbot(user_id="owner-1", name="Small talk"))
