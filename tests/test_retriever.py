"""Tests for the retrieval client and context rendering."""
import openai
import pytest

from conftest import SAMPLE_TEXT
from kbchat.errors import StorageError
from kbchat.retrieval.retriever import Retriever, build_context
from kbchat.schemas import DocumentChunk


def _fail(*args, **kwargs):
    raise StorageError("function unavailable")


@pytest.fixture
def retriever(store, embedder):
    return Retriever(store, embedder, top_k=5)


@pytest.fixture
def indexed(pipeline, knowledge_base):
    return pipeline.ingest(
        "owner-1", "faq.txt", SAMPLE_TEXT.encode(), "text/plain",
        knowledge_base_id=knowledge_base.id,
    )


class TestRetrieve:

    def test_owner_scope(self, retriever, indexed):
        results = retriever.retrieve("reset password", user_id="owner-1")
        assert results
        assert all(r.document_id == indexed.id for r in results)
        assert results[0].similarity is not None

    def test_other_owner_sees_nothing(self, retriever, indexed):
        assert retriever.retrieve("reset password", user_id="someone-else") == []

    def test_chatbot_scope_uses_knowledge_base(self, retriever, indexed, chatbot, bare_chatbot):
        assert retriever.retrieve("refunds", chatbot_id=chatbot.id)
        assert retriever.retrieve("refunds", chatbot_id=bare_chatbot.id) == []

    def test_top_k_limits_results(self, retriever, indexed):
        assert len(retriever.retrieve("support", top_k=1, user_id="owner-1")) == 1

    def test_requires_a_scope(self, retriever):
        with pytest.raises(ValueError):
            retriever.retrieve("anything")


class TestDegradation:

    def test_similarity_failure_falls_back_to_text_search(self, retriever, store, indexed, chatbot, monkeypatch):
        monkeypatch.setattr(store, "public_match_document_chunks", _fail)

        results = retriever.retrieve("shipping to Europe", chatbot_id=chatbot.id)

        assert results
        assert any("Europe" in r.chunk_text for r in results)

    def test_both_searches_failing_returns_empty(self, retriever, store, indexed, monkeypatch):
        monkeypatch.setattr(store, "match_document_chunks", _fail)
        monkeypatch.setattr(store, "text_search_chunks", _fail)

        assert retriever.retrieve("refunds", user_id="owner-1") == []

    def test_embedding_failure_returns_empty(self, retriever, indexed, openai_client):
        openai_client.error = openai.OpenAIError("down")
        assert retriever.retrieve("refunds", user_id="owner-1") == []


def test_build_context_labels_sources():
    chunks = [
        DocumentChunk(document_id="d", user_id="u", chunk_text="First fact.", chunk_index=0),
        DocumentChunk(document_id="d", user_id="u", chunk_text="Second fact.", chunk_index=1),
    ]
    assert build_context(chunks) == "[Source 1]: First fact.\n\n[Source 2]: Second fact."
    assert build_context([]) == ""
