"""
Knowledge Retriever
--------------------
Embeds the user query and asks the store's similarity-search function for
the top-k nearest chunks, in one of two scopes:

  owner scope   (user_id)    -> match_document_chunks
  chatbot scope (chatbot_id) -> public_match_document_chunks, restricted to
                                the documents of the chatbot's knowledge base

If the similarity search fails, a keyword search over the same scope is
tried before giving up.  Retrieval never raises for upstream or storage
failures: the caller gets an empty list and carries on without context.

The retriever is stateless per query -- call retrieve() as many times
as you like from the same instance.
"""
from __future__ import annotations

from typing import Optional

from langsmith import traceable
from loguru import logger

from kbchat.embedding.embedder import Embedder
from kbchat.errors import KBChatError
from kbchat.schemas import DocumentChunk
from kbchat.storage.store import KnowledgeStore

SOURCE_TEMPLATE = "[Source {index}]: {text}"


def build_context(chunks: list[DocumentChunk]) -> str:
    """Label each chunk [Source N] and join them into one context block."""
    return "\n\n".join(
        SOURCE_TEMPLATE.format(index=i, text=chunk.chunk_text)
        for i, chunk in enumerate(chunks, start=1)
    )


class Retriever:

    def __init__(self, store: KnowledgeStore, embedder: Embedder, top_k: int = 5) -> None:
        self.store = store
        self.embedder = embedder
        self.top_k = top_k

    @traceable(name="retrieve", run_type="retriever")
    def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        user_id: Optional[str] = None,
        chatbot_id: Optional[str] = None,
    ) -> list[DocumentChunk]:
        """
        Return up to top_k chunks most similar to `query`.

        Exactly one of user_id / chatbot_id selects the scope; chatbot_id wins
        when both are given (public embedded access).
        """
        if user_id is None and chatbot_id is None:
            raise ValueError("retrieve() needs a user_id or a chatbot_id scope")

        k = top_k or self.top_k
        scope = f"chatbot={chatbot_id}" if chatbot_id else f"user={user_id}"
        logger.debug(f"[Retriever] Query: {query[:80]!r} | {scope}")

        try:
            query_vec = self.embedder.embed(query)
        except KBChatError as exc:
            logger.warning(f"[Retriever] Skipping similarity search, query not embedded: {exc}")
            return []

        try:
            if chatbot_id:
                results = self.store.public_match_document_chunks(chatbot_id, query_vec, k)
            else:
                results = self.store.match_document_chunks(query_vec, k, user_id)
        except KBChatError as exc:
            logger.warning(f"[Retriever] Similarity search failed, trying text search: {exc}")
            return self._text_fallback(query, k, user_id, chatbot_id)

        logger.info(
            f"[Retriever] Retrieved {len(results)} chunks "
            f"(top score: {results[0].similarity or 0.0:.4f})" if results else "[Retriever] No results"
        )
        return results

    def _text_fallback(
        self,
        query: str,
        k: int,
        user_id: Optional[str],
        chatbot_id: Optional[str],
    ) -> list[DocumentChunk]:
        try:
            results = self.store.text_search_chunks(
                query, k, user_id=None if chatbot_id else user_id, chatbot_id=chatbot_id
            )
        except KBChatError as exc:
            logger.error(f"[Retriever] Text search failed as well: {exc}")
            return []
        logger.info(f"[Retriever] Text search fallback returned {len(results)} chunks")
        return results
