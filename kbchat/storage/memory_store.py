"""
In-memory Knowledge Store
--------------------------
A process-local KnowledgeStore used by the test-suite and by demo mode
when no hosted-store credentials are configured.

Search mirrors the hosted functions:
  - similarity: cosine over stored embeddings (numpy), processed documents
    only, scoped by owner or by the chatbot's knowledge base
  - keyword:    any-term match ranked with BM25Okapi (rank_bm25)

A single lock guards every table so background ingestion threads and
request handlers can share one instance.
"""
from __future__ import annotations

import re
import threading
from typing import Any, Optional

import numpy as np
from loguru import logger
from rank_bm25 import BM25Okapi

from kbchat.errors import StorageError
from kbchat.schemas import (
    Chatbot,
    ChatbotDomain,
    ConversationMessage,
    Document,
    DocumentChunk,
    DocumentStatus,
    KnowledgeBase,
    MessageRole,
    UserInteraction,
)
from kbchat.storage.store import KnowledgeStore
from kbchat.utils.helpers import utcnow


def _bm25_tokens(text: str) -> list[str]:
    """Lowercase, strip punctuation, split on whitespace, drop 1-char tokens."""
    normalised = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    return [t for t in normalised.split() if len(t) > 1]


def _newest_first(rows: list) -> list:
    return sorted(rows, key=lambda r: r.created_at, reverse=True)


class MemoryStore(KnowledgeStore):

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.documents: dict[str, Document] = {}
        self.chunks: dict[str, DocumentChunk] = {}
        self.messages: list[ConversationMessage] = []
        self.chatbots: dict[str, Chatbot] = {}
        self.knowledge_bases: dict[str, KnowledgeBase] = {}
        self.domains: dict[str, ChatbotDomain] = {}
        self.interactions: list[UserInteraction] = []

    # --- Blob storage ---------------------------------------------------------

    def upload_blob(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self.blobs[(bucket, path)] = bytes(data)
        return path

    def download_blob(self, bucket: str, path: str) -> bytes:
        with self._lock:
            try:
                return self.blobs[(bucket, path)]
            except KeyError:
                raise StorageError(f"Object not found: {bucket}/{path}") from None

    def remove_blob(self, bucket: str, path: str) -> None:
        with self._lock:
            self.blobs.pop((bucket, path), None)

    def public_url(self, bucket: str, path: str) -> str:
        return f"memory://{bucket}/{path}"

    # --- Documents ------------------------------------------------------------

    def insert_document(self, document: Document) -> Document:
        with self._lock:
            self.documents[document.id] = document
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            return self.documents.get(document_id)

    def list_documents(
        self,
        user_id: Optional[str] = None,
        knowledge_base_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Document]:
        with self._lock:
            docs = [
                d for d in self.documents.values()
                if (user_id is None or d.user_id == user_id)
                and (knowledge_base_id is None or d.knowledge_base_id == knowledge_base_id)
                and (status is None or d.status == status)
            ]
        return _newest_first(docs)

    def update_document(self, document_id: str, fields: dict[str, Any]) -> Document:
        with self._lock:
            doc = self._require(self.documents, document_id, "document")
            updated = doc.model_copy(update=fields)
            self.documents[document_id] = updated
        return updated

    def delete_document(self, document_id: str) -> None:
        with self._lock:
            self.documents.pop(document_id, None)
            self._drop_chunks(document_id)

    # --- Chunks ---------------------------------------------------------------

    def insert_chunk(self, chunk: DocumentChunk) -> DocumentChunk:
        with self._lock:
            self._require(self.documents, chunk.document_id, "document")
            self.chunks[chunk.id] = chunk
        return chunk

    def delete_chunks(self, document_id: str) -> None:
        with self._lock:
            self._drop_chunks(document_id)

    def count_chunks(self, document_id: str) -> int:
        with self._lock:
            return sum(1 for c in self.chunks.values() if c.document_id == document_id)

    def match_document_chunks(
        self, query_embedding: list[float], match_count: int, user_id: str
    ) -> list[DocumentChunk]:
        with self._lock:
            candidates = [c for c in self._searchable() if c.user_id == user_id]
        return self._rank_by_similarity(candidates, query_embedding, match_count)

    def public_match_document_chunks(
        self, chatbot_id: str, query_embedding: list[float], match_count: int
    ) -> list[DocumentChunk]:
        with self._lock:
            candidates = self._chatbot_scope(chatbot_id)
        return self._rank_by_similarity(candidates, query_embedding, match_count)

    def text_search_chunks(
        self,
        query: str,
        limit: int,
        user_id: Optional[str] = None,
        chatbot_id: Optional[str] = None,
    ) -> list[DocumentChunk]:
        with self._lock:
            if chatbot_id is not None:
                candidates = self._chatbot_scope(chatbot_id)
            else:
                candidates = [c for c in self._searchable() if c.user_id == user_id]

        terms = set(_bm25_tokens(query))
        if not candidates or not terms:
            return []

        corpus = [_bm25_tokens(c.chunk_text) for c in candidates]
        matching = [i for i, tokens in enumerate(corpus) if terms & set(tokens)]
        if not matching:
            return []

        scores = BM25Okapi(corpus).get_scores(list(terms))
        matching.sort(key=lambda i: scores[i], reverse=True)
        return [candidates[i] for i in matching[:limit]]

    # --- Conversation messages -----------------------------------------------

    def add_session_message(
        self,
        chatbot_id: str,
        session_id: str,
        content: str,
        role: MessageRole,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        with self._lock:
            self.messages.append(
                ConversationMessage(
                    chatbot_id=chatbot_id,
                    session_id=session_id,
                    role=role,
                    content=content,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )

    def list_messages(self, chatbot_ids: list[str]) -> list[ConversationMessage]:
        wanted = set(chatbot_ids)
        with self._lock:
            return [m for m in self.messages if m.chatbot_id in wanted]

    # --- Chatbots -------------------------------------------------------------

    def insert_chatbot(self, chatbot: Chatbot) -> Chatbot:
        with self._lock:
            self.chatbots[chatbot.id] = chatbot
        return chatbot

    def get_chatbot(self, chatbot_id: str) -> Optional[Chatbot]:
        with self._lock:
            return self.chatbots.get(chatbot_id)

    def list_chatbots(self, user_id: str) -> list[Chatbot]:
        with self._lock:
            bots = [b for b in self.chatbots.values() if b.user_id == user_id]
        return _newest_first(bots)

    def update_chatbot(self, chatbot_id: str, fields: dict[str, Any]) -> Chatbot:
        with self._lock:
            bot = self._require(self.chatbots, chatbot_id, "chatbot")
            updated = Chatbot.model_validate({**bot.to_row(), **fields, "updated_at": utcnow()})
            self.chatbots[chatbot_id] = updated
        return updated

    def delete_chatbot(self, chatbot_id: str) -> None:
        with self._lock:
            self.chatbots.pop(chatbot_id, None)
            for domain_id in [d.id for d in self.domains.values() if d.chatbot_id == chatbot_id]:
                del self.domains[domain_id]

    # --- Knowledge bases -----------------------------------------------------

    def insert_knowledge_base(self, knowledge_base: KnowledgeBase) -> KnowledgeBase:
        with self._lock:
            self.knowledge_bases[knowledge_base.id] = knowledge_base
        return knowledge_base

    def list_knowledge_bases(self, user_id: str) -> list[KnowledgeBase]:
        with self._lock:
            kbs = [k for k in self.knowledge_bases.values() if k.user_id == user_id]
        return _newest_first(kbs)

    def update_knowledge_base(self, knowledge_base_id: str, fields: dict[str, Any]) -> KnowledgeBase:
        with self._lock:
            kb = self._require(self.knowledge_bases, knowledge_base_id, "knowledge base")
            updated = kb.model_copy(update={**fields, "updated_at": utcnow()})
            self.knowledge_bases[knowledge_base_id] = updated
        return updated

    def delete_knowledge_base(self, knowledge_base_id: str) -> None:
        with self._lock:
            self.knowledge_bases.pop(knowledge_base_id, None)
            for doc_id, doc in list(self.documents.items()):
                if doc.knowledge_base_id == knowledge_base_id:
                    self.documents[doc_id] = doc.model_copy(update={"knowledge_base_id": None})
            for bot_id, bot in list(self.chatbots.items()):
                if bot.knowledge_base_id == knowledge_base_id:
                    self.chatbots[bot_id] = bot.model_copy(update={"knowledge_base_id": None})

    # --- Chatbot domains -----------------------------------------------------

    def insert_domain(self, domain: ChatbotDomain) -> ChatbotDomain:
        with self._lock:
            if any(
                d.domain == domain.domain and d.token == domain.token
                for d in self.domains.values()
            ):
                raise StorageError("duplicate (domain, token) pair")
            self.domains[domain.id] = domain
        return domain

    def list_domains(self, chatbot_id: str) -> list[ChatbotDomain]:
        with self._lock:
            rows = [d for d in self.domains.values() if d.chatbot_id == chatbot_id]
        return _newest_first(rows)

    def find_domain(self, chatbot_id: str, domain: str) -> Optional[ChatbotDomain]:
        with self._lock:
            for d in self.domains.values():
                if d.chatbot_id == chatbot_id and d.domain == domain:
                    return d
        return None

    def find_active_domain(
        self, chatbot_id: str, domain: str, token: str
    ) -> Optional[ChatbotDomain]:
        with self._lock:
            for d in self.domains.values():
                if (
                    d.chatbot_id == chatbot_id
                    and d.domain == domain
                    and d.token == token
                    and d.is_active
                ):
                    return d
        return None

    def update_domain(self, domain_id: str, fields: dict[str, Any]) -> ChatbotDomain:
        with self._lock:
            row = self._require(self.domains, domain_id, "domain")
            updated = row.model_copy(update={**fields, "updated_at": utcnow()})
            self.domains[domain_id] = updated
        return updated

    def delete_domain(self, domain_id: str) -> None:
        with self._lock:
            self.domains.pop(domain_id, None)

    # --- Interactions ---------------------------------------------------------

    def record_interaction(self, interaction: UserInteraction) -> UserInteraction:
        with self._lock:
            self.interactions.append(interaction)
        return interaction

    def list_interactions(self, chatbot_ids: list[str]) -> list[UserInteraction]:
        wanted = set(chatbot_ids)
        with self._lock:
            return [i for i in self.interactions if i.chatbot_id in wanted]

    # --- Internals ------------------------------------------------------------

    @staticmethod
    def _require(table: dict, key: str, label: str):
        try:
            return table[key]
        except KeyError:
            raise StorageError(f"{label} not found: {key}") from None

    def _drop_chunks(self, document_id: str) -> None:
        doomed = [cid for cid, c in self.chunks.items() if c.document_id == document_id]
        for cid in doomed:
            del self.chunks[cid]
        if doomed:
            logger.debug(f"[MemoryStore] Removed {len(doomed)} chunks of {document_id}")

    def _searchable(self) -> list[DocumentChunk]:
        processed = {
            d.id for d in self.documents.values() if d.status == DocumentStatus.PROCESSED
        }
        return [c for c in self.chunks.values() if c.document_id in processed]

    def _chatbot_scope(self, chatbot_id: str) -> list[DocumentChunk]:
        bot = self.chatbots.get(chatbot_id)
        if bot is None or not bot.knowledge_base_id:
            return []
        kb_docs = {
            d.id for d in self.documents.values()
            if d.knowledge_base_id == bot.knowledge_base_id
        }
        return [c for c in self._searchable() if c.document_id in kb_docs]

    @staticmethod
    def _rank_by_similarity(
        candidates: list[DocumentChunk], query_embedding: list[float], match_count: int
    ) -> list[DocumentChunk]:
        candidates = [c for c in candidates if c.embedding]
        if not candidates:
            return []

        matrix = np.array([c.embedding for c in candidates], dtype=np.float32)
        query = np.asarray(query_embedding, dtype=np.float32)
        if matrix.shape[1] != query.shape[0]:
            raise StorageError(
                f"embedding dimension mismatch: {query.shape[0]} vs {matrix.shape[1]}"
            )

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms = np.where(norms == 0, 1, norms)  # avoid div-by-zero
        scores = (matrix @ query) / norms
        order = np.argsort(scores)[::-1][:match_count]
        return [
            candidates[i].model_copy(update={"similarity": float(scores[i])})
            for i in order
        ]