"""
Knowledge Store contract
-------------------------
The single seam between kbchat and the hosted backend (relational tables,
RPC functions, blob buckets).  Every component talks to a KnowledgeStore;
nothing else imports a database or storage client.

Implementations:
  SupabaseStore -- hosted Postgres + storage through the supabase client
  MemoryStore   -- in-process, for tests and credential-less demo mode

Contract notes:
  - Every failure surfaces as StorageError.
  - Deleting a document cascades to its chunks.
  - There is no multi-call transaction: callers that write a document status
    and its chunks do so in separate, non-atomic calls.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from kbchat.schemas import (
    Chatbot,
    ChatbotDomain,
    ConversationMessage,
    Document,
    DocumentChunk,
    KnowledgeBase,
    MessageRole,
    UserInteraction,
)


class KnowledgeStore(ABC):

    # --- Blob storage ---------------------------------------------------------

    @abstractmethod
    def upload_blob(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """Store bytes under `path`; returns the key."""

    @abstractmethod
    def download_blob(self, bucket: str, path: str) -> bytes:
        ...

    @abstractmethod
    def remove_blob(self, bucket: str, path: str) -> None:
        ...

    @abstractmethod
    def public_url(self, bucket: str, path: str) -> str:
        ...

    # --- Documents ------------------------------------------------------------

    @abstractmethod
    def insert_document(self, document: Document) -> Document:
        ...

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def list_documents(
        self,
        user_id: Optional[str] = None,
        knowledge_base_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Document]:
        """Newest first."""

    @abstractmethod
    def update_document(self, document_id: str, fields: dict[str, Any]) -> Document:
        ...

    @abstractmethod
    def delete_document(self, document_id: str) -> None:
        """Remove the row and, by cascade, its chunks."""

    # --- Chunks ---------------------------------------------------------------

    @abstractmethod
    def insert_chunk(self, chunk: DocumentChunk) -> DocumentChunk:
        ...

    @abstractmethod
    def delete_chunks(self, document_id: str) -> None:
        ...

    @abstractmethod
    def count_chunks(self, document_id: str) -> int:
        ...

    @abstractmethod
    def match_document_chunks(
        self, query_embedding: list[float], match_count: int, user_id: str
    ) -> list[DocumentChunk]:
        """Owner-scoped similarity search (RPC match_document_chunks)."""

    @abstractmethod
    def public_match_document_chunks(
        self, chatbot_id: str, query_embedding: list[float], match_count: int
    ) -> list[DocumentChunk]:
        """Chatbot-scoped similarity search (RPC public_match_document_chunks)."""

    @abstractmethod
    def text_search_chunks(
        self,
        query: str,
        limit: int,
        user_id: Optional[str] = None,
        chatbot_id: Optional[str] = None,
    ) -> list[DocumentChunk]:
        """Keyword search over the same scope as the matching RPC."""

    # --- Conversation messages -----------------------------------------------

    @abstractmethod
    def add_session_message(
        self,
        chatbot_id: str,
        session_id: str,
        content: str,
        role: MessageRole,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Append one message to the session's conversation (RPC add_session_message)."""

    @abstractmethod
    def list_messages(self, chatbot_ids: list[str]) -> list[ConversationMessage]:
        ...

    # --- Chatbots -------------------------------------------------------------

    @abstractmethod
    def insert_chatbot(self, chatbot: Chatbot) -> Chatbot:
        ...

    @abstractmethod
    def get_chatbot(self, chatbot_id: str) -> Optional[Chatbot]:
        ...

    @abstractmethod
    def list_chatbots(self, user_id: str) -> list[Chatbot]:
        ...

    @abstractmethod
    def update_chatbot(self, chatbot_id: str, fields: dict[str, Any]) -> Chatbot:
        ...

    @abstractmethod
    def delete_chatbot(self, chatbot_id: str) -> None:
        ...

    # --- Knowledge bases -----------------------------------------------------

    @abstractmethod
    def insert_knowledge_base(self, knowledge_base: KnowledgeBase) -> KnowledgeBase:
        ...

    @abstractmethod
    def list_knowledge_bases(self, user_id: str) -> list[KnowledgeBase]:
        ...

    @abstractmethod
    def update_knowledge_base(self, knowledge_base_id: str, fields: dict[str, Any]) -> KnowledgeBase:
        ...

    @abstractmethod
    def delete_knowledge_base(self, knowledge_base_id: str) -> None:
        ...

    # --- Chatbot domains -----------------------------------------------------

    @abstractmethod
    def insert_domain(self, domain: ChatbotDomain) -> ChatbotDomain:
        ...

    @abstractmethod
    def list_domains(self, chatbot_id: str) -> list[ChatbotDomain]:
        """Newest first."""

    @abstractmethod
    def find_domain(self, chatbot_id: str, domain: str) -> Optional[ChatbotDomain]:
        """Any row (active or not) for this chatbot and normalized domain."""

    @abstractmethod
    def find_active_domain(
        self, chatbot_id: str, domain: str, token: str
    ) -> Optional[ChatbotDomain]:
        """The single active row matching all of chatbot, domain and token."""

    @abstractmethod
    def update_domain(self, domain_id: str, fields: dict[str, Any]) -> ChatbotDomain:
        ...

    @abstractmethod
    def delete_domain(self, domain_id: str) -> None:
        ...

    # --- Interactions ---------------------------------------------------------

    @abstractmethod
    def record_interaction(self, interaction: UserInteraction) -> UserInteraction:
        ...

    @abstractmethod
    def list_interactions(self, chatbot_ids: list[str]) -> list[UserInteraction]:
        ...
