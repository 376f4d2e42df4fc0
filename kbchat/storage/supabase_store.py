"""
Supabase Knowledge Store
-------------------------
KnowledgeStore backed by the hosted Postgres (PostgREST table builders and
RPC functions) and Supabase storage buckets.

Tables : chatbots, knowledge_bases, documents, document_chunks,
         conversations, messages, chatbot_domains, user_interactions
RPCs   : add_session_message, match_document_chunks,
         public_match_document_chunks

Every client exception is re-raised as StorageError; callers decide whether
a failure is fatal (ingestion) or degradable (retrieval).
"""
from __future__ import annotations

import re
from typing import Any, Callable, Optional, TypeVar

from loguru import logger
from supabase import Client, create_client

from kbchat.errors import ConfigurationError, StorageError
from kbchat.schemas import (
    Chatbot,
    ChatbotDomain,
    ContactInfo,
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

T = TypeVar("T")


def _fts_query(query: str) -> str:
    """'reset my password' -> 'reset | my | password' (any-term tsquery)."""
    return " | ".join(re.findall(r"[A-Za-z0-9]+", query))


class SupabaseStore(KnowledgeStore):
    """
    Usage:
        store = SupabaseStore.from_credentials(url, key)
        docs = store.list_documents(user_id="...")
    """

    def __init__(self, client: Client) -> None:
        self.client = client

    @classmethod
    def from_credentials(cls, url: Optional[str], key: Optional[str]) -> "SupabaseStore":
        if not url or not key:
            raise ConfigurationError("Missing SUPABASE_URL or SUPABASE_KEY")
        logger.info(f"[SupabaseStore] Connecting to {url[:30]}...")
        return cls(create_client(url, key))

    # --- Helpers --------------------------------------------------------------

    @staticmethod
    def _run(action: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except StorageError:
            raise
        except Exception as exc:
            logger.error(f"[SupabaseStore] {action} failed: {exc}")
            raise StorageError(f"{action} failed: {exc}") from exc

    def _chunks(self, action: str, rows: list[dict]) -> list[DocumentChunk]:
        return self._run(action, lambda: [DocumentChunk.model_validate(r) for r in rows])

    def _rows(self, action: str, builder) -> list[dict]:
        return self._run(action, lambda: builder.execute().data or [])

    def _one(self, action: str, builder) -> dict:
        rows = self._rows(action, builder)
        if not rows:
            raise StorageError(f"{action} returned no row")
        return rows[0]

    def _table(self, name: str):
        return self.client.table(name)

    # --- Blob storage ---------------------------------------------------------

    def upload_blob(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        self._run(
            f"upload {bucket}/{path}",
            lambda: self.client.storage.from_(bucket).upload(
                path, data, {"content-type": content_type}
            ),
        )
        return path

    def download_blob(self, bucket: str, path: str) -> bytes:
        return self._run(
            f"download {bucket}/{path}",
            lambda: self.client.storage.from_(bucket).download(path),
        )

    def remove_blob(self, bucket: str, path: str) -> None:
        self._run(
            f"remove {bucket}/{path}",
            lambda: self.client.storage.from_(bucket).remove([path]),
        )

    def public_url(self, bucket: str, path: str) -> str:
        return self._run(
            f"public url {bucket}/{path}",
            lambda: self.client.storage.from_(bucket).get_public_url(path),
        )

    # --- Documents ------------------------------------------------------------

    def insert_document(self, document: Document) -> Document:
        row = self._one(
            "insert document",
            self._table("documents").insert(document.model_dump(mode="json")),
        )
        return Document.model_validate(row)

    def get_document(self, document_id: str) -> Optional[Document]:
        rows = self._rows(
            "get document",
            self._table("documents").select("*").eq("id", document_id).limit(1),
        )
        return Document.model_validate(rows[0]) if rows else None

    def list_documents(
        self,
        user_id: Optional[str] = None,
        knowledge_base_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Document]:
        query = self._table("documents").select("*")
        if user_id is not None:
            query = query.eq("user_id", user_id)
        if knowledge_base_id is not None:
            query = query.eq("knowledge_base_id", knowledge_base_id)
        if status is not None:
            query = query.eq("status", str(getattr(status, "value", status)))
        rows = self._rows("list documents", query.order("created_at", desc=True))
        return [Document.model_validate(r) for r in rows]

    def update_document(self, document_id: str, fields: dict[str, Any]) -> Document:
        payload = Document.model_construct(**fields).model_dump(
            mode="json", include=set(fields)
        )
        row = self._one(
            "update document",
            self._table("documents").update(payload).eq("id", document_id),
        )
        return Document.model_validate(row)

    def delete_document(self, document_id: str) -> None:
        self._rows("delete document", self._table("documents").delete().eq("id", document_id))

    # --- Chunks ---------------------------------------------------------------

    def insert_chunk(self, chunk: DocumentChunk) -> DocumentChunk:
        row = chunk.model_dump(mode="json", exclude={"similarity"})
        self._rows("insert chunk", self._table("document_chunks").insert(row))
        return chunk

    def delete_chunks(self, document_id: str) -> None:
        self._rows(
            "delete chunks",
            self._table("document_chunks").delete().eq("document_id", document_id),
        )

    def count_chunks(self, document_id: str) -> int:
        response = self._run(
            "count chunks",
            lambda: self._table("document_chunks")
            .select("id", count="exact")
            .eq("document_id", document_id)
            .execute(),
        )
        return response.count or 0

    def match_document_chunks(
        self, query_embedding: list[float], match_count: int, user_id: str
    ) -> list[DocumentChunk]:
        rows = self._rows(
            "rpc match_document_chunks",
            self.client.rpc(
                "match_document_chunks",
                {
                    "query_embedding": query_embedding,
                    "match_count": match_count,
                    "user_id": user_id,
                },
            ),
        )
        return self._chunks("rpc match_document_chunks", rows)

    def public_match_document_chunks(
        self, chatbot_id: str, query_embedding: list[float], match_count: int
    ) -> list[DocumentChunk]:
        rows = self._rows(
            "rpc public_match_document_chunks",
            self.client.rpc(
                "public_match_document_chunks",
                {
                    "chatbot_id_param": chatbot_id,
                    "query_embedding": query_embedding,
                    "match_count": match_count,
                },
            ),
        )
        return self._chunks("rpc public_match_document_chunks", rows)

    def text_search_chunks(
        self,
        query: str,
        limit: int,
        user_id: Optional[str] = None,
        chatbot_id: Optional[str] = None,
    ) -> list[DocumentChunk]:
        tsquery = _fts_query(query)
        if not tsquery:
            return []

        if chatbot_id is not None:
            bot = self.get_chatbot(chatbot_id)
            if bot is None or not bot.knowledge_base_id:
                return []
            builder = (
                self._table("document_chunks")
                .select("*, documents!inner(knowledge_base_id, status)")
                .eq("documents.knowledge_base_id", bot.knowledge_base_id)
                .eq("documents.status", DocumentStatus.PROCESSED.value)
            )
        else:
            builder = self._table("document_chunks").select("*").eq("user_id", user_id)

        rows = self._rows("text search chunks", builder.fts("chunk_text", tsquery).limit(limit))
        for row in rows:
            row.pop("documents", None)
        return self._chunks("text search chunks", rows)

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
        self._rows(
            "rpc add_session_message",
            self.client.rpc(
                "add_session_message",
                {
                    "chatbot_id": chatbot_id,
                    "session_id": session_id,
                    "content": content,
                    "role": MessageRole(role).value,
                    "ip_address": ip_address,
                    "user_agent": user_agent,
                },
            ),
        )

    def list_messages(self, chatbot_ids: list[str]) -> list[ConversationMessage]:
        if not chatbot_ids:
            return []
        rows = self._rows(
            "list messages",
            self._table("messages")
            .select(
                "id, created_at, content, role, "
                "conversations!inner(chatbot_id, session_id, ip_address, user_agent)"
            )
            .in_("conversations.chatbot_id", chatbot_ids),
        )
        messages = []
        for row in rows:
            conv = row.pop("conversations", None) or {}
            messages.append(
                ConversationMessage(
                    id=row["id"],
                    created_at=row["created_at"],
                    content=row["content"],
                    role=row["role"],
                    chatbot_id=conv.get("chatbot_id"),
                    session_id=conv.get("session_id") or "",
                    ip_address=conv.get("ip_address"),
                    user_agent=conv.get("user_agent"),
                )
            )
        return messages

    # --- Chatbots -------------------------------------------------------------

    def insert_chatbot(self, chatbot: Chatbot) -> Chatbot:
        row = self._one("insert chatbot", self._table("chatbots").insert(chatbot.to_row()))
        return Chatbot.model_validate(row)

    def get_chatbot(self, chatbot_id: str) -> Optional[Chatbot]:
        rows = self._rows(
            "get chatbot",
            self._table("chatbots").select("*").eq("id", chatbot_id).limit(1),
        )
        return Chatbot.model_validate(rows[0]) if rows else None

    def list_chatbots(self, user_id: str) -> list[Chatbot]:
        rows = self._rows(
            "list chatbots",
            self._table("chatbots")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True),
        )
        return [Chatbot.model_validate(r) for r in rows]

    def update_chatbot(self, chatbot_id: str, fields: dict[str, Any]) -> Chatbot:
        payload = dict(fields)
        if "configuration" in payload and hasattr(payload["configuration"], "to_bag"):
            payload["configuration"] = payload["configuration"].to_bag()
        if "status" in payload:
            payload["status"] = str(getattr(payload["status"], "value", payload["status"]))
        payload["updated_at"] = utcnow().isoformat()
        row = self._one(
            "update chatbot",
            self._table("chatbots").update(payload).eq("id", chatbot_id),
        )
        return Chatbot.model_validate(row)

    def delete_chatbot(self, chatbot_id: str) -> None:
        self._rows("delete chatbot", self._table("chatbots").delete().eq("id", chatbot_id))

    # --- Knowledge bases -----------------------------------------------------

    def insert_knowledge_base(self, knowledge_base: KnowledgeBase) -> KnowledgeBase:
        row = self._one(
            "insert knowledge base",
            self._table("knowledge_bases").insert(knowledge_base.model_dump(mode="json")),
        )
        return KnowledgeBase.model_validate(row)

    def list_knowledge_bases(self, user_id: str) -> list[KnowledgeBase]:
        rows = self._rows(
            "list knowledge bases",
            self._table("knowledge_bases")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True),
        )
        return [KnowledgeBase.model_validate(r) for r in rows]

    def update_knowledge_base(self, knowledge_base_id: str, fields: dict[str, Any]) -> KnowledgeBase:
        row = self._one(
            "update knowledge base",
            self._table("knowledge_bases")
            .update({**fields, "updated_at": utcnow().isoformat()})
            .eq("id", knowledge_base_id),
        )
        return KnowledgeBase.model_validate(row)

    def delete_knowledge_base(self, knowledge_base_id: str) -> None:
        self._rows(
            "delete knowledge base",
            self._table("knowledge_bases").delete().eq("id", knowledge_base_id),
        )

    # --- Chatbot domains -----------------------------------------------------

    def insert_domain(self, domain: ChatbotDomain) -> ChatbotDomain:
        row = self._one(
            "insert domain",
            self._table("chatbot_domains").insert(domain.model_dump(mode="json")),
        )
        return ChatbotDomain.model_validate(row)

    def list_domains(self, chatbot_id: str) -> list[ChatbotDomain]:
        rows = self._rows(
            "list domains",
            self._table("chatbot_domains")
            .select("*")
            .eq("chatbot_id", chatbot_id)
            .order("created_at", desc=True),
        )
        return [ChatbotDomain.model_validate(r) for r in rows]

    def find_domain(self, chatbot_id: str, domain: str) -> Optional[ChatbotDomain]:
        rows = self._rows(
            "find domain",
            self._table("chatbot_domains")
            .select("*")
            .eq("chatbot_id", chatbot_id)
            .eq("domain", domain)
            .limit(1),
        )
        return ChatbotDomain.model_validate(rows[0]) if rows else None

    def find_active_domain(
        self, chatbot_id: str, domain: str, token: str
    ) -> Optional[ChatbotDomain]:
        rows = self._rows(
            "find active domain",
            self._table("chatbot_domains")
            .select("*")
            .eq("chatbot_id", chatbot_id)
            .eq("domain", domain)
            .eq("token", token)
            .eq("is_active", True)
            .limit(2),
        )
        if len(rows) != 1:
            return None
        return ChatbotDomain.model_validate(rows[0])

    def update_domain(self, domain_id: str, fields: dict[str, Any]) -> ChatbotDomain:
        row = self._one(
            "update domain",
            self._table("chatbot_domains")
            .update({**fields, "updated_at": utcnow().isoformat()})
            .eq("id", domain_id),
        )
        return ChatbotDomain.model_validate(row)

    def delete_domain(self, domain_id: str) -> None:
        self._rows("delete domain", self._table("chatbot_domains").delete().eq("id", domain_id))

    # --- Interactions ---------------------------------------------------------

    def record_interaction(self, interaction: UserInteraction) -> UserInteraction:
        row = interaction.model_dump(mode="json", exclude={"contact"})
        row.update(
            {
                "user_name": interaction.contact.name,
                "user_email": interaction.contact.email,
                "user_phone": interaction.contact.phone,
            }
        )
        self._rows("record interaction", self._table("user_interactions").insert(row))
        return interaction

    def list_interactions(self, chatbot_ids: list[str]) -> list[UserInteraction]:
        if not chatbot_ids:
            return []
        rows = self._rows(
            "list interactions",
            self._table("user_interactions").select("*").in_("chatbot_id", chatbot_ids),
        )
        interactions = []
        for row in rows:
            contact = ContactInfo(
                name=row.pop("user_name", None),
                email=row.pop("user_email", None),
                phone=row.pop("user_phone", None),
            )
            interactions.append(UserInteraction.model_validate({**row, "contact": contact}))
        return interactions
