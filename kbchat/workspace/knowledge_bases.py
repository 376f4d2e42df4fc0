"""Knowledge base management, including creating one together with its first uploads."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from kbchat.errors import KBChatError, ValidationError
from kbchat.ingestion.pipeline import IngestionPipeline, UploadBatch
from kbchat.schemas import Document, DocumentStatus, KnowledgeBase
from kbchat.storage.store import KnowledgeStore


@dataclass
class UploadFile:
    filename: str
    data: bytes
    media_type: str


@dataclass
class KnowledgeBaseCreation:
    knowledge_base: KnowledgeBase
    documents: list[Document] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


class KnowledgeBaseManager:
    """
    Usage:
        manager = KnowledgeBaseManager(store, pipeline)
        result = manager.create_with_documents(user_id, "Support", files)

    While a knowledge base's uploads are running, its UploadBatch is kept
    under the knowledge base id so another caller can cancel_uploads() it.
    """

    def __init__(self, store: KnowledgeStore, pipeline: Optional[IngestionPipeline] = None) -> None:
        self.store = store
        self.pipeline = pipeline
        self._batches: dict[str, UploadBatch] = {}
        self._lock = threading.Lock()

    def create(self, user_id: str, name: str, description: Optional[str] = None) -> KnowledgeBase:
        if not name.strip():
            raise ValidationError("Knowledge base name is required")
        kb = self.store.insert_knowledge_base(
            KnowledgeBase(user_id=user_id, name=name.strip(), description=description or None)
        )
        logger.info(f"[KnowledgeBases] Created {kb.name!r} ({kb.id})")
        return kb

    def create_with_documents(
        self,
        user_id: str,
        name: str,
        files: list[UploadFile],
        description: Optional[str] = None,
        batch: Optional[UploadBatch] = None,
    ) -> KnowledgeBaseCreation:
        """Create the knowledge base, then ingest each file into it in order."""
        if self.pipeline is None:
            raise ValidationError("No ingestion pipeline configured")
        kb = self.create(user_id, name, description)
        return self.add_documents(kb, files, batch=batch)

    # --- Uploads ----------------------------------------------------------------

    def open_batch(self, knowledge_base_id: str) -> UploadBatch:
        """Register (or return) the in-flight batch for a knowledge base."""
        with self._lock:
            return self._batches.setdefault(knowledge_base_id, UploadBatch())

    def cancel_uploads(self, knowledge_base_id: str) -> int:
        """Abort the knowledge base's running and not yet started uploads."""
        with self._lock:
            batch = self._batches.get(knowledge_base_id)
        if batch is None:
            return 0
        return batch.cancel_all()

    def add_documents(
        self,
        kb: KnowledgeBase,
        files: list[UploadFile],
        batch: Optional[UploadBatch] = None,
    ) -> KnowledgeBaseCreation:
        """
        Ingest each file into `kb` in order.

        A file that fails is recorded in `errors` and the rest continue.
        Cancelling the batch stops whichever file is in flight and every file
        not yet started.
        """
        if self.pipeline is None:
            raise ValidationError("No ingestion pipeline configured")

        if batch is None:
            batch = self.open_batch(kb.id)
        else:
            with self._lock:
                self._batches[kb.id] = batch

        result = KnowledgeBaseCreation(knowledge_base=kb)
        handles = [batch.new_handle(f.filename) for f in files]
        try:
            for upload, handle in zip(files, handles):
                if handle.aborted:
                    result.errors[upload.filename] = "cancelled"
                    continue
                try:
                    doc = self.pipeline.ingest(
                        kb.user_id,
                        upload.filename,
                        upload.data,
                        upload.media_type,
                        knowledge_base_id=kb.id,
                        handle=handle,
                    )
                    result.documents.append(doc)
                except KBChatError as exc:
                    result.errors[upload.filename] = str(exc)
        finally:
            with self._lock:
                if self._batches.get(kb.id) is batch:
                    del self._batches[kb.id]

        logger.info(
            f"[KnowledgeBases] {kb.id}: {len(result.documents)} ingested, "
            f"{len(result.errors)} failed"
        )
        return result

    # --- CRUD -------------------------------------------------------------------

    def list(self, user_id: str) -> list[KnowledgeBase]:
        return self.store.list_knowledge_bases(user_id)

    def rename(self, knowledge_base_id: str, name: str, description: Optional[str] = None) -> KnowledgeBase:
        if not name.strip():
            raise ValidationError("Knowledge base name is required")
        fields = {"name": name.strip()}
        if description is not None:
            fields["description"] = description
        return self.store.update_knowledge_base(knowledge_base_id, fields)

    def delete(self, knowledge_base_id: str) -> None:
        self.cancel_uploads(knowledge_base_id)
        self.store.delete_knowledge_base(knowledge_base_id)
        logger.info(f"[KnowledgeBases] Deleted {knowledge_base_id}")

    def documents(self, knowledge_base_id: str) -> list[Document]:
        """Processed documents of a knowledge base, newest first."""
        return self.store.list_documents(
            knowledge_base_id=knowledge_base_id, status=DocumentStatus.PROCESSED
        )
