"""
Ingestion Pipeline - Upload, Extract, Chunk, Embed, Persist
-------------------------------------------------------------
Turns one uploaded file into a processed Document with its chunk rows.

  start()    1. upload raw bytes to the documents bucket as
                {user_id}/{timestamp_ms}.{ext}   (failure -> StorageError,
                no Document row is created)
             2. insert the Document row with status=processing and return it
  process()  3. clear any chunks left by an earlier attempt
             4. extract text  ->  5. segment  ->  6. for each segment, in
                order: embed, insert chunk row
             7. status=processed + processed_at
             On any failure in 3-6: status=failed + processed_at, re-raise.
  ingest()   start() followed by process().
  reprocess() re-downloads the stored blob and runs process() again.

Chunks within one document are strictly sequential: chunk N+1 is never
embedded before chunk N is stored.  Separate documents are independent calls
and may run concurrently.

Cancellation: every process() call may carry an IngestionHandle.  Aborting
it stops the loop before the next chunk; chunks already written stay until
the next process()/reprocess() of that document clears them.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from langsmith import traceable
from loguru import logger

from kbchat.chunking.chunker import TextSegmenter, build_segmenter
from kbchat.config import Settings
from kbchat.embedding.embedder import Embedder
from kbchat.errors import IngestionCancelledError, StorageError
from kbchat.extraction.extractor import TextExtractor
from kbchat.schemas import Document, DocumentChunk, DocumentStatus
from kbchat.storage.store import KnowledgeStore
from kbchat.utils.helpers import file_extension, utcnow

# (chunks_done, chunks_total)
ProgressCallback = Callable[[int, int], None]


# --- Cancellation handles ---------------------------------------------------

class IngestionHandle:
    """Abort flag for one in-flight document."""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._event = threading.Event()

    def abort(self) -> None:
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise IngestionCancelledError(f"Upload cancelled: {self.label or 'document'}")


@dataclass
class UploadBatch:
    """
    The handles of every upload started from one place (e.g. a knowledge
    base being created with several files).  cancel_all() aborts all of them,
    and handles opened after that start out aborted.
    """

    handles: list[IngestionHandle] = field(default_factory=list)
    cancelled: bool = False

    def new_handle(self, label: str = "") -> IngestionHandle:
        handle = IngestionHandle(label)
        if self.cancelled:
            handle.abort()
        self.handles.append(handle)
        return handle

    def cancel_all(self) -> int:
        self.cancelled = True
        pending = [h for h in self.handles if not h.aborted]
        for handle in pending:
            handle.abort()
        if pending:
            logger.warning(f"[Ingestion] Cancelled {len(pending)} in-flight upload(s)")
        return len(pending)


# --- Pipeline -----------------------------------------------------------------

class IngestionPipeline:
    """
    Usage:
        pipeline = IngestionPipeline(store, embedder)
        doc = pipeline.ingest(user_id, "guide.pdf", raw, "application/pdf")
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: Embedder,
        segmenter: Optional[TextSegmenter] = None,
        extractor: Optional[TextExtractor] = None,
        documents_bucket: str = "documents",
        attachment_max_pages: int = 5,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.segmenter = segmenter or build_segmenter()
        self.extractor = extractor or TextExtractor()
        self.documents_bucket = documents_bucket
        self.attachment_max_pages = attachment_max_pages

    @classmethod
    def from_settings(
        cls, settings: Settings, store: KnowledgeStore, embedder: Embedder
    ) -> "IngestionPipeline":
        chunking = settings.chunking
        return cls(
            store=store,
            embedder=embedder,
            segmenter=build_segmenter(
                strategy=chunking.strategy,
                chunk_size=chunking.chunk_size,
                overlap=chunking.overlap,
                min_chunk_chars=chunking.min_chunk_chars,
                token_window=chunking.token_window,
                token_overlap=chunking.token_overlap,
            ),
            documents_bucket=settings.storage.documents_bucket,
            attachment_max_pages=settings.ingestion.chat_attachment_max_pages,
        )

    # -- Steps 1-2 -------------------------------------------------------------

    def start(
        self,
        user_id: str,
        filename: str,
        data: bytes,
        media_type: str,
        knowledge_base_id: Optional[str] = None,
    ) -> Document:
        """Upload the blob and create the Document row in `processing` state."""
        key = f"{user_id}/{int(time.time() * 1000)}.{file_extension(filename)}"

        logger.info(f"[Ingestion] Uploading {filename!r} ({len(data)} bytes) -> {key}")
        self.store.upload_blob(self.documents_bucket, key, data, media_type)

        document = self.store.insert_document(
            Document(
                user_id=user_id,
                knowledge_base_id=knowledge_base_id,
                filename=filename,
                file_size=len(data),
                file_type=media_type,
                status=DocumentStatus.PROCESSING,
                storage_path=key,
            )
        )
        logger.info(f"[Ingestion] Document {document.id} created (processing)")
        return document

    # -- Steps 3-7 -------------------------------------------------------------

    @traceable(name="ingest_document", run_type="chain")
    def process(
        self,
        document: Document,
        data: bytes,
        handle: Optional[IngestionHandle] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Document:
        """Extract, segment, embed and store one document's chunks."""
        started = time.perf_counter()
        try:
            self.store.delete_chunks(document.id)
            text = self.extractor.extract(data, document.file_type)
            segments = self.segmenter.split(text)
            logger.info(
                f"[Ingestion] {document.filename}: {len(text)} chars -> "
                f"{len(segments)} chunks ({self.segmenter.name})"
            )

            for index, chunk_text in enumerate(segments):
                if handle is not None:
                    handle.check()
                embedding = self.embedder.embed(chunk_text)
                self.store.insert_chunk(
                    DocumentChunk(
                        document_id=document.id,
                        user_id=document.user_id,
                        chunk_text=chunk_text,
                        embedding=embedding,
                        chunk_index=index,
                    )
                )
                logger.debug(f"[Ingestion] Saved chunk {index + 1}/{len(segments)}")
                if on_progress is not None:
                    on_progress(index + 1, len(segments))

        except Exception as exc:
            logger.error(f"[Ingestion] Failed to process {document.id}: {exc}")
            self._mark_failed(document.id)
            raise

        processed = self.store.update_document(
            document.id,
            {"status": DocumentStatus.PROCESSED, "processed_at": utcnow()},
        )
        logger.info(
            f"[Ingestion] Document {document.id} processed | {len(segments)} chunks | "
            f"{time.perf_counter() - started:.2f}s"
        )
        return processed

    def ingest(
        self,
        user_id: str,
        filename: str,
        data: bytes,
        media_type: str,
        knowledge_base_id: Optional[str] = None,
        handle: Optional[IngestionHandle] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Document:
        """start() then process(), synchronously."""
        document = self.start(user_id, filename, data, media_type, knowledge_base_id)
        return self.process(document, data, handle=handle, on_progress=on_progress)

    def reprocess(
        self,
        document_id: str,
        handle: Optional[IngestionHandle] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Document:
        """Re-run extraction/segmentation/embedding from the stored blob."""
        document = self._require(document_id)
        if not document.storage_path:
            raise StorageError(f"Document {document_id} has no stored file to reprocess")

        data = self.store.download_blob(self.documents_bucket, document.storage_path)
        document = self.store.update_document(
            document_id, {"status": DocumentStatus.PROCESSING, "processed_at": None}
        )
        logger.info(f"[Ingestion] Reprocessing {document_id} from {document.storage_path}")
        return self.process(document, data, handle=handle, on_progress=on_progress)

    # -- Document management ---------------------------------------------------

    def list_documents(
        self, user_id: str, knowledge_base_id: Optional[str] = None
    ) -> list[Document]:
        return self.store.list_documents(user_id=user_id, knowledge_base_id=knowledge_base_id)

    def count_chunks(self, document_id: str) -> int:
        return self.store.count_chunks(document_id)

    def delete_document(self, document_id: str) -> None:
        """Remove the stored file (best effort) and the row; chunks cascade."""
        document = self._require(document_id)
        if document.storage_path:
            try:
                self.store.remove_blob(self.documents_bucket, document.storage_path)
            except StorageError as exc:
                logger.warning(f"[Ingestion] Failed to delete file from storage: {exc}")
        self.store.delete_document(document_id)
        logger.info(f"[Ingestion] Document {document_id} and its chunks deleted")

    def extract_attachment(self, data: bytes, media_type: str) -> str:
        """Text of a file attached in chat (page-capped, nothing persisted)."""
        return self.extractor.extract(data, media_type, max_pages=self.attachment_max_pages)

    # -- Internals -------------------------------------------------------------

    def _require(self, document_id: str) -> Document:
        document = self.store.get_document(document_id)
        if document is None:
            raise StorageError(f"Document {document_id} not found")
        return document

    def _mark_failed(self, document_id: str) -> None:
        try:
            self.store.update_document(
                document_id,
                {"status": DocumentStatus.FAILED, "processed_at": utcnow()},
            )
        except StorageError as exc:
            logger.error(f"[Ingestion] Could not mark {document_id} failed: {exc}")
