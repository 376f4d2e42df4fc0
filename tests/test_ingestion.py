"""Tests for the ingestion pipeline: upload, process, cancel, reprocess, delete."""
import openai
import pytest

from conftest import SAMPLE_TEXT, make_pdf
from kbchat.errors import ExtractionError, IngestionCancelledError, StorageError, UpstreamError
from kbchat.ingestion.pipeline import IngestionHandle, UploadBatch
from kbchat.schemas import DocumentChunk, DocumentStatus

USER = "owner-1"


def _ingest(pipeline, text=SAMPLE_TEXT, **kwargs):
    return pipeline.ingest(USER, "faq.txt", text.encode(), "text/plain", **kwargs)


class TestIngest:

    def test_successful_ingest(self, pipeline, store):
        document = _ingest(pipeline)

        assert document.status == DocumentStatus.PROCESSED
        assert document.processed_at is not None
        assert document.file_size == len(SAMPLE_TEXT.encode())
        assert document.storage_path.startswith(f"{USER}/")
        assert document.storage_path.endswith(".txt")
        assert store.download_blob("documents", document.storage_path) == SAMPLE_TEXT.encode()

        chunks = sorted(
            (c for c in store.chunks.values() if c.document_id == document.id),
            key=lambda c: c.chunk_index,
        )
        assert len(chunks) >= 2
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert all(c.user_id == USER and c.embedding for c in chunks)

    def test_one_embedding_call_per_chunk(self, pipeline, openai_client):
        document = _ingest(pipeline)
        assert len(openai_client.embedding_calls) == pipeline.count_chunks(document.id)

    def test_start_leaves_document_processing(self, pipeline):
        document = pipeline.start(USER, "faq.txt", SAMPLE_TEXT.encode(), "text/plain", knowledge_base_id="kb-1")
        assert document.status == DocumentStatus.PROCESSING
        assert document.knowledge_base_id == "kb-1"
        assert pipeline.count_chunks(document.id) == 0

    def test_progress_reported_per_chunk(self, pipeline):
        seen = []
        document = _ingest(pipeline, on_progress=lambda done, total: seen.append((done, total)))

        total = pipeline.count_chunks(document.id)
        assert seen == [(i, total) for i in range(1, total + 1)]


class TestFailures:

    def test_extraction_failure_marks_document_failed(self, pipeline, store):
        with pytest.raises(ExtractionError):
            pipeline.ingest(USER, "blank.pdf", make_pdf(2), "application/pdf")

        (document,) = store.list_documents(user_id=USER)
        assert document.status == DocumentStatus.FAILED
        assert document.processed_at is not None

    def test_embedding_failure_marks_document_failed(self, pipeline, store, openai_client):
        openai_client.error = openai.OpenAIError("quota exceeded")
        with pytest.raises(UpstreamError):
            _ingest(pipeline)

        (document,) = store.list_documents(user_id=USER)
        assert document.status == DocumentStatus.FAILED

    def test_upload_failure_creates_no_document(self, pipeline, store, monkeypatch):
        def refuse(*args, **kwargs):
            raise StorageError("bucket unavailable")

        monkeypatch.setattr(store, "upload_blob", refuse)
        with pytest.raises(StorageError):
            _ingest(pipeline)
        assert store.list_documents(user_id=USER) == []


class TestCancellation:

    def test_aborted_handle_stops_before_first_chunk(self, pipeline, store):
        handle = IngestionHandle("faq.txt")
        handle.abort()

        with pytest.raises(IngestionCancelledError, match="faq.txt"):
            _ingest(pipeline, handle=handle)

        (document,) = store.list_documents(user_id=USER)
        assert document.status == DocumentStatus.FAILED
        assert pipeline.count_chunks(document.id) == 0

    def test_abort_mid_document_keeps_written_chunks(self, pipeline, store):
        handle = IngestionHandle()

        def stop_after_first(done, total):
            handle.abort()

        with pytest.raises(IngestionCancelledError):
            _ingest(pipeline, handle=handle, on_progress=stop_after_first)

        (document,) = store.list_documents(user_id=USER)
        assert pipeline.count_chunks(document.id) == 1

    def test_cancel_all_counts_only_pending_handles(self):
        batch = UploadBatch()
        first = batch.new_handle("a.txt")
        batch.new_handle("b.txt")
        first.abort()

        assert batch.cancel_all() == 1
        assert all(h.aborted for h in batch.handles)
        assert batch.cancel_all() == 0

    def test_handles_opened_after_cancel_start_aborted(self):
        batch = UploadBatch()
        assert batch.cancel_all() == 0

        late = batch.new_handle("late.txt")

        assert batch.cancelled
        assert late.aborted


class TestReprocessAndDelete:

    def test_reprocess_replaces_partial_chunks(self, pipeline, store):
        document = _ingest(pipeline)
        expected = pipeline.count_chunks(document.id)
        store.insert_chunk(
            DocumentChunk(document_id=document.id, user_id=USER, chunk_text="stale", chunk_index=99)
        )

        reprocessed = pipeline.reprocess(document.id)

        assert reprocessed.status == DocumentStatus.PROCESSED
        assert pipeline.count_chunks(document.id) == expected
        assert "stale" not in {c.chunk_text for c in store.chunks.values()}

    def test_reprocess_recovers_failed_document(self, pipeline, store, openai_client):
        openai_client.error = openai.OpenAIError("timeout")
        with pytest.raises(UpstreamError):
            _ingest(pipeline)
        (failed,) = store.list_documents(user_id=USER)

        openai_client.error = None
        document = pipeline.reprocess(failed.id)

        assert document.status == DocumentStatus.PROCESSED
        assert pipeline.count_chunks(document.id) > 0

    def test_delete_removes_blob_row_and_chunks(self, pipeline, store):
        document = _ingest(pipeline)
        pipeline.delete_document(document.id)

        assert store.get_document(document.id) is None
        assert pipeline.count_chunks(document.id) == 0
        assert ("documents", document.storage_path) not in store.blobs

    def test_list_documents_newest_first(self, pipeline):
        first = _ingest(pipeline)
        second = pipeline.ingest(USER, "other.txt", SAMPLE_TEXT.encode(), "text/plain")

        listed = pipeline.list_documents(USER)
        assert [d.id for d in listed] == [second.id, first.id]


def test_attachment_extraction_is_page_capped(pipeline):
    with pytest.raises(ExtractionError):
        pipeline.extract_attachment(make_pdf(6), "application/pdf")
    assert pipeline.extract_attachment(b"order #123 is late", "text/plain") == "order #123 is late"
