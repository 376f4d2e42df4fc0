"""Tests for the knowledge-base CLI commands."""
import pytest
from typer.testing import CliRunner

import kbchat.main as cli
from conftest import SAMPLE_TEXT, FakeOpenAI
from kbchat.config import Credentials, Settings
from kbchat.serving.services import build_services

runner = CliRunner()


@pytest.fixture
def services(store, monkeypatch):
    svc = build_services(Settings(credentials=Credentials(openai_api_key="sk-test")), store=store)
    svc.embedder._client = FakeOpenAI()
    monkeypatch.setattr(cli, "_services", lambda config: svc)
    return svc


class TestKnowledgeBaseCommands:

    def test_create_with_files_then_list(self, services, tmp_path):
        faq = tmp_path / "faq.txt"
        faq.write_text(SAMPLE_TEXT)
        slides = tmp_path / "slides.pptx"
        slides.write_bytes(b"binary")

        result = runner.invoke(cli.app, ["kb", "create", "Support docs", str(faq), str(slides), "--user", "u1"])

        assert result.exit_code == 0, result.output
        assert "faq.txt" in result.output
        assert "slides.pptx" in result.output
        (kb,) = services.knowledge_bases.list("u1")
        assert [d.filename for d in services.knowledge_bases.documents(kb.id)] == ["faq.txt"]

        listed = runner.invoke(cli.app, ["kb", "list", "--user", "u1"])
        assert "Support docs" in listed.output

    def test_interrupt_cancels_uploads(self, services, tmp_path, monkeypatch):
        faq = tmp_path / "faq.txt"
        faq.write_text(SAMPLE_TEXT)
        cancelled = []

        def interrupted(kb, files, batch=None):
            raise KeyboardInterrupt

        monkeypatch.setattr(services.knowledge_bases, "add_documents", interrupted)
        monkeypatch.setattr(services.knowledge_bases, "cancel_uploads", cancelled.append)

        result = runner.invoke(cli.app, ["kb", "create", "Support docs", str(faq), "--user", "u1"])

        assert result.exit_code == 130
        (kb,) = services.knowledge_bases.list("u1")
        assert cancelled == [kb.id]

    def test_rename_and_delete(self, services):
        kb = services.knowledge_bases.create("u1", "Support docs")

        renamed = runner.invoke(cli.app, ["kb", "rename", kb.id, "Help centre"])
        assert renamed.exit_code == 0
        assert services.knowledge_bases.list("u1")[0].name == "Help centre"

        deleted = runner.invoke(cli.app, ["kb", "delete", kb.id, "--yes"])
        assert deleted.exit_code == 0
        assert services.knowledge_bases.list("u1") == []

    def test_blank_name_fails(self, services):
        result = runner.invoke(cli.app, ["kb", "create", "   "])
        assert result.exit_code == 1
