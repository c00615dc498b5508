import json

import pytest
from typer.testing import CliRunner

from primer.cli import main as cli
from primer.core import pipeline as pipeline_module
from primer.core.faiss_index import FaissVectorStore
from primer.core.models import ChunkMetadata, IndexedRecord

from conftest import DIMENSIONS, E2E_TEXT, FakeEmbeddingProvider, write_pdf

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path, pipeline):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PRIMER_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setattr(cli, "build_pipeline", lambda config, on_progress=None, load_index=True: pipeline)


class TestIngest:
    def test_success(self, pdf_dir, store):
        result = runner.invoke(cli.app, ["ingest", str(pdf_dir)])
        assert result.exit_code == 0, result.output
        assert "Ingestion complete" in result.output
        assert store.stats().vector_count > 0

    def test_missing_directory(self, tmp_path):
        result = runner.invoke(cli.app, ["ingest", str(tmp_path / "nope")])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_directory_without_pdfs(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        result = runner.invoke(cli.app, ["ingest", str(empty)])
        assert result.exit_code == 1

    def test_partial_failure_exits_non_zero(self, pdf_dir):
        (pdf_dir / "broken.pdf").write_bytes(b"garbage")
        result = runner.invoke(cli.app, ["ingest", str(pdf_dir)])
        assert result.exit_code == 1
        assert "broken.pdf" in result.output

    def test_reprocess_clears_first(self, pdf_dir, pipeline, store):
        pipeline.ingest_text(E2E_TEXT, source="old.txt", document_id="doc_old")
        result = runner.invoke(cli.app, ["reprocess", str(pdf_dir), "--yes"])
        assert result.exit_code == 0, result.output
        assert store.ids_matching({"document_id": "doc_old"}) == []


class TestQuery:
    def test_json_results(self, pipeline):
        pipeline.ingest_text(E2E_TEXT, source="intro.txt")
        result = runner.invoke(cli.app, ["query", "Basics text here.", "--top-k", "2", "--json"])
        assert result.exit_code == 0, result.output
        matches = json.loads(result.output)
        assert len(matches) == 2
        assert matches[0]["metadata"]["text"] == "Basics text here."

    def test_table_results(self, pipeline):
        pipeline.ingest_text(E2E_TEXT, source="intro.txt")
        result = runner.invoke(cli.app, ["query", "basics", "--type", "section-marker"])
        assert result.exit_code == 0, result.output
        assert "Results for" in result.output

    def test_no_results(self):
        result = runner.invoke(cli.app, ["query", "anything"])
        assert result.exit_code == 0
        assert "No results found" in result.output

    def test_invalid_top_k(self):
        result = runner.invoke(cli.app, ["query", "cells", "--top-k", "0"])
        assert result.exit_code == 1


class TestOutlineAndStats:
    def test_outline(self, tmp_path):
        path = write_pdf(tmp_path / "book.pdf", ["Chapter 1: Cells", "1.1 Membranes", "Text."])
        result = runner.invoke(cli.app, ["outline", str(path)])
        assert result.exit_code == 0, result.output
        assert "Cells" in result.output

    def test_outline_missing_file(self, tmp_path):
        result = runner.invoke(cli.app, ["outline", str(tmp_path / "missing.pdf")])
        assert result.exit_code == 1

    def test_stats(self):
        result = runner.invoke(cli.app, ["stats"])
        assert result.exit_code == 0, result.output
        assert "Vectors: 0" in result.output


class TestClear:
    def test_with_yes(self, pipeline, store):
        pipeline.ingest_text(E2E_TEXT, source="intro.txt")
        result = runner.invoke(cli.app, ["clear", "--yes"])
        assert result.exit_code == 0
        assert store.stats().vector_count == 0

    def test_declined(self, pipeline, store):
        pipeline.ingest_text(E2E_TEXT, source="intro.txt")
        result = runner.invoke(cli.app, ["clear"], input="n\n")
        assert result.exit_code == 1
        assert store.stats().vector_count == 4


class TestConfigCommand:
    def test_set_and_show(self, tmp_path):
        result = runner.invoke(cli.app, ["config", "set", "chunk_size", "1500"])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "config" / "primer_cli.json").exists()

        shown = runner.invoke(cli.app, ["config", "show"])
        assert "chunk_size" in shown.output and "1500" in shown.output

    @pytest.mark.parametrize("args", [
        ["config", "set", "chunk_overlap", "5000"],
        ["config", "set", "no_such_key", "1"],
        ["config", "set", "chunk_size"],
        ["config", "reset", "no_such_key"],
        ["config", "explode"],
    ])
    def test_errors_exit_non_zero(self, args):
        assert runner.invoke(cli.app, args).exit_code == 1

    def test_reset_and_validate(self):
        runner.invoke(cli.app, ["config", "set", "chunk_size", "1500"])
        assert runner.invoke(cli.app, ["config", "reset"]).exit_code == 0
        result = runner.invoke(cli.app, ["config", "validate"])
        assert result.exit_code == 0, result.output
        assert "OPENAI_API_KEY" in result.output


class TestDimensionChange:
    """A saved index written with different embedding dimensions."""

    @pytest.fixture(autouse=True)
    def stale_index(self, isolated, monkeypatch, tmp_path):
        store = FaissVectorStore(DIMENSIONS, index_path=tmp_path / "index")
        metadata = ChunkMetadata(
            document_id="doc_old", source="old.pdf", chunk_id="doc_old_c0", chunk_index=0,
            total_chunks=1, chunk_type="content", text="Old text.",
        )
        store.upsert([IndexedRecord(id="doc_old_c0", values=[1.0] * DIMENSIONS, metadata=metadata)])
        store.persist()

        monkeypatch.setenv("PRIMER_EMBEDDING_DIMENSIONS", "16")
        monkeypatch.setattr(pipeline_module, "build_provider",
                            lambda config: (FakeEmbeddingProvider(16), config))
        monkeypatch.setattr(cli, "build_pipeline", pipeline_module.build_pipeline)

    def test_mismatch_is_reported(self):
        result = runner.invoke(cli.app, ["stats"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_clear_rebuilds_index(self):
        result = runner.invoke(cli.app, ["clear", "--yes"])
        assert result.exit_code == 0, result.output

        stats = runner.invoke(cli.app, ["stats"])
        assert stats.exit_code == 0, stats.output
        assert "Vectors: 0" in stats.output
        assert "Dimensions: 16" in stats.output

    def test_reprocess_rebuilds_index(self, pdf_dir):
        result = runner.invoke(cli.app, ["reprocess", str(pdf_dir), "--yes"])
        assert result.exit_code == 0, result.output
        assert "Ingestion complete" in result.output
