"""Tests for the single-stage `clone`, `clean` and `upload` commands."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

from click.testing import CliRunner

from rag_pipeline.cli.stages import clean, clone, upload
from rag_pipeline.core.errors import ConfigurationError
from rag_pipeline.pipelines.models import (
    CollectionStats,
    EnrichmentStats,
    IndexingStats,
    StageResult,
)
from tests.fakes import ids, make_document, make_settings


def stage_result(name, documents, stats):
    return StageResult(stage=name, success=True, duration=0.2, documents=documents, stats=stats)


def mock_orchestrator(result=None, error=None):
    orchestrator = MagicMock()
    orchestrator.execute_stage = AsyncMock(return_value=result, side_effect=error)
    orchestrator.cleanup = AsyncMock()
    return orchestrator


def documents_json(*doc_ids):
    return json.dumps([make_document(doc_id).model_dump(mode="json") for doc_id in doc_ids])


class TestCloneCommand:
    def test_writes_collected_documents(self, tmp_path):
        runner = CliRunner()
        output = tmp_path / "out" / "clone.json"
        result_docs = [make_document("docA"), make_document("docB")]
        orchestrator = mock_orchestrator(
            stage_result("clone", result_docs, CollectionStats(total_documents=2, new_documents=2))
        )

        with (
            patch("rag_pipeline.cli.stages.ensure_valid_settings"),
            patch("rag_pipeline.cli.stages.build_orchestrator", return_value=orchestrator),
        ):
            result = runner.invoke(clone, ["--folders", "fldA,fldB", "--output", str(output)])

        assert result.exit_code == 0, result.output
        name, options = orchestrator.execute_stage.await_args.args
        assert name == "clone"
        assert options.folder_tokens == ["fldA", "fldB"]
        assert options.documents is None

        written = json.loads(output.read_text(encoding="utf-8"))
        assert written["stage"] == "clone"
        assert [doc["id"] for doc in written["documents"]] == ["docA", "docB"]
        assert "Wrote 2 documents" in result.output
        orchestrator.cleanup.assert_awaited_once()

    def test_requires_folder_tokens(self):
        runner = CliRunner()

        with (
            patch("rag_pipeline.cli.stages.settings", make_settings(folder_tokens=[])),
            patch("rag_pipeline.cli.stages.build_orchestrator") as mock_build,
        ):
            result = runner.invoke(clone, [])

        assert result.exit_code == 2
        assert "folder tokens" in result.output
        mock_build.assert_not_called()

    def test_invalid_configuration(self):
        runner = CliRunner()

        with (
            patch(
                "rag_pipeline.cli.stages.ensure_valid_settings",
                side_effect=ConfigurationError("SOURCE_APP_ID is not set"),
            ),
            patch("rag_pipeline.cli.stages.build_orchestrator") as mock_build,
        ):
            result = runner.invoke(clone, ["--folders", "fldA"])

        assert result.exit_code == 1
        assert "SOURCE_APP_ID" in result.output
        mock_build.assert_not_called()

    def test_stage_error_exits_nonzero(self):
        runner = CliRunner()
        orchestrator = mock_orchestrator(error=RuntimeError("drive unreachable"))

        with (
            patch("rag_pipeline.cli.stages.ensure_valid_settings"),
            patch("rag_pipeline.cli.stages.build_orchestrator", return_value=orchestrator),
        ):
            result = runner.invoke(clone, ["--folders", "fldA"])

        assert result.exit_code == 1
        assert "drive unreachable" in result.output
        orchestrator.cleanup.assert_awaited_once()


class TestCleanCommand:
    def test_json_summary(self):
        runner = CliRunner()
        orchestrator = mock_orchestrator(
            stage_result(
                "clean",
                [make_document("docA")],
                EnrichmentStats(total_documents=1, new_documents=1, ai_processed_documents=1),
            )
        )

        with (
            patch("rag_pipeline.cli.stages.ensure_valid_settings"),
            patch("rag_pipeline.cli.stages.build_orchestrator", return_value=orchestrator),
        ):
            result = runner.invoke(
                clean, ["--documents", documents_json("docA"), "--force", "--json"]
            )

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["stage"] == "clean"
        assert data["document_count"] == 1
        assert data["stats"]["ai_processing_rate"] == 1.0

        name, options = orchestrator.execute_stage.await_args.args
        assert name == "clean"
        assert options.force is True
        assert ids(options.documents) == ["docA"]

    def test_requires_documents(self):
        runner = CliRunner()
        result = runner.invoke(clean, [])
        assert result.exit_code == 2
        assert "input document set is required" in result.output

    def test_rejects_invalid_json(self):
        runner = CliRunner()
        result = runner.invoke(clean, ["--documents", "{not json"])
        assert result.exit_code == 2
        assert "Invalid documents JSON" in result.output

    def test_rejects_both_inputs(self, tmp_path):
        path = tmp_path / "docs.json"
        path.write_text(documents_json("docA"), encoding="utf-8")
        runner = CliRunner()

        result = runner.invoke(
            clean, ["--documents", documents_json("docB"), "--documents-file", str(path)]
        )

        assert result.exit_code == 2


class TestUploadCommand:
    def test_reads_previous_stage_output(self, tmp_path):
        path = tmp_path / "clean.json"
        payload = {
            "stage": "clean",
            "documents": json.loads(documents_json("docA_part1", "docA_part2")),
        }
        path.write_text(json.dumps(payload), encoding="utf-8")
        runner = CliRunner()
        orchestrator = mock_orchestrator(
            stage_result(
                "upload",
                [],
                IndexingStats(total_documents=2, failed_documents=2, indexed_documents=0),
            )
        )

        with (
            patch("rag_pipeline.cli.stages.ensure_valid_settings"),
            patch("rag_pipeline.cli.stages.build_orchestrator", return_value=orchestrator),
        ):
            result = runner.invoke(upload, ["--documents-file", str(path), "--batch-size", "5"])

        assert result.exit_code == 0, result.output
        name, options = orchestrator.execute_stage.await_args.args
        assert name == "upload"
        assert options.batch_size == 5
        assert ids(options.documents) == ["docA_part1", "docA_part2"]
        assert "Stage upload completed" in result.output

    def test_missing_documents_file(self):
        runner = CliRunner()
        result = runner.invoke(upload, ["--documents-file", "/nonexistent/docs.json"])
        assert result.exit_code == 2
