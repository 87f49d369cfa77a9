"""
Tests for the command-line entry point.

Run with: python -m pytest mediextract/tests/test_main.py -v
"""

import json
import sys
from unittest.mock import MagicMock, patch

import pytest

from mediextract import main as cli
from mediextract.models.records import DocumentResult, DocumentStatus
from mediextract.tests.conftest import valid_records


def run_cli(monkeypatch, *args):
    monkeypatch.setattr(sys, "argv", ["mediextract", *args])
    cli.main()


class TestMain:
    def test_show_stages(self, monkeypatch, capsys):
        run_cli(monkeypatch, "--show-stages")
        out = capsys.readouterr().out
        assert "PIPELINE STAGES" in out
        assert "export_validation" in out

    def test_pdf_required(self, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc_info:
            run_cli(monkeypatch)
        assert exc_info.value.code == 1
        assert "--pdf is required" in capsys.readouterr().out

    def test_api_key_required(self, monkeypatch, capsys):
        monkeypatch.setattr(cli.settings, "gemini_api_key", "")
        with pytest.raises(SystemExit) as exc_info:
            run_cli(monkeypatch, "--pdf", "trial.pdf")
        assert exc_info.value.code == 1
        assert "GEMINI_API_KEY" in capsys.readouterr().out

    def test_show_history(self, monkeypatch, capsys):
        history = MagicMock()
        history.list_results.return_value = [
            DocumentResult(file_name="a.pdf", status=DocumentStatus.COMPLETED, records=valid_records())
        ]
        with patch.object(cli, "HistoryService", return_value=history):
            run_cli(monkeypatch, "--show-history", "5")

        history.list_results.assert_called_once_with(limit=5)
        assert "a.pdf" in capsys.readouterr().out

    def test_batch_writes_outputs_and_fails_on_error(self, monkeypatch, tmp_path, capsys):
        results = [
            DocumentResult(file_name="a.pdf", status=DocumentStatus.COMPLETED, records=valid_records()),
            DocumentResult(file_name="b.pdf", status=DocumentStatus.ERROR, error="Stage 'intake' failed"),
        ]
        orchestrator = MagicMock()

        async def run_batch(paths):
            return results

        orchestrator.run_batch = run_batch
        monkeypatch.setattr(cli.settings, "gemini_api_key", "test-key")

        with patch.object(cli, "GeminiService"), \
                patch.object(cli, "PipelineOrchestrator", return_value=orchestrator), \
                pytest.raises(SystemExit) as exc_info:
            run_cli(monkeypatch, "--pdf", "a.pdf", "b.pdf", "--output", str(tmp_path), "--no-history")

        assert exc_info.value.code == 1
        saved = json.loads((tmp_path / cli.RESULTS_FILE).read_text(encoding="utf-8"))
        assert [r["file_name"] for r in saved] == ["a.pdf", "b.pdf"]
        assert (tmp_path / cli.WIDE_CSV_FILE).exists()
        assert "Batch complete!" in capsys.readouterr().out
