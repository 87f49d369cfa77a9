"""
Unit tests for wide CSV and JSON export.

Run with: python -m pytest mediextract/tests/test_export_service.py -v
"""

import csv
import json

from mediextract.models.records import DocumentResult, DocumentStatus
from mediextract.services.export_service import (
    SOURCE_FILE_HEADER,
    build_headers,
    build_wide_row,
    write_results_json,
    write_wide_csv,
)
from mediextract.tests.conftest import make_record, valid_records


def completed(file_name, records):
    return DocumentResult(file_name=file_name, status=DocumentStatus.COMPLETED, records=records)


class TestWideRows:
    def test_headers_follow_schema_order(self, schema):
        headers = build_headers(schema)
        assert headers[0] == SOURCE_FILE_HEADER
        assert headers[1] == "Study Design | Number of comparative groups described"
        assert headers[-1] == "Outcomes | Extractor"
        assert len(headers) == schema.question_count + 1

    def test_row_aligned_with_headers(self, schema):
        row = build_wide_row(schema, completed("a.pdf", valid_records()))
        assert row == ["a.pdf", "2", "Placebo arm", "Low", "Randomized, double blind",
                       "HbA1c change at week 24", "Oral; IV", "MJA"]

    def test_missing_answers_are_na(self, schema):
        records = [make_record("Dose option", "High"), make_record("Group 2 name", "")]
        row = build_wide_row(schema, completed("a.pdf", records))
        assert row[1:4] == ["N/A", "N/A", "High"]

    def test_matches_by_key_first(self, schema):
        record = make_record("something the model invented", "High", question_key="dose")
        row = build_wide_row(schema, completed("a.pdf", [record]))
        assert row[3] == "High"

    def test_same_label_in_other_block_not_mixed(self, schema):
        record = make_record("Dose option", "High", block_id=2)
        row = build_wide_row(schema, completed("a.pdf", [record]))
        assert row[3] == "N/A"

    def test_first_record_wins(self, schema):
        records = [make_record("Dose option", "Low"), make_record("Dose option", "High")]
        assert build_wide_row(schema, completed("a.pdf", records))[3] == "Low"


class TestWriters:
    def test_wide_csv_skips_failed_documents(self, schema, tmp_path):
        results = [
            completed("a.pdf", valid_records()),
            DocumentResult(file_name="b.pdf", status=DocumentStatus.ERROR, error="boom"),
        ]
        path = tmp_path / "out" / "wide.csv"

        assert write_wide_csv(schema, results, path) == 1

        with open(path, newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
        assert rows[0] == build_headers(schema)
        assert rows[1][0] == "a.pdf"
        assert len(rows) == 2

    def test_results_json(self, tmp_path):
        results = [
            completed("a.pdf", valid_records()),
            DocumentResult(file_name="b.pdf", status=DocumentStatus.ERROR, error="boom"),
        ]

        path = write_results_json(results, tmp_path / "batch_results.json")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert [d["status"] for d in data] == ["completed", "error"]
        assert data[0]["records"][0]["answer"] == "2"
        assert data[1]["error"] == "boom"
