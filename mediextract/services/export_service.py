"""
Export of validated results.

Wide format: one row per document, one column per schema question. Records
are matched to columns by (block, stable question key), falling back to the
same label/key resolution the validator uses.
"""

import csv
import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from mediextract.models.records import NA, AuditRecord, DocumentResult, DocumentStatus
from mediextract.models.schema import QuestionSchema

logger = logging.getLogger(__name__)

SOURCE_FILE_HEADER = "Source File"


def build_headers(schema: QuestionSchema) -> List[str]:
    """["Source File", "<block name> | <question label>", ...] in canonical order."""
    headers = [SOURCE_FILE_HEADER]
    for block, _, question in schema.iter_questions():
        headers.append(f"{block.name} | {question.label}")
    return headers


def index_records(schema: QuestionSchema, records: Iterable[AuditRecord]) -> Dict[Tuple[int, str], AuditRecord]:
    """Map (block, key) -> first matching record."""
    indexed: Dict[Tuple[int, str], AuditRecord] = {}
    for record in records:
        question = None
        block = schema.get_block(record.block_id)
        if block is None:
            continue
        if record.question_key:
            question = block.get_question(record.question_key)
        if question is None:
            question = block.find_question(record.question)
        if question is None:
            continue
        indexed.setdefault((block.number, question.key), record)
    return indexed


def build_wide_row(schema: QuestionSchema, result: DocumentResult) -> List[str]:
    """One row of answers aligned with build_headers(); "N/A" where absent."""
    indexed = index_records(schema, result.records)
    row = [result.file_name]
    for block, _, question in schema.iter_questions():
        record = indexed.get((block.number, question.key))
        row.append(record.answer if record is not None and record.answer else NA)
    return row


def write_wide_csv(
    schema: QuestionSchema,
    results: Iterable[DocumentResult],
    path: Union[str, Path],
) -> int:
    """
    Write completed results as a wide CSV.

    Returns:
        Number of data rows written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    rows = 0
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(build_headers(schema))
        for result in results:
            if result.status != DocumentStatus.COMPLETED:
                continue
            writer.writerow(build_wide_row(schema, result))
            rows += 1

    logger.info(f"Wrote {rows} row(s) to {path}")
    return rows


def write_results_json(
    results: Iterable[DocumentResult],
    path: Union[str, Path],
    indent: Optional[int] = 2,
) -> Path:
    """Write full document results (records, logs, usage) as JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = [r.model_dump(mode="json") for r in results]
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=indent, ensure_ascii=False)
    logger.info(f"Saved {len(payload)} result(s) to {path}")
    return path
