"""
Pydantic models for agent output records and per-document results.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

NA = "N/A"


class RecordStatus(str, Enum):
    VERIFIED = "VERIFIED"
    CORRECTED = "CORRECTED"


class QAStatus(str, Enum):
    PASSED = "PASSED"
    FIXED = "FIXED"


class DocumentStatus(str, Enum):
    """Document lifecycle: pending -> processing -> completed | error."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    # str() of a str-mixin Enum member is "Class.MEMBER" on Python 3.11+
    if isinstance(value, Enum):
        value = value.value
    return str(value).strip()


class AuditRecord(BaseModel):
    """
    One answer for one schema question, as produced by a pipeline stage.

    Extraction output only fills the first seven fields; audit adds status,
    original_answer and auditor_notes; QA adds qa_status and qa_notes.
    Coercion is lenient because the values come straight from model output.
    """

    block_id: int = 0
    section_name: str = ""
    question: str = ""
    question_key: Optional[str] = None
    answer: str = ""
    page_number: str = ""
    reasoning: str = ""
    status: RecordStatus = RecordStatus.VERIFIED
    original_answer: Optional[str] = None
    auditor_notes: str = ""
    qa_status: Optional[QAStatus] = None
    qa_notes: Optional[str] = None

    @field_validator("block_id", mode="before")
    @classmethod
    def _coerce_block_id(cls, value: Any) -> int:
        if value is None or value == "":
            return 0
        if isinstance(value, str):
            value = value.strip()
            if value.lower().startswith("block"):
                value = value[5:].strip()
        return int(float(value))

    @field_validator("section_name", "question", "answer", "page_number", "reasoning", "auditor_notes", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("question_key", "original_answer", "qa_notes", mode="before")
    @classmethod
    def _coerce_optional_text(cls, value: Any) -> Optional[str]:
        text = _as_text(value)
        return text or None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> RecordStatus:
        text = _as_text(value).upper()
        if text == RecordStatus.CORRECTED.value:
            return RecordStatus.CORRECTED
        return RecordStatus.VERIFIED

    @field_validator("qa_status", mode="before")
    @classmethod
    def _coerce_qa_status(cls, value: Any) -> Optional[QAStatus]:
        text = _as_text(value).upper()
        if text in (QAStatus.PASSED.value, QAStatus.FIXED.value):
            return QAStatus(text)
        return None

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


def coerce_records(raw: Any) -> List[AuditRecord]:
    """
    Turn parsed model output into AuditRecords.

    Non-dict items and items that fail validation are skipped; the
    deterministic validator fills whatever ends up missing.
    """
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        return []

    records = []
    for item in raw:
        if isinstance(item, AuditRecord):
            records.append(item)
            continue
        if not isinstance(item, dict):
            logger.debug(f"Skipping non-object record: {item!r}")
            continue
        try:
            records.append(AuditRecord.model_validate(item))
        except (ValidationError, ValueError, TypeError) as e:
            logger.debug(f"Skipping invalid record {item!r}: {e}")
    return records


class TokenUsage(BaseModel):
    """Token counts reported by the model, summed across calls."""

    prompt_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class LogEntry(BaseModel):
    timestamp: str = Field(default_factory=lambda: datetime.now().strftime("%H:%M:%S"))
    message: str
    type: str = "info"  # info, success, warning, error


class DocumentResult(BaseModel):
    """Per-document outcome of one pipeline run."""

    file_name: str
    file_size: int = 0
    status: DocumentStatus = DocumentStatus.PENDING
    records: List[AuditRecord] = Field(default_factory=list)
    logs: List[LogEntry] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    isolation_check: Optional[str] = None
    pre_isolation_check: Optional[str] = None
    completed_at: Optional[str] = None
    page_count: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status == DocumentStatus.COMPLETED
