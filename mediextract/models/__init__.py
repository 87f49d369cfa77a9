"""Schema and record models."""

from mediextract.models.records import (
    NA,
    AuditRecord,
    DocumentResult,
    DocumentStatus,
    LogEntry,
    QAStatus,
    RecordStatus,
    TokenUsage,
    coerce_records,
)
from mediextract.models.schema import (
    Block,
    Question,
    QuestionSchema,
    QuestionType,
    SchemaError,
    Section,
    load_default_schema,
    load_schema,
)

__all__ = [
    "NA",
    "AuditRecord",
    "DocumentResult",
    "DocumentStatus",
    "LogEntry",
    "QAStatus",
    "RecordStatus",
    "TokenUsage",
    "coerce_records",
    "Block",
    "Question",
    "QuestionSchema",
    "QuestionType",
    "SchemaError",
    "Section",
    "load_default_schema",
    "load_schema",
]
