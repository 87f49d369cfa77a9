"""
Deterministic validation and normalization of agent output.

Given the question schema and candidate records from any pipeline stage,
validate() returns one record per schema question in canonical order plus
structured issues. It never calls a model and never raises for bad content:
every violation resolves to the N/A sentinel and an issue the orchestrator
can use to trigger a targeted re-check.

Rules applied per question:
- Missing, blank, "null" or "undefined" answers become N/A
- Select answers must exactly match the declared options
- Multi-select answers may not repeat an option or mix N/A with selections
- Non-N/A answers need a page reference and a real reasoning trace
- Questions about comparative groups beyond the declared count become N/A
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from mediextract.config import Settings, settings as default_settings
from mediextract.models.records import NA, AuditRecord, RecordStatus, coerce_records
from mediextract.models.schema import (
    Block,
    Question,
    QuestionSchema,
    Section,
    normalize_for_compare,
    normalize_text,
)

logger = logging.getLogger(__name__)

EMPTY_MARKERS = ("", "null", "undefined")
NO_PAGE_MARKERS = ("", "n/a", "not described")
MULTI_SELECT_SEPARATOR = ";"
LOCKED_REASONING = "Locked schema default"

REASON_DUPLICATE = "Duplicate answers"
REASON_MISORDERED = "Answers are misordered"
REASON_EMPTY = "Required question is empty/undefined/null"
REASON_OPTIONS = "Answer does not exactly match allowed options"
REASON_TRACE = "Missing trace evidence"

_LEADING_INT = re.compile(r"^\s*(\d+)")


class Stage(str, Enum):
    """Pipeline stage a validation pass runs after."""

    EXTRACTION = "extraction"
    AUDIT = "audit"
    QA = "qa"
    EXPORT = "export"


@dataclass
class ValidationIssue:
    """Why a record was corrected (or why a pass is unacceptable)."""

    question: str
    answer: str
    reason: str
    stage: str
    block_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "answer": self.answer,
            "reason": self.reason,
            "stage": self.stage,
            "block_id": self.block_id,
        }


@dataclass
class ValidationResult:
    """Output of one validation pass."""

    normalized_records: List[AuditRecord]
    issues: List[ValidationIssue] = field(default_factory=list)
    correction_count: int = 0
    unmatched: List[AuditRecord] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.issues

    @property
    def failed_blocks(self) -> List[int]:
        """Block numbers carrying at least one issue."""
        return sorted({i.block_id for i in self.issues if i.block_id is not None})


def is_na(value: Any) -> bool:
    return normalize_for_compare(value) == "n/a"


def is_empty_answer(value: Any) -> bool:
    return normalize_for_compare(value) in EMPTY_MARKERS


def split_multi_select(answer: str) -> List[str]:
    """Split a multi-select answer on ';', trimming each part. Empty parts are kept."""
    return [normalize_text(p) for p in answer.split(MULTI_SELECT_SEPARATOR)]


def join_multi_select(parts: Iterable[str]) -> str:
    return f"{MULTI_SELECT_SEPARATOR} ".join(parts)


def check_options(question: Question, answer: str) -> Tuple[bool, str]:
    """
    Check an answer against the question's option set.

    Returns:
        (is_valid, normalized_answer); valid multi-select answers are
        re-joined with '; '
    """
    if not question.options or answer == NA:
        return True, answer

    if not question.is_multi_select:
        return answer in question.options, answer

    parts = split_multi_select(answer)
    if len(set(parts)) != len(parts):
        return False, answer
    if NA in parts and len(parts) > 1:
        return False, answer
    if any(part not in question.options for part in parts):
        return False, answer
    return True, join_multi_select(parts)


def has_trace_evidence(record: AuditRecord, min_reasoning_length: int) -> bool:
    page = normalize_for_compare(record.page_number)
    if page in NO_PAGE_MARKERS:
        return False
    return len(normalize_text(record.reasoning)) > min_reasoning_length


def declared_group_count(
    schema: QuestionSchema,
    records: Dict[Tuple[int, str], AuditRecord],
    count_pattern: "re.Pattern[str]",
) -> Optional[int]:
    """
    Leading integer of the answer to the 'number of comparative groups' question.

    Returns None when no such question exists or its answer has no leading
    integer; callers then suppress nothing.
    """
    for block, _, question in schema.iter_questions():
        if not count_pattern.search(question.label):
            continue
        record = records.get((block.number, question.key))
        if record is None:
            continue
        match = _LEADING_INT.match(record.answer)
        if match:
            return int(match.group(1))
    return None


def referenced_groups(label: str, reference_pattern: "re.Pattern[str]") -> List[int]:
    return [int(n) for n in reference_pattern.findall(label)]


class _Normalizer:
    """Single forward pass over the schema for one validate() call."""

    def __init__(self, schema: QuestionSchema, stage: Stage, config: Settings):
        self.schema = schema
        self.stage = stage
        self.config = config
        self.issues: List[ValidationIssue] = []
        self.correction_count = 0

    def add_issue(self, question: str, answer: str, reason: str, block_id: Optional[int]):
        self.issues.append(
            ValidationIssue(
                question=question,
                answer=answer,
                reason=reason,
                stage=self.stage.value,
                block_id=block_id,
            )
        )

    def resolve(self, record: AuditRecord) -> Optional[Question]:
        """Map a candidate to its schema question: explicit key, then label, then key text."""
        block = self.schema.get_block(record.block_id)
        if block is None:
            return None
        if record.question_key:
            question = block.get_question(record.question_key)
            if question is not None:
                return question
        return block.find_question(record.question)

    def index(
        self, candidates: List[AuditRecord]
    ) -> Tuple[Dict[Tuple[int, str], AuditRecord], List[Tuple[AuditRecord, Question]], List[AuditRecord]]:
        indexed: Dict[Tuple[int, str], AuditRecord] = {}
        resolved: List[Tuple[AuditRecord, Question]] = []
        unmatched: List[AuditRecord] = []
        duplicates: Dict[int, List[str]] = {}

        for record in candidates:
            question = self.resolve(record)
            if question is None:
                unmatched.append(record)
                continue
            resolved.append((record, question))
            identity = (record.block_id, question.key)
            if identity in indexed:
                labels = duplicates.setdefault(record.block_id, [])
                if question.label not in labels:
                    labels.append(question.label)
                continue
            indexed[identity] = record

        for block_id, labels in duplicates.items():
            self.add_issue(
                question="; ".join(labels),
                answer="",
                reason=f"{REASON_DUPLICATE} in block {block_id} for: {', '.join(labels)}",
                block_id=block_id,
            )

        if unmatched:
            logger.debug(f"{len(unmatched)} candidate record(s) did not match any schema question")
        return indexed, resolved, unmatched

    def check_order(self, resolved: List[Tuple[AuditRecord, Question]]):
        previous_index = -1
        previous_label = ""
        for record, question in resolved:
            position = self.schema.canonical_index(record.block_id, question.key)
            if position is None:
                continue
            if position < previous_index:
                self.add_issue(
                    question=question.label,
                    answer=record.answer,
                    reason=(
                        f"{REASON_MISORDERED}: '{question.label}' (block {record.block_id}) "
                        f"appears after '{previous_label}'"
                    ),
                    block_id=record.block_id,
                )
                return
            previous_index = position
            previous_label = question.label

    def force_na(self, record: AuditRecord, reason: str, raise_issue: bool = True) -> AuditRecord:
        prior = record.answer
        if raise_issue:
            self.add_issue(record.question, prior, reason, record.block_id)
        self.correction_count += 1
        notes = f"{record.auditor_notes} [Validator] {reason}".strip()
        return record.model_copy(
            update={
                "answer": NA,
                "page_number": NA,
                "reasoning": NA,
                "status": RecordStatus.CORRECTED,
                "original_answer": record.original_answer or (prior or None),
                "auditor_notes": notes,
            }
        )

    def missing_record(self, block: Block, section: Section, question: Question) -> AuditRecord:
        self.add_issue(question.label, "", REASON_EMPTY, block.number)
        self.correction_count += 1
        return AuditRecord(
            block_id=block.number,
            section_name=section.name,
            question=question.label,
            question_key=question.key,
            answer=NA,
            page_number=NA,
            reasoning=NA,
            status=RecordStatus.CORRECTED,
            auditor_notes=f"[Validator] {REASON_EMPTY}",
        )

    def locked_record(
        self, block: Block, section: Section, question: Question, source: Optional[AuditRecord]
    ) -> AuditRecord:
        if source is not None and source.answer == question.default:
            return source.model_copy(
                update={"block_id": block.number, "section_name": section.name,
                        "question": question.label, "question_key": question.key}
            )
        self.correction_count += 1
        return AuditRecord(
            block_id=block.number,
            section_name=section.name,
            question=question.label,
            question_key=question.key,
            answer=question.default,
            page_number=NA,
            reasoning=LOCKED_REASONING,
            status=RecordStatus.CORRECTED,
            original_answer=(source.answer or None) if source is not None else None,
            auditor_notes=f"[Validator] {LOCKED_REASONING}",
        )

    def normalize_question(
        self, block: Block, section: Section, question: Question, source: Optional[AuditRecord]
    ) -> AuditRecord:
        if question.locked and question.default:
            return self.locked_record(block, section, question, source)

        if source is None:
            return self.missing_record(block, section, question)

        record = source.model_copy(
            update={
                "block_id": block.number,
                "section_name": section.name,
                "question": question.label,
                "question_key": question.key,
            }
        )

        if is_empty_answer(record.answer):
            return self.force_na(record, REASON_EMPTY)

        if is_na(record.answer):
            if record.answer != NA:
                record = record.model_copy(update={"answer": NA})
            return record

        valid, normalized = check_options(question, record.answer)
        if not valid:
            return self.force_na(record, REASON_OPTIONS)
        if normalized != record.answer:
            record = record.model_copy(update={"answer": normalized})

        if not has_trace_evidence(record, self.config.min_reasoning_length):
            return self.force_na(record, REASON_TRACE)

        return record

    def suppress_groups(self, records: Dict[Tuple[int, str], AuditRecord]):
        count_pattern = re.compile(self.config.group_count_pattern, re.IGNORECASE)
        reference_pattern = re.compile(self.config.group_reference_pattern, re.IGNORECASE)

        count = declared_group_count(self.schema, records, count_pattern)
        if count is None:
            return

        for block, _, question in self.schema.iter_questions():
            if question.locked or count_pattern.search(question.label):
                continue
            overflow = [n for n in referenced_groups(question.label, reference_pattern) if n > count]
            if not overflow:
                continue
            identity = (block.number, question.key)
            record = records[identity]
            if record.answer == NA:
                continue
            reason = (
                f"'{question.label}' references group {overflow[0]} but only "
                f"{count} comparative group(s) declared"
            )
            records[identity] = self.force_na(
                record, reason, raise_issue=self.stage is not Stage.EXPORT
            )


def validate(
    schema: QuestionSchema,
    candidates: Iterable[Union[AuditRecord, Dict[str, Any]]],
    stage: Union[Stage, str],
    *,
    settings: Optional[Settings] = None,
) -> ValidationResult:
    """
    Validate and normalize candidate records against the schema.

    Args:
        schema: Question schema defining structure and canonical order
        candidates: Records (or raw dicts) produced by a pipeline stage
        stage: Stage the candidates came from; group overflow is only
            silent at the export stage
        settings: Validator thresholds and patterns (defaults to app settings)

    Returns:
        ValidationResult with exactly one record per schema question
    """
    config = settings or default_settings
    stage = Stage(stage)
    normalizer = _Normalizer(schema, stage, config)

    records_in = coerce_records(list(candidates))
    indexed, resolved, unmatched = normalizer.index(records_in)
    normalizer.check_order(resolved)

    normalized: Dict[Tuple[int, str], AuditRecord] = {}
    for block, section, question in schema.iter_questions():
        source = indexed.get((block.number, question.key))
        normalized[(block.number, question.key)] = normalizer.normalize_question(
            block, section, question, source
        )

    normalizer.suppress_groups(normalized)

    output = [normalized[(block.number, question.key)] for block, _, question in schema.iter_questions()]

    logger.debug(
        f"Validated {len(records_in)} candidate(s) at stage {stage.value}: "
        f"{len(normalizer.issues)} issue(s), {normalizer.correction_count} correction(s)"
    )

    return ValidationResult(
        normalized_records=output,
        issues=normalizer.issues,
        correction_count=normalizer.correction_count,
        unmatched=unmatched,
    )
