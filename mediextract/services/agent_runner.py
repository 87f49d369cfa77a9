"""
Agent prompt builders and stage execution.

Each model-calling stage processes the schema in fixed-size chunks of
blocks. Every chunk call goes through the retry wrapper; the response is
repaired, parsed and coerced to AuditRecords (malformed output degrades to
an empty list for that chunk). Token usage is summed across chunks.

A stage can also be re-run for a subset of blocks, with the validator's
issues appended to the prompt so the model only fixes what failed.
"""

import asyncio
import json
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from mediextract.config import Settings, settings as default_settings
from mediextract.models.records import AuditRecord, TokenUsage, coerce_records
from mediextract.models.schema import QuestionSchema
from mediextract.services.api_wrapper import OnRetry, call_with_retry
from mediextract.stage_registry import (
    AUDIT,
    EXPORT_VALIDATION,
    EXTRACTION,
    QA,
    SUPERVISOR_POST,
    SUPERVISOR_PRE,
    StageConfig,
    StageRegistry,
    get_registry,
)
from mediextract.utils.deterministic_validator import ValidationIssue
from mediextract.utils.json_repair import parse_records

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Any]

ISOLATION_CHECK_FAILED = "Isolation Check Failed"
MAX_FEEDBACK_ISSUES = 25

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


# Response schemas (Gemini OpenAPI subset)

_BASE_PROPERTIES = {
    "block_id": {"type": "NUMBER"},
    "section_name": {"type": "STRING"},
    "question": {"type": "STRING"},
    "question_key": {"type": "STRING"},
    "answer": {"type": "STRING"},
    "page_number": {"type": "STRING"},
    "reasoning": {"type": "STRING"},
}
_BASE_REQUIRED = ["block_id", "section_name", "question", "answer", "page_number", "reasoning"]

_AUDIT_PROPERTIES = {
    **_BASE_PROPERTIES,
    "status": {"type": "STRING", "enum": ["VERIFIED", "CORRECTED"]},
    "original_answer": {"type": "STRING"},
    "auditor_notes": {"type": "STRING"},
}
_AUDIT_REQUIRED = _BASE_REQUIRED + ["status", "auditor_notes"]

_QA_PROPERTIES = {
    **_AUDIT_PROPERTIES,
    "qa_status": {"type": "STRING", "enum": ["PASSED", "FIXED"]},
    "qa_notes": {"type": "STRING"},
}
_QA_REQUIRED = _AUDIT_REQUIRED + ["qa_status", "qa_notes"]


def _array_of(properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "ARRAY",
        "items": {"type": "OBJECT", "properties": properties, "required": required},
    }


EXTRACTION_SCHEMA = _array_of(_BASE_PROPERTIES, _BASE_REQUIRED)
AUDIT_SCHEMA = _array_of(_AUDIT_PROPERTIES, _AUDIT_REQUIRED)
QA_SCHEMA = _array_of(_QA_PROPERTIES, _QA_REQUIRED)

RESPONSE_SCHEMAS = {
    EXTRACTION: EXTRACTION_SCHEMA,
    AUDIT: AUDIT_SCHEMA,
    QA: QA_SCHEMA,
    EXPORT_VALIDATION: QA_SCHEMA,
}


@dataclass
class AgentOutput:
    """Records, summed usage and raw text (supervisor stages) of one stage run."""

    records: List[AuditRecord] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    text: str = ""


def render_template(template: str, **values: Any) -> str:
    """Fill `{{ name }}` placeholders; unknown placeholders are left as-is."""

    def substitute(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in values:
            return str(values[name])
        return match.group(0)

    return _PLACEHOLDER.sub(substitute, template)


def records_to_json(records: Iterable[AuditRecord]) -> str:
    return json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False)


def group_by_block(records: Iterable[AuditRecord]) -> Dict[int, List[AuditRecord]]:
    grouped: Dict[int, List[AuditRecord]] = defaultdict(list)
    for record in records:
        grouped[record.block_id].append(record)
    return dict(grouped)


def describe_blocks(schema_chunk: QuestionSchema) -> str:
    """Human-readable label like 'Block 1: Study Design'."""
    return "; ".join(f"Block {b.number}: {b.name}" for b in schema_chunk.blocks)


def build_recheck_feedback(issues: Sequence[ValidationIssue]) -> str:
    """
    Prompt appendix for a targeted re-check listing the validator's issues.

    Returns:
        Text to append to the stage prompt ("" when there are no issues)
    """
    if not issues:
        return ""

    lines = [
        "\n\n## TARGETED RE-CHECK - FIX ONLY THE ISSUES BELOW",
        "",
        "Your previous output for these blocks failed deterministic validation.",
        "Return the full record list for the blocks again, fixing these problems:",
        "",
    ]
    for issue in issues[:MAX_FEEDBACK_ISSUES]:
        answer = f" (answer: {issue.answer!r})" if issue.answer else ""
        lines.append(f"- Block {issue.block_id} / {issue.question}{answer}: {issue.reason}")
    if len(issues) > MAX_FEEDBACK_ISSUES:
        lines.append(f"- ... and {len(issues) - MAX_FEEDBACK_ISSUES} more")
    return "\n".join(lines)


class AgentRunner:
    """Builds prompts and runs agent stages against one uploaded document."""

    def __init__(
        self,
        llm,
        registry: Optional[StageRegistry] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            llm: Model boundary with an async generate(document, prompt, ...) method
            registry: Stage configuration (defaults to config.yaml)
            settings: Application settings
            sleep: Sleep used for retry backoff
        """
        self.llm = llm
        self.registry = registry or get_registry()
        self.settings = settings or default_settings
        self.sleep = sleep
        self._templates: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Prompt builders
    # ------------------------------------------------------------------

    def load_template(self, stage_id: str) -> str:
        if stage_id not in self._templates:
            prompt_path = self.registry.get(stage_id).get_prompt_path()
            if not prompt_path.exists():
                raise FileNotFoundError(f"Prompt template not found: {prompt_path}")
            self._templates[stage_id] = prompt_path.read_text(encoding="utf-8")
        return self._templates[stage_id]

    def build_supervisor_prompt(
        self, file_name: str, mode: str, records: Optional[Sequence[AuditRecord]] = None
    ) -> str:
        mode = mode.upper()
        if mode == "PRE":
            return render_template(self.load_template(SUPERVISOR_PRE), file_name=file_name)
        if mode == "POST":
            return render_template(
                self.load_template(SUPERVISOR_POST),
                file_name=file_name,
                records_json=records_to_json(records or []),
            )
        raise ValueError(f"Unknown supervisor mode: {mode}")

    def build_extraction_prompt(self, file_name: str, schema_chunk: QuestionSchema) -> str:
        return render_template(
            self.load_template(EXTRACTION),
            file_name=file_name,
            block_label=describe_blocks(schema_chunk),
            schema_json=json.dumps(schema_chunk.to_prompt_dict(), indent=2, ensure_ascii=False),
        )

    def build_audit_prompt(
        self, file_name: str, block_numbers: Sequence[int], records: Sequence[AuditRecord]
    ) -> str:
        label = "; ".join(f"Block {n}" for n in block_numbers)
        return render_template(
            self.load_template(AUDIT),
            file_name=file_name,
            block_label=label,
            records_json=records_to_json(records),
        )

    def _build_review_prompt(
        self, stage_id: str, file_name: str, schema_chunk: QuestionSchema, records: Sequence[AuditRecord]
    ) -> str:
        blocks = [b.to_dict() for b in schema_chunk.blocks]
        return render_template(
            self.load_template(stage_id),
            file_name=file_name,
            block_label=describe_blocks(schema_chunk),
            schema_json=json.dumps(blocks[0] if len(blocks) == 1 else blocks, indent=2, ensure_ascii=False),
            records_json=records_to_json(records),
        )

    def build_qa_prompt(
        self, file_name: str, schema_chunk: QuestionSchema, records: Sequence[AuditRecord]
    ) -> str:
        return self._build_review_prompt(QA, file_name, schema_chunk, records)

    def build_export_validation_prompt(
        self, file_name: str, schema_chunk: QuestionSchema, records: Sequence[AuditRecord]
    ) -> str:
        return self._build_review_prompt(EXPORT_VALIDATION, file_name, schema_chunk, records)

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    async def _call(
        self,
        stage: StageConfig,
        document: Any,
        prompt: str,
        response_schema: Optional[Dict[str, Any]],
        on_retry: Optional[OnRetry],
    ):
        return await call_with_retry(
            lambda: self.llm.generate(
                document,
                prompt,
                response_schema=response_schema,
                model=stage.get_model(),
                max_output_tokens=stage.max_output_tokens,
            ),
            stage.display_name,
            max_retries=self.settings.api_retry_max_retries,
            initial_backoff=self.settings.api_retry_initial_backoff,
            max_delay=self.settings.api_retry_max_delay,
            max_jitter=self.settings.api_retry_max_jitter,
            on_retry=on_retry,
            sleep=self.sleep,
        )

    async def _run_chunks(
        self,
        stage_id: str,
        document: Any,
        prompts: List[Optional[str]],
        on_progress: Optional[ProgressCallback],
        on_retry: Optional[OnRetry],
    ) -> AgentOutput:
        """Run one call per prompt; None prompts are skipped but still count as progress."""
        stage = self.registry.get(stage_id)
        response_schema = RESPONSE_SCHEMAS[stage_id]
        output = AgentOutput()
        total = len(prompts)

        for index, prompt in enumerate(prompts, start=1):
            if prompt is not None:
                response = await self._call(stage, document, prompt, response_schema, on_retry)
                chunk_records = coerce_records(parse_records(response.text))
                if not chunk_records:
                    logger.warning(f"{stage.display_name}: chunk {index}/{total} returned no usable records")
                output.records.extend(chunk_records)
                output.usage = output.usage + response.usage
            if on_progress is not None:
                on_progress(index, total)

        logger.info(f"{stage.display_name}: {len(output.records)} records from {total} chunk(s)")
        return output

    def _chunks(self, schema: QuestionSchema) -> List[QuestionSchema]:
        return schema.chunk_blocks(self.settings.block_chunk_size)

    async def run_supervisor(
        self,
        document: Any,
        file_name: str,
        mode: str,
        records: Optional[Sequence[AuditRecord]] = None,
        on_retry: Optional[OnRetry] = None,
    ) -> AgentOutput:
        """Isolation check before extraction (PRE) or on the final records (POST)."""
        stage_id = SUPERVISOR_PRE if mode.upper() == "PRE" else SUPERVISOR_POST
        stage = self.registry.get(stage_id)
        prompt = self.build_supervisor_prompt(file_name, mode, records)
        response = await self._call(stage, document, prompt, None, on_retry)
        text = response.text.strip() or ISOLATION_CHECK_FAILED
        return AgentOutput(records=[], usage=response.usage, text=text)

    async def run_extraction(
        self,
        document: Any,
        file_name: str,
        schema: QuestionSchema,
        on_progress: Optional[ProgressCallback] = None,
        on_retry: Optional[OnRetry] = None,
        feedback: str = "",
    ) -> AgentOutput:
        prompts = [self.build_extraction_prompt(file_name, chunk) + feedback for chunk in self._chunks(schema)]
        return await self._run_chunks(EXTRACTION, document, prompts, on_progress, on_retry)

    async def run_audit(
        self,
        document: Any,
        file_name: str,
        schema: QuestionSchema,
        records: Sequence[AuditRecord],
        on_progress: Optional[ProgressCallback] = None,
        on_retry: Optional[OnRetry] = None,
        feedback: str = "",
    ) -> AgentOutput:
        """Audit per chunk; chunks with no extracted records are not sent."""
        by_block = group_by_block(records)
        prompts: List[Optional[str]] = []
        for chunk in self._chunks(schema):
            chunk_records = [r for n in chunk.block_numbers for r in by_block.get(n, [])]
            if not chunk_records:
                prompts.append(None)
                continue
            prompts.append(self.build_audit_prompt(file_name, chunk.block_numbers, chunk_records) + feedback)
        return await self._run_chunks(AUDIT, document, prompts, on_progress, on_retry)

    async def _run_review(
        self,
        stage_id: str,
        document: Any,
        file_name: str,
        schema: QuestionSchema,
        records: Sequence[AuditRecord],
        on_progress: Optional[ProgressCallback],
        on_retry: Optional[OnRetry],
        feedback: str,
    ) -> AgentOutput:
        by_block = group_by_block(records)
        prompts: List[Optional[str]] = []
        for chunk in self._chunks(schema):
            chunk_records = [r for n in chunk.block_numbers for r in by_block.get(n, [])]
            prompts.append(self._build_review_prompt(stage_id, file_name, chunk, chunk_records) + feedback)
        return await self._run_chunks(stage_id, document, prompts, on_progress, on_retry)

    async def run_qa(
        self,
        document: Any,
        file_name: str,
        schema: QuestionSchema,
        records: Sequence[AuditRecord],
        on_progress: Optional[ProgressCallback] = None,
        on_retry: Optional[OnRetry] = None,
        feedback: str = "",
    ) -> AgentOutput:
        return await self._run_review(QA, document, file_name, schema, records, on_progress, on_retry, feedback)

    async def run_export_validation(
        self,
        document: Any,
        file_name: str,
        schema: QuestionSchema,
        records: Sequence[AuditRecord],
        on_progress: Optional[ProgressCallback] = None,
        on_retry: Optional[OnRetry] = None,
        feedback: str = "",
    ) -> AgentOutput:
        return await self._run_review(
            EXPORT_VALIDATION, document, file_name, schema, records, on_progress, on_retry, feedback
        )

    async def rerun_blocks(
        self,
        stage_id: str,
        document: Any,
        file_name: str,
        schema: QuestionSchema,
        block_numbers: Sequence[int],
        records: Sequence[AuditRecord] = (),
        issues: Sequence[ValidationIssue] = (),
        on_progress: Optional[ProgressCallback] = None,
        on_retry: Optional[OnRetry] = None,
    ) -> AgentOutput:
        """
        Re-run one stage for a subset of blocks only.

        Args:
            stage_id: extraction, audit, qa or export_validation
            block_numbers: Blocks that failed validation
            records: The stage's input records (ignored for extraction)
            issues: Validator issues for those blocks, appended to the prompt

        Returns:
            AgentOutput with records for the requested blocks only
        """
        wanted = set(block_numbers)
        subset = schema.subset(wanted)
        subset_records = [r for r in records if r.block_id in wanted]
        feedback = build_recheck_feedback([i for i in issues if i.block_id in wanted])
        logger.info(f"Re-checking {stage_id} for blocks {sorted(wanted)}")

        if stage_id == EXTRACTION:
            output = await self.run_extraction(document, file_name, subset, on_progress, on_retry, feedback)
        elif stage_id == AUDIT:
            output = await self.run_audit(document, file_name, subset, subset_records, on_progress, on_retry, feedback)
        elif stage_id == QA:
            output = await self.run_qa(document, file_name, subset, subset_records, on_progress, on_retry, feedback)
        elif stage_id == EXPORT_VALIDATION:
            output = await self.run_export_validation(
                document, file_name, subset, subset_records, on_progress, on_retry, feedback
            )
        else:
            raise ValueError(f"Stage cannot be re-run per block: {stage_id}")

        # Models occasionally answer for blocks they were not asked about
        output.records = [r for r in output.records if r.block_id in wanted]
        return output
