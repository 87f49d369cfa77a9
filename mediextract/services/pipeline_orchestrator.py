"""
Pipeline orchestrator for batch document extraction.

Documents are processed strictly one at a time. Per document:
1. PDF intake check and upload to Gemini
2. Supervisor PRE isolation check
3. Extraction -> validate -> targeted re-check of failed blocks
4. Audit -> validate -> targeted re-check
5. QA -> validate -> targeted re-check
6. Supervisor POST isolation check
7. Export validation (if enabled)
8. Final deterministic validation at the export stage

Any stage failure marks only the current document as error; the batch
continues. Each document's state lives in its own DocumentResult, which
process_document() returns.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError

from mediextract.config import Settings, settings as default_settings
from mediextract.models.records import AuditRecord, DocumentResult, DocumentStatus, LogEntry, TokenUsage
from mediextract.models.schema import QuestionSchema
from mediextract.services.agent_runner import AgentOutput, AgentRunner
from mediextract.services.pdf_service import inspect_pdf
from mediextract.stage_registry import (
    AUDIT,
    EXPORT_VALIDATION,
    EXTRACTION,
    QA,
    SUPERVISOR_POST,
    SUPERVISOR_PRE,
)
from mediextract.utils.deterministic_validator import Stage, ValidationResult, validate

logger = logging.getLogger(__name__)

INTAKE = "intake"
UPLOAD = "upload"

_VALIDATION_STAGES = {
    EXTRACTION: Stage.EXTRACTION,
    AUDIT: Stage.AUDIT,
    QA: Stage.QA,
}

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class StageError(RuntimeError):
    """A pipeline stage failed for the current document."""

    def __init__(self, stage_id: str, error: BaseException):
        self.stage_id = stage_id
        self.error = error
        super().__init__(f"Stage '{stage_id}' failed: {error}")


@dataclass
class ProgressEvent:
    """Progress of one stage of one document (chunks completed / total)."""

    file_name: str
    step: str
    completed: int
    total: int


ProgressCallback = Callable[[ProgressEvent], Any]


class PipelineOrchestrator:
    """
    Runs the agent pipeline over a batch of PDFs.

    Execution flow per document is strictly sequential; each stage's
    validated output is the next stage's input.
    """

    def __init__(
        self,
        runner: AgentRunner,
        schema: QuestionSchema,
        settings: Optional[Settings] = None,
        history=None,
        progress_callback: Optional[ProgressCallback] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize orchestrator with dependencies.

        Args:
            runner: Agent runner bound to a model boundary
            schema: Question schema driving every stage
            settings: Application settings
            history: Optional HistoryService; completed results are appended
            progress_callback: Receives a ProgressEvent after each chunk/stage
            sleep: Sleep used for the inter-stage delay
        """
        self.runner = runner
        self.llm = runner.llm
        self.schema = schema
        self.settings = settings or default_settings
        self.history = history
        self.progress_callback = progress_callback
        self.sleep = sleep
        self.results: List[DocumentResult] = []

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def run_batch(self, paths: Sequence[Union[str, Path]]) -> List[DocumentResult]:
        """
        Process documents one at a time.

        Every document is listed as pending in self.results before the
        first one starts.

        Returns:
            One DocumentResult per input path, in input order
        """
        results = [DocumentResult(file_name=Path(path).name) for path in paths]
        self.results = results
        total = len(paths)
        logger.info(f"Starting batch of {total} document(s)")

        for index, (path, result) in enumerate(zip(paths, results), start=1):
            logger.info(f"Document {index}/{total}: {result.file_name}")
            await self.process_document(path, result)

        completed = sum(1 for r in results if r.status == DocumentStatus.COMPLETED)
        logger.info(f"Batch finished: {completed}/{total} completed, {total - completed} failed")
        return results

    # ------------------------------------------------------------------
    # Document
    # ------------------------------------------------------------------

    async def process_document(
        self, path: Union[str, Path], result: Optional[DocumentResult] = None
    ) -> DocumentResult:
        """
        Run the full pipeline for one document.

        Never raises: failures are recorded on the returned result.

        Args:
            path: PDF to process
            result: Pending result to fill in (a new one is created if omitted)
        """
        path = Path(path)
        if result is None:
            result = DocumentResult(file_name=path.name)
        result.file_size = path.stat().st_size if path.is_file() else 0
        result.status = DocumentStatus.PROCESSING
        self._log(result, f"Starting isolated processing for: {path.name}")

        document = None
        try:
            info = await self._run_stage(result, INTAKE, self._intake(path))
            result.file_size = info.file_size
            result.page_count = info.page_count

            document = await self._run_stage(result, UPLOAD, self.llm.upload_document(path))
            self._emit(result, UPLOAD, 1, 1)

            records = await self._run_pipeline(result, document)

            result.records = records
            result.status = DocumentStatus.COMPLETED
            result.completed_at = datetime.now().isoformat()
            self._log(result, f"Completed with {len(records)} validated records", "success")

        except Exception as e:
            result.status = DocumentStatus.ERROR
            result.records = []
            result.error = str(e)
            self._log(result, f"Error: {e}", "error")

        finally:
            if document is not None:
                await self._cleanup(result, document)

        if result.status == DocumentStatus.COMPLETED and self.history is not None:
            try:
                self.history.append(result)
            except SQLAlchemyError as e:
                logger.error(f"Failed to save history for {result.file_name}: {e}")

        return result

    async def _intake(self, path: Path):
        return inspect_pdf(path)

    async def _cleanup(self, result: DocumentResult, document: Any):
        try:
            await self.llm.delete_document(document)
        except Exception as e:
            self._log(result, f"Failed to delete uploaded file: {e}", "warning")

    async def _run_pipeline(self, result: DocumentResult, document: Any) -> List[AuditRecord]:
        name = result.file_name
        registry = self.runner.registry
        on_retry = self._retry_logger(result)

        # Supervisor PRE
        pre = await self._run_stage(
            result, SUPERVISOR_PRE, self.runner.run_supervisor(document, name, "PRE", on_retry=on_retry)
        )
        self._add_usage(result, pre.usage)
        result.pre_isolation_check = pre.text
        self._emit(result, SUPERVISOR_PRE, 1, 1)
        self._log(result, f"{registry.get(SUPERVISOR_PRE).display_name}: {pre.text}", "success")
        await self._delay()

        # Extraction, audit, QA
        extracted = await self._run_validated_stage(result, document, EXTRACTION, None)
        await self._delay()
        audited = await self._run_validated_stage(result, document, AUDIT, extracted.normalized_records)
        await self._delay()
        reviewed = await self._run_validated_stage(result, document, QA, audited.normalized_records)
        records = reviewed.normalized_records
        await self._delay()

        # Supervisor POST
        post = await self._run_stage(
            result,
            SUPERVISOR_POST,
            self.runner.run_supervisor(document, name, "POST", records=records, on_retry=on_retry),
        )
        self._add_usage(result, post.usage)
        result.isolation_check = post.text
        self._emit(result, SUPERVISOR_POST, 1, 1)
        self._log(result, f"{registry.get(SUPERVISOR_POST).display_name}: {post.text}", "success")

        # Export validation (optional agent) + final deterministic pass
        if registry.is_enabled(EXPORT_VALIDATION):
            await self._delay()
            exported = await self._run_stage(
                result,
                EXPORT_VALIDATION,
                self.runner.run_export_validation(
                    document, name, self.schema, records,
                    on_progress=self._progress(result, EXPORT_VALIDATION),
                    on_retry=on_retry,
                ),
            )
            self._add_usage(result, exported.usage)
            candidates = exported.records
        else:
            candidates = records

        final = validate(self.schema, candidates, Stage.EXPORT, settings=self.settings)
        self._log_validation(result, "Final export validation", final)
        return final.normalized_records

    async def _run_validated_stage(
        self,
        result: DocumentResult,
        document: Any,
        stage_id: str,
        input_records: Optional[List[AuditRecord]],
    ) -> ValidationResult:
        """Run a stage, validate it, then re-check failed blocks (bounded rounds)."""
        name = result.file_name
        stage = self.runner.registry.get(stage_id)
        validation_stage = _VALIDATION_STAGES[stage_id]
        on_progress = self._progress(result, stage_id)
        on_retry = self._retry_logger(result)

        output = await self._run_stage(
            result, stage_id, self._invoke(stage_id, document, name, input_records, on_progress, on_retry)
        )
        self._add_usage(result, output.usage)
        candidates = output.records
        self._log(result, f"{stage.display_name}: {len(candidates)} records returned")

        validation = validate(self.schema, candidates, validation_stage, settings=self.settings)
        self._log_validation(result, stage.display_name, validation)

        for round_number in range(1, self.settings.max_recheck_rounds + 1):
            failed = validation.failed_blocks
            if validation.is_valid or not failed:
                break

            self._log(
                result,
                f"{stage.display_name}: re-check round {round_number} for blocks {failed}",
                "warning",
            )
            rerun = await self._run_stage(
                result,
                stage_id,
                self.runner.rerun_blocks(
                    stage_id, document, name, self.schema, failed,
                    records=input_records or [],
                    issues=validation.issues,
                    on_progress=on_progress,
                    on_retry=on_retry,
                ),
            )
            self._add_usage(result, rerun.usage)

            merged = self._merge_blocks(candidates, rerun.records, failed)
            revalidated = validate(self.schema, merged, validation_stage, settings=self.settings)
            if len(revalidated.issues) <= len(validation.issues):
                candidates, validation = merged, revalidated
                self._log_validation(result, f"{stage.display_name} re-check", validation)
            else:
                self._log(
                    result,
                    f"{stage.display_name}: re-check produced more issues; keeping previous output",
                    "warning",
                )
                break

        return validation

    def _invoke(self, stage_id, document, name, input_records, on_progress, on_retry) -> Awaitable[AgentOutput]:
        if stage_id == EXTRACTION:
            return self.runner.run_extraction(document, name, self.schema, on_progress, on_retry)
        if stage_id == AUDIT:
            return self.runner.run_audit(document, name, self.schema, input_records, on_progress, on_retry)
        return self.runner.run_qa(document, name, self.schema, input_records, on_progress, on_retry)

    def _merge_blocks(
        self, previous: List[AuditRecord], replacement: List[AuditRecord], blocks: Sequence[int]
    ) -> List[AuditRecord]:
        """Swap the records of re-checked blocks, keeping schema block order."""
        replaced = set(blocks)
        merged: List[AuditRecord] = []
        for number in self.schema.block_numbers:
            source = replacement if number in replaced else previous
            merged.extend(r for r in source if r.block_id == number)
        return merged

    async def _run_stage(self, result: DocumentResult, stage_id: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except StageError:
            raise
        except Exception as e:
            logger.error(f"{result.file_name}: stage {stage_id} failed: {e}")
            raise StageError(stage_id, e) from e

    async def _delay(self):
        if self.settings.inter_stage_delay > 0:
            await self.sleep(self.settings.inter_stage_delay)

    # ------------------------------------------------------------------
    # Logs, usage, progress
    # ------------------------------------------------------------------

    def _log(self, result: DocumentResult, message: str, type_: str = "info"):
        result.logs.append(LogEntry(message=message, type=type_))
        logger.log(_LOG_LEVELS.get(type_, logging.INFO), f"[{result.file_name}] {message}")

    def _log_validation(self, result: DocumentResult, label: str, validation: ValidationResult):
        if validation.is_valid:
            self._log(result, f"{label}: validation passed ({validation.correction_count} correction(s))")
            return
        self._log(
            result,
            f"{label}: {len(validation.issues)} issue(s), {validation.correction_count} correction(s), "
            f"failed blocks {validation.failed_blocks}",
            "warning",
        )

    def _add_usage(self, result: DocumentResult, usage: TokenUsage):
        result.token_usage = result.token_usage + usage

    def _emit(self, result: DocumentResult, step: str, completed: int, total: int):
        if self.progress_callback is not None:
            self.progress_callback(ProgressEvent(result.file_name, step, completed, total))

    def _progress(self, result: DocumentResult, step: str) -> Callable[[int, int], None]:
        def on_progress(completed: int, total: int):
            self._emit(result, step, completed, total)

        return on_progress

    def _retry_logger(self, result: DocumentResult):
        def on_retry(label: str, attempt: int, max_retries: int, delay: float, error: BaseException):
            # The wrapper already logs to the module logger
            result.logs.append(
                LogEntry(
                    message=f"{label}: transient error ({error}). Retry {attempt}/{max_retries} in {delay:.1f}s",
                    type="warning",
                )
            )

        return on_retry
