"""
Shared fixtures: a small two-block schema, valid records for it, and an
in-memory stand-in for the Gemini boundary.
"""

import json
import re
from typing import Dict, List, Optional

import fitz  # PyMuPDF
import pytest

from mediextract.config import Settings
from mediextract.models.records import AuditRecord, TokenUsage
from mediextract.models.schema import QuestionSchema
from mediextract.services.gemini_service import LLMResponse
from mediextract.stage_registry import StageRegistry


SCHEMA_DATA = {
    "table_name": "trial_extraction",
    "blocks": [
        {
            "block_number": 1,
            "block_name": "Study Design",
            "sections": [
                {
                    "section_name": "Groups",
                    "questions": [
                        {
                            "key": "group_count",
                            "label": "Number of comparative groups described",
                            "type": "single_select",
                            "options": ["1", "2", "3", "N/A"],
                        },
                        {"key": "group_2_name", "label": "Group 2 name", "type": "text"},
                        {
                            "key": "dose",
                            "label": "Dose option",
                            "type": "single_select",
                            "options": ["Low", "High", "N/A"],
                        },
                        {"key": "traceable", "label": "Traceable field", "type": "text"},
                    ],
                }
            ],
        },
        {
            "block_number": 2,
            "block_name": "Outcomes",
            "sections": [
                {
                    "section_name": "Primary",
                    "questions": [
                        {"key": "outcome", "label": "Primary outcome", "type": "text"},
                        {
                            "key": "routes",
                            "label": "Administration routes",
                            "type": "multiple_select",
                            "options": ["Oral", "IV", "N/A"],
                        },
                        {
                            "key": "extractor",
                            "label": "Extractor",
                            "type": "text",
                            "default": "MJA",
                            "locked": True,
                        },
                    ],
                }
            ],
        },
    ],
}


def make_record(
    question: str,
    answer: str,
    page: str = "12",
    reasoning: str = "Section A excerpt evidence",
    block_id: int = 1,
    section_name: str = "Groups",
    **extra,
) -> AuditRecord:
    return AuditRecord(
        block_id=block_id,
        section_name=section_name,
        question=question,
        answer=answer,
        page_number=page,
        reasoning=reasoning,
        **extra,
    )


def valid_records() -> List[AuditRecord]:
    """One conforming record per question of the test schema, in order."""
    return [
        make_record("Number of comparative groups described", "2"),
        make_record("Group 2 name", "Placebo arm"),
        make_record("Dose option", "Low"),
        make_record("Traceable field", "Randomized, double blind"),
        make_record("Primary outcome", "HbA1c change at week 24", block_id=2, section_name="Primary"),
        make_record("Administration routes", "Oral; IV", block_id=2, section_name="Primary"),
        make_record("Extractor", "MJA", block_id=2, section_name="Primary"),
    ]


@pytest.fixture
def schema() -> QuestionSchema:
    return QuestionSchema.from_dict(SCHEMA_DATA)


@pytest.fixture
def good_records() -> List[AuditRecord]:
    return valid_records()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        inter_stage_delay=0.0,
        api_retry_max_retries=2,
        api_retry_initial_backoff=0.01,
        api_retry_max_delay=0.05,
        api_retry_max_jitter=0.0,
        block_chunk_size=1,
        max_recheck_rounds=1,
    )


@pytest.fixture
def registry() -> StageRegistry:
    return StageRegistry({})


@pytest.fixture
def make_pdf(tmp_path):
    """Create a small real PDF and return its path."""

    def _make(name: str = "trial.pdf", pages: int = 2):
        path = tmp_path / name
        doc = fitz.open()
        for i in range(pages):
            page = doc.new_page()
            page.insert_text((72, 72), f"Study page {i + 1}")
        doc.save(str(path))
        doc.close()
        return path

    return _make


_FIRST_LINE_BLOCKS = re.compile(r"Block (\d+)")


class FakeGemini:
    """
    In-memory model boundary.

    Supervisor prompts get fixed text; stage prompts get the JSON records
    for the blocks named on the prompt's first line. `overrides` maps a
    stage marker to a function(prompt, blocks) -> text, and `failures`
    maps a marker to a list of exceptions raised on successive calls.
    """

    MARKERS = {
        "supervisor_pre": "ISOLATION SUPERVISOR",
        "extraction": "EXPERT MEDICAL EXTRACTOR",
        "audit": "STRICT MEDICAL AUDITOR",
        "qa": "FINAL QA AUTHORITY",
        "export_validation": "EXPORT VALIDATION AGENT",
    }

    def __init__(self, records: Optional[List[AuditRecord]] = None, overrides=None, failures=None):
        self.records = records if records is not None else valid_records()
        self.overrides: Dict[str, object] = overrides or {}
        self.failures: Dict[str, List[Exception]] = failures or {}
        self.calls: List[Dict[str, object]] = []
        self.uploaded: List[str] = []
        self.deleted: List[object] = []
        self.usage = TokenUsage(prompt_tokens=10, output_tokens=5, total_tokens=15)

    def stage_of(self, prompt: str) -> str:
        if "RESULTS TO VERIFY" in prompt:
            return "supervisor_post"
        for stage, marker in self.MARKERS.items():
            if marker in prompt:
                return stage
        return "unknown"

    async def upload_document(self, path):
        self.uploaded.append(str(path))
        return f"files/{len(self.uploaded)}"

    async def delete_document(self, document):
        self.deleted.append(document)
        return True

    async def generate(self, document, prompt, *, response_schema=None, model=None, max_output_tokens=None):
        stage = self.stage_of(prompt)
        blocks = [int(n) for n in _FIRST_LINE_BLOCKS.findall(prompt.splitlines()[0])]
        self.calls.append({"stage": stage, "blocks": blocks, "prompt": prompt, "document": document})

        pending = self.failures.get(stage)
        if pending:
            raise pending.pop(0)

        if stage in self.overrides:
            return LLMResponse(text=self.overrides[stage](prompt, blocks), usage=self.usage)
        if stage == "supervisor_pre":
            return LLMResponse(text="Isolation boundary declared for study ABC-123.", usage=self.usage)
        if stage == "supervisor_post":
            return LLMResponse(text="ISOLATION VERIFIED", usage=self.usage)

        payload = [r.to_dict() for r in self.records if r.block_id in blocks]
        return LLMResponse(text=json.dumps(payload), usage=self.usage)

    def stages_called(self) -> List[str]:
        ordered = []
        for call in self.calls:
            if not ordered or ordered[-1] != call["stage"]:
                ordered.append(call["stage"])
        return ordered


@pytest.fixture
def fake_llm() -> FakeGemini:
    return FakeGemini()
