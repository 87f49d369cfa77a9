"""
In-memory question schema.

The schema is external, versioned configuration: ordered blocks, each holding
ordered sections of questions. Everything downstream (prompts, validation,
export columns) derives its structure from the loaded schema at call time.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from jsonschema import Draft7Validator

from mediextract.config import settings

logger = logging.getLogger(__name__)

META_SCHEMA_FILE = "question_schema.json"


class SchemaError(ValueError):
    """Raised when a question schema file is malformed or breaks an invariant."""


class QuestionType(str, Enum):
    """Answer types supported by the schema."""

    TEXT = "text"
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"

    @classmethod
    def parse(cls, value: str) -> "QuestionType":
        """Parse a type string, accepting the legacy 'multiple_select' alias."""
        normalized = (value or "").strip().lower()
        if normalized == "multiple_select":
            return cls.MULTI_SELECT
        return cls(normalized)


def normalize_text(value: Any) -> str:
    """Trim a possibly-missing value to a plain string."""
    if value is None:
        return ""
    return str(value).strip()


def normalize_for_compare(value: Any) -> str:
    """Trimmed, lowercased form used for every label/key comparison."""
    return normalize_text(value).lower()


@dataclass(frozen=True)
class Question:
    """Atomic schema unit."""

    key: str
    label: str
    type: QuestionType
    options: Tuple[str, ...] = ()
    default: Optional[str] = None
    locked: bool = False
    instruction: Optional[str] = None

    @property
    def has_options(self) -> bool:
        return bool(self.options)

    @property
    def is_multi_select(self) -> bool:
        return self.type is QuestionType.MULTI_SELECT

    def to_dict(self) -> Dict[str, Any]:
        """Serialize back to the configuration shape (used in prompts)."""
        data: Dict[str, Any] = {
            "key": self.key,
            "label": self.label,
            "type": self.type.value,
        }
        if self.options:
            data["options"] = list(self.options)
        if self.default:
            data["default"] = self.default
        if self.locked:
            data["locked"] = True
        if self.instruction:
            data["instruction"] = self.instruction
        return data


@dataclass(frozen=True)
class Section:
    """Sub-grouping of questions within a block."""

    name: str
    questions: Tuple[Question, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "section_name": self.name,
            "questions": [q.to_dict() for q in self.questions],
        }


@dataclass(frozen=True)
class Block:
    """Top-level schema grouping (e.g. 'Study Design')."""

    number: int
    name: str
    sections: Tuple[Section, ...]
    description: Optional[str] = None

    @property
    def questions(self) -> List[Question]:
        return [q for section in self.sections for q in section.questions]

    def find_question(self, text: Any) -> Optional[Question]:
        """
        Resolve question text to a schema question.

        Labels are tried first, then stable keys (models sometimes echo the
        key instead of the display label).
        """
        wanted = normalize_for_compare(text)
        if not wanted:
            return None
        for question in self.questions:
            if normalize_for_compare(question.label) == wanted:
                return question
        for question in self.questions:
            if normalize_for_compare(question.key) == wanted:
                return question
        return None

    def get_question(self, key: Any) -> Optional[Question]:
        """Exact stable-key lookup."""
        wanted = normalize_text(key)
        for question in self.questions:
            if question.key == wanted:
                return question
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "block_number": self.number,
            "block_name": self.name,
            "sections": [s.to_dict() for s in self.sections],
        }
        if self.description:
            data["description"] = self.description
        return data


@dataclass(frozen=True)
class QuestionSchema:
    """Immutable, ordered schema: blocks -> sections -> questions."""

    blocks: Tuple[Block, ...]
    table_name: Optional[str] = None
    language: Optional[str] = None
    _positions: Dict[Tuple[int, str], int] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self):
        positions: Dict[Tuple[int, str], int] = {}
        for index, (block, _, question) in enumerate(self.iter_questions()):
            positions[(block.number, question.key)] = index
        object.__setattr__(self, "_positions", positions)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuestionSchema":
        """Build a schema from its JSON configuration shape (no validation)."""
        blocks = []
        for raw_block in data.get("blocks", []):
            sections = []
            for raw_section in raw_block.get("sections", []):
                questions = tuple(
                    Question(
                        key=raw_q["key"],
                        label=raw_q["label"],
                        type=QuestionType.parse(raw_q.get("type", "text")),
                        options=tuple(raw_q.get("options") or ()),
                        default=raw_q.get("default") or None,
                        locked=bool(raw_q.get("locked", False)),
                        instruction=raw_q.get("instruction"),
                    )
                    for raw_q in raw_section.get("questions", [])
                )
                sections.append(Section(name=raw_section["section_name"], questions=questions))
            blocks.append(
                Block(
                    number=int(raw_block["block_number"]),
                    name=raw_block["block_name"],
                    sections=tuple(sections),
                    description=raw_block.get("description"),
                )
            )
        return cls(
            blocks=tuple(blocks),
            table_name=data.get("table_name"),
            language=data.get("language"),
        )

    def iter_questions(self) -> Iterator[Tuple[Block, Section, Question]]:
        """Canonical traversal order: blocks -> sections -> questions."""
        for block in self.blocks:
            for section in block.sections:
                for question in section.questions:
                    yield block, section, question

    @property
    def question_count(self) -> int:
        return len(self._positions)

    @property
    def block_numbers(self) -> List[int]:
        return [block.number for block in self.blocks]

    def get_block(self, number: int) -> Optional[Block]:
        for block in self.blocks:
            if block.number == number:
                return block
        return None

    def canonical_index(self, block_number: int, key: str) -> Optional[int]:
        """Position of a question in canonical order, or None if unknown."""
        return self._positions.get((block_number, key))

    def find_question(self, block_number: int, text: Any) -> Optional[Question]:
        block = self.get_block(block_number)
        if block is None:
            return None
        return block.find_question(text)

    def subset(self, block_numbers: Iterable[int]) -> "QuestionSchema":
        """Schema restricted to the given blocks, preserving canonical order."""
        wanted = set(block_numbers)
        return QuestionSchema(
            blocks=tuple(b for b in self.blocks if b.number in wanted),
            table_name=self.table_name,
            language=self.language,
        )

    def chunk_blocks(self, size: int) -> List["QuestionSchema"]:
        """Split into consecutive fixed-size chunks of blocks."""
        if size < 1:
            raise ValueError("chunk size must be >= 1")
        return [
            QuestionSchema(
                blocks=self.blocks[i:i + size],
                table_name=self.table_name,
                language=self.language,
            )
            for i in range(0, len(self.blocks), size)
        ]

    def to_prompt_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"blocks": [b.to_dict() for b in self.blocks]}
        if self.table_name:
            data["table_name"] = self.table_name
        if self.language:
            data["language"] = self.language
        return data


def _load_meta_schema() -> Dict[str, Any]:
    with open(settings.schemas_dir / META_SCHEMA_FILE, encoding="utf-8") as f:
        return json.load(f)


def _check_invariants(schema: QuestionSchema) -> List[str]:
    """Structural rules the JSON meta-schema cannot express."""
    problems = []
    seen_blocks = set()
    for block in schema.blocks:
        if block.number in seen_blocks:
            problems.append(f"Duplicate block number {block.number}")
        seen_blocks.add(block.number)

        keys = set()
        labels = set()
        for question in block.questions:
            if question.key in keys:
                problems.append(f"Block {block.number}: duplicate question key '{question.key}'")
            keys.add(question.key)

            label = normalize_for_compare(question.label)
            if label in labels:
                problems.append(f"Block {block.number}: duplicate question label '{question.label}'")
            labels.add(label)

            if question.type is QuestionType.TEXT and question.options:
                problems.append(f"Block {block.number}: text question '{question.key}' declares options")
            if question.type is not QuestionType.TEXT and not question.options:
                problems.append(f"Block {block.number}: select question '{question.key}' has no options")
            if len(set(question.options)) != len(question.options):
                problems.append(f"Block {block.number}: question '{question.key}' repeats an option")
    return problems


def parse_schema(data: Dict[str, Any]) -> QuestionSchema:
    """
    Validate raw schema data and build a QuestionSchema.

    Raises:
        SchemaError: On meta-schema violations or broken invariants
    """
    validator = Draft7Validator(_load_meta_schema())
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    if errors:
        details = "; ".join(
            f"{'.'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}"
            for e in errors[:10]
        )
        raise SchemaError(f"Question schema failed validation: {details}")

    schema = QuestionSchema.from_dict(data)
    problems = _check_invariants(schema)
    if problems:
        raise SchemaError("Question schema invariants violated: " + "; ".join(problems))
    return schema


def load_schema(path: Union[str, Path]) -> QuestionSchema:
    """Load and validate a question schema JSON file."""
    path = Path(path)
    if not path.exists():
        raise SchemaError(f"Schema file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise SchemaError(f"Schema file is not valid JSON: {path}: {e}") from e

    schema = parse_schema(data)
    logger.info(
        f"Loaded schema {path.name}: {len(schema.blocks)} blocks, "
        f"{schema.question_count} questions"
    )
    return schema


def load_default_schema() -> QuestionSchema:
    """Load the bundled clinical-trial question schema."""
    return load_schema(settings.schemas_dir / settings.default_schema_file)
