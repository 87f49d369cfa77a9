"""
Stage registry for the agent pipeline.

Defines configuration for each agent stage:
- Display label (used in logs and retry messages)
- Prompt template file
- Model and output token overrides
- Whether the stage is enabled

Overrides are read from the `stages:` section of config.yaml in the project root.
Only export_validation may be disabled; the other stages are mandatory.
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Union
import logging

import yaml

from mediextract.config import PROJECT_ROOT, settings

logger = logging.getLogger(__name__)

# Path to config.yaml
CONFIG_YAML_PATH = PROJECT_ROOT / "config.yaml"

SUPERVISOR_PRE = "supervisor_pre"
EXTRACTION = "extraction"
AUDIT = "audit"
QA = "qa"
SUPERVISOR_POST = "supervisor_post"
EXPORT_VALIDATION = "export_validation"

OPTIONAL_STAGES = frozenset({EXPORT_VALIDATION})


@dataclass(frozen=True)
class StageConfig:
    """Configuration for a single agent stage."""

    stage_id: str
    display_name: str
    prompt_file: str
    order: int
    enabled: bool = True
    # None means settings.gemini_model / settings.gemini_max_output_tokens
    model: Optional[str] = None
    max_output_tokens: Optional[int] = None

    def get_prompt_path(self) -> Path:
        """Get full path to the prompt template."""
        return settings.prompts_dir / self.prompt_file

    def get_model(self) -> str:
        return self.model or settings.gemini_model


DEFAULT_STAGES: Dict[str, StageConfig] = {
    SUPERVISOR_PRE: StageConfig(
        stage_id=SUPERVISOR_PRE,
        display_name="Agent 4 (Supervisor Pre)",
        prompt_file="supervisor_pre.txt",
        order=1,
    ),
    EXTRACTION: StageConfig(
        stage_id=EXTRACTION,
        display_name="Agent 1 (Extraction)",
        prompt_file="extraction.txt",
        order=2,
    ),
    AUDIT: StageConfig(
        stage_id=AUDIT,
        display_name="Agent 2 (Audit)",
        prompt_file="audit.txt",
        order=3,
    ),
    QA: StageConfig(
        stage_id=QA,
        display_name="Agent 3 (QA)",
        prompt_file="qa.txt",
        order=4,
    ),
    SUPERVISOR_POST: StageConfig(
        stage_id=SUPERVISOR_POST,
        display_name="Agent 4 (Supervisor Post)",
        prompt_file="supervisor_post.txt",
        order=5,
    ),
    EXPORT_VALIDATION: StageConfig(
        stage_id=EXPORT_VALIDATION,
        display_name="Agent 5 (Export Validation)",
        prompt_file="export_validation.txt",
        order=6,
    ),
}


def load_stage_config(path: Optional[Union[str, Path]] = None) -> Dict:
    """
    Load the `stages:` mapping from config.yaml.

    Returns:
        Dictionary of stage id -> overrides (empty when the file is missing)
    """
    path = Path(path) if path else CONFIG_YAML_PATH
    if not path.exists():
        logger.warning(f"config.yaml not found at {path}, using defaults")
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading {path}: {e}")
        return {}

    stages = config.get("stages") or {}
    if not isinstance(stages, dict):
        logger.error(f"'stages' in {path} must be a mapping, using defaults")
        return {}
    return stages


class StageRegistry:
    """Resolved stage configurations, defaults merged with config.yaml overrides."""

    def __init__(self, overrides: Optional[Dict] = None):
        self._stages: Dict[str, StageConfig] = {}
        overrides = overrides or {}

        for stage_id, default in DEFAULT_STAGES.items():
            override = overrides.get(stage_id) or {}
            if not isinstance(override, dict):
                logger.warning(f"Ignoring non-mapping config for stage '{stage_id}'")
                override = {}

            enabled = bool(override.get("enabled", default.enabled))
            if not enabled and stage_id not in OPTIONAL_STAGES:
                logger.warning(f"Stage '{stage_id}' is mandatory and cannot be disabled")
                enabled = True

            self._stages[stage_id] = replace(
                default,
                enabled=enabled,
                display_name=override.get("display_name", default.display_name),
                prompt_file=override.get("prompt_file", default.prompt_file),
                model=override.get("model", default.model),
                max_output_tokens=override.get("max_output_tokens", default.max_output_tokens),
            )

        unknown = set(overrides) - set(DEFAULT_STAGES)
        if unknown:
            logger.warning(f"Unknown stages in config.yaml ignored: {sorted(unknown)}")

    @classmethod
    def from_yaml(cls, path: Optional[Union[str, Path]] = None) -> "StageRegistry":
        return cls(load_stage_config(path))

    def get(self, stage_id: str) -> StageConfig:
        try:
            return self._stages[stage_id]
        except KeyError:
            raise KeyError(f"Unknown stage: {stage_id}") from None

    def is_enabled(self, stage_id: str) -> bool:
        return self.get(stage_id).enabled

    def all_stages(self) -> List[StageConfig]:
        return sorted(self._stages.values(), key=lambda s: s.order)

    def enabled_stages(self) -> List[StageConfig]:
        """Get list of enabled stages in execution order."""
        return [s for s in self.all_stages() if s.enabled]

    def get_status_summary(self) -> str:
        """
        Get a formatted summary of stage configuration.

        Returns:
            Formatted string listing every stage with status and model.
        """
        lines = []
        lines.append("=" * 60)
        lines.append("PIPELINE STAGES (from config.yaml)")
        lines.append("=" * 60)

        for stage in self.all_stages():
            status = "ENABLED" if stage.enabled else "DISABLED"
            lines.append(f"  [{status:8}] {stage.stage_id:18} {stage.display_name:28} {stage.get_model()}")

        lines.append("=" * 60)
        lines.append(f"TOTAL: {len(self.enabled_stages())}/{len(self._stages)} stages enabled")
        lines.append("=" * 60)
        return "\n".join(lines)


def get_registry(path: Optional[Union[str, Path]] = None) -> StageRegistry:
    """Build the stage registry from config.yaml (or defaults)."""
    return StageRegistry.from_yaml(path)
