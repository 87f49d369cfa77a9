"""
MediExtract - multi-agent extraction of clinical-trial PDFs.

This package provides a sequential per-document pipeline with:
- Isolation supervisor checks before and after extraction
- Extraction, audit, QA and export-validation agents (Gemini)
- Deterministic schema validation between every stage
- JSON repair for truncated or malformed model output
- Persisted extraction history (SQLAlchemy)
"""

__version__ = "1.0.0"
