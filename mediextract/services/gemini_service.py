"""
Gemini model-call boundary.

Handles:
- PDF upload to the Gemini File API (and cleanup)
- One generate call per prompt, with an optional JSON response schema
- Token usage mapping

Retries are not done here; callers wrap calls with call_with_retry.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import google.generativeai as genai

from mediextract.config import settings
from mediextract.models.records import TokenUsage

logger = logging.getLogger(__name__)

UPLOAD_POLL_INTERVAL = 2.0


@dataclass
class LLMResponse:
    """Raw model text plus the usage reported for the call."""

    text: str
    usage: TokenUsage


def map_usage(response: Any) -> TokenUsage:
    """Map Gemini usage_metadata to TokenUsage (missing counts are 0)."""
    metadata = getattr(response, "usage_metadata", None)
    if metadata is None:
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=getattr(metadata, "prompt_token_count", 0) or 0,
        output_tokens=getattr(metadata, "candidates_token_count", 0) or 0,
        total_tokens=getattr(metadata, "total_token_count", 0) or 0,
    )


def response_text(response: Any) -> str:
    """
    Concatenate text parts of the first candidate.

    Avoids response.text, which raises when a response was cut off or
    blocked without content.
    """
    candidates = getattr(response, "candidates", None)
    if not candidates:
        return ""
    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) or []
    return "".join(getattr(part, "text", "") or "" for part in parts)


class GeminiService:
    """Uploads documents and runs prompts against them with Gemini."""

    def __init__(self, api_key: Optional[str] = None, default_model: Optional[str] = None):
        """Initialize Gemini API client."""
        genai.configure(api_key=api_key or settings.gemini_api_key)
        self.default_model = default_model or settings.gemini_model
        self._models: Dict[str, Any] = {}

    def get_model(self, model_name: Optional[str] = None):
        """Get or create a GenerativeModel instance for the given model name."""
        name = model_name or self.default_model
        if name not in self._models:
            self._models[name] = genai.GenerativeModel(name)
        return self._models[name]

    async def upload_document(self, path: Union[str, Path]):
        """
        Upload a PDF to the Gemini File API and wait until it is ACTIVE.

        Returns:
            The Gemini file handle passed to generate()

        Raises:
            RuntimeError: If Gemini reports processing FAILED (the upload is deleted first)
        """
        path = Path(path)
        logger.info(f"Uploading PDF to Gemini File API: {path.name}")
        gemini_file = genai.upload_file(
            path=str(path),
            display_name=path.name,
            mime_type="application/pdf",
        )

        while gemini_file.state.name == "PROCESSING":
            logger.info("Waiting for Gemini to process file...")
            await asyncio.sleep(UPLOAD_POLL_INTERVAL)
            gemini_file = genai.get_file(gemini_file.name)

        if gemini_file.state.name == "FAILED":
            await self.delete_document(gemini_file)
            raise RuntimeError(f"Gemini file processing failed: {gemini_file.name}")

        logger.info(f"Uploaded file with URI: {gemini_file.uri}")
        return gemini_file

    async def generate(
        self,
        document: Any,
        prompt: str,
        *,
        response_schema: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """
        Generate content for a prompt against an uploaded document.

        Args:
            document: File handle returned by upload_document
            prompt: Prompt text
            response_schema: Expected JSON response shape (switches to JSON mode)
            model: Model name override
            max_output_tokens: Maximum output tokens (default from settings)

        Returns:
            LLMResponse with the raw (possibly malformed) text and usage
        """
        config_kwargs: Dict[str, Any] = {
            "max_output_tokens": max_output_tokens or settings.gemini_max_output_tokens,
            "temperature": settings.gemini_temperature,
        }
        if response_schema is not None:
            config_kwargs["response_mime_type"] = "application/json"
            config_kwargs["response_schema"] = response_schema

        response = await self.get_model(model).generate_content_async(
            [document, prompt],
            generation_config=genai.GenerationConfig(**config_kwargs),
        )
        return LLMResponse(text=response_text(response), usage=map_usage(response))

    async def delete_document(self, document: Any) -> bool:
        """
        Delete an uploaded file from the Gemini File API.

        Returns:
            True if deleted successfully
        """
        name = getattr(document, "name", document)
        try:
            genai.delete_file(name)
            logger.info(f"Deleted Gemini file: {name}")
            return True
        except Exception as e:
            logger.warning(f"Failed to delete Gemini file {name}: {e}")
            return False
