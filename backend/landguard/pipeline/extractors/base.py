"""Claim extractor: one multimodal call → one validated claim model."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from landguard.config import GEMINI_REQUEST_TIMEOUT
from landguard.pipeline.errors import MalformedResponse
from landguard.pipeline.gemini_client import (
    LLMProgressCallback, call_gemini, _parse_json_response,
)

logger = logging.getLogger(__name__)

ClaimT = TypeVar("ClaimT", bound=BaseModel)


def sniff_mime(data: bytes) -> str:
    """Pick a MIME type for document bytes from their magic number.

    PDF and the common image formats are recognised; anything else is
    sent as JPEG, which is what phone camera uploads almost always are.
    """
    if data[:4] == b"%PDF":
        return "application/pdf"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


@dataclass
class MediaPayload:
    """A document or video handed to the model.

    Either ``data`` (inline bytes) or ``handle`` (an uploaded File API
    object) is set.
    """
    label: str
    data: bytes = b""
    mime_type: str = ""
    handle: Any = None

    def __post_init__(self):
        if self.handle is None and not self.mime_type:
            self.mime_type = sniff_mime(self.data)

    def to_part(self) -> Any:
        if self.handle is not None:
            return self.handle
        return {"mime_type": self.mime_type, "data": self.data}


@dataclass
class StageInstruction(Generic[ClaimT]):
    """Stage directive: what to look for, and the model to validate against."""
    task_label: str
    prompt: str
    claim_model: type[ClaimT]
    timeout: float | None = field(default=None)


class ClaimExtractor:
    """Runs a ``StageInstruction`` against media and returns a typed claim.

    The JSON Schema of the claim model is appended to the directive, the
    first JSON object in the reply is parsed, and the result is validated.
    Any step failing raises ``MalformedResponse`` with the raw reply
    attached; there is no automatic re-ask.
    """

    def __init__(self, on_progress: LLMProgressCallback | None = None):
        self.on_progress = on_progress

    @staticmethod
    def build_prompt(instruction: StageInstruction) -> str:
        schema = json.dumps(instruction.claim_model.model_json_schema(), ensure_ascii=False)
        return (
            f"{instruction.prompt.strip()}\n\n"
            "Return ONLY a single JSON object (no markdown, no commentary) "
            f"that conforms to this JSON Schema:\n{schema}"
        )

    async def extract(self, instruction: StageInstruction[ClaimT], media: list[MediaPayload]) -> ClaimT:
        label = instruction.task_label
        timeout = instruction.timeout if instruction.timeout is not None else (GEMINI_REQUEST_TIMEOUT or None)
        logger.info(f"[{label}] Extracting from {len(media)} media part(s): {[m.label for m in media]}")

        raw = await call_gemini(
            self.build_prompt(instruction),
            media=[m.to_part() for m in media],
            task_label=label,
            on_progress=self.on_progress,
            timeout=timeout,
        )

        try:
            parsed = _parse_json_response(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"[{label}] No JSON object in response (first 500 chars): {raw[:500]!r}")
            raise MalformedResponse(
                "Failed to parse AI response",
                raw_text=raw,
                details=str(e),
            ) from e

        try:
            return instruction.claim_model.model_validate(parsed)
        except ValidationError as e:
            logger.warning(f"[{label}] Response failed schema validation: {e.error_count()} error(s)")
            raise MalformedResponse(
                "AI response did not match the expected format",
                raw_text=raw,
                details=str(e),
            ) from e
