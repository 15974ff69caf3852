"""Stage 3 — site walkthrough video analysis.

Flow:
  validate (size, MIME) → temp file → File API upload → poll until ACTIVE
  → multimodal analysis with Stage 1/2 context → typed claim

The temp file is removed on every path; the uploaded asset is removed
best-effort.
"""

from __future__ import annotations

import asyncio
import uuid
import logging
from dataclasses import dataclass
from pathlib import Path

from google.api_core import exceptions as google_exceptions

from landguard.config import (
    VIDEO_TEMP_DIR, VIDEO_MAX_BYTES, VIDEO_MAX_MB, VIDEO_ALLOWED_MIME_TYPES,
    VIDEO_POLL_INTERVAL, VIDEO_MAX_POLLS,
)
from landguard.pipeline.errors import (
    InputValidationError, VideoProcessingFailed, VideoProcessingTimeout,
)
from landguard.pipeline.extractors.base import ClaimExtractor, MediaPayload, StageInstruction
from landguard.pipeline.gemini_client import (
    LLMProgressCallback, _noop_cb, upload_media, get_media_state, delete_media,
)
from landguard.pipeline.schemas import Stage1Claim, Stage2Claim, Stage3Claim

logger = logging.getLogger(__name__)


@dataclass
class SiteContext:
    """Verified facts woven into the narrative report."""
    survey_number: str = ""
    verified_name: str = ""
    land_status: str = ""
    total_area: str = ""
    land_classification: str = ""
    village: str = ""
    record_status: str = ""

    @classmethod
    def from_claims(cls, stage1: Stage1Claim, stage2: Stage2Claim | None = None) -> "SiteContext":
        ctx = cls(
            survey_number=stage1.survey_number,
            verified_name=stage1.verified_name,
            land_status=stage1.land_status,
            total_area=stage1.total_area,
        )
        if stage2 is not None:
            ctx.land_classification = stage2.land_classification
            ctx.village = stage2.geo_target.display_address()
            ctx.record_status = stage2.status
            if stage2.official_area_text:
                ctx.total_area = stage2.official_area_text
        return ctx


def validate_video(size: int, mime_type: str) -> str:
    """Check size and type before anything touches disk or network.

    Returns the file extension for the temp file.
    """
    if size <= 0:
        raise InputValidationError("Video file is required")
    if size > VIDEO_MAX_BYTES:
        raise InputValidationError(
            f"Video file size must be under {VIDEO_MAX_MB}MB",
            details=f"Received {size / 1024 / 1024:.1f}MB",
        )
    ext = VIDEO_ALLOWED_MIME_TYPES.get((mime_type or "").lower())
    if not ext:
        raise InputValidationError(
            "Invalid file type. Please upload .mp4, .mov, or .avi file",
            details=f"Received {mime_type or 'unknown type'}",
        )
    return ext


def build_site_prompt(ctx: SiteContext) -> str:
    def _v(value: str) -> str:
        return value or "Not provided"

    return f"""
Analyze the attached land site walkthrough video for three things.

1. VISUAL LAND ASSESSMENT
   - Terrain (flat, sloped, rocky) and likely soil type.
   - Vegetation and how clearly the plot boundaries are marked.
   - Visible infrastructure (electric poles, roads, buildings, wells).
   - Any water bodies or waterlogging.

2. AUDIO / TRAFFIC ASSESSMENT
   - Listen to the background audio only.
   - Name the distinct sounds (heavy honking, birds, highway drone, ...).
   - Estimate traffic density (High, Moderate, Low, Nature, Industrial).
   - Noise level score from 1 (silent / rural) to 10 (noisy junction).

3. SITE INTELLIGENCE REPORT
   - Two or three professional paragraphs for a prospective buyer.
   - Tie the verified document facts below to what the video shows: does
     the land type on record match what is visible, does the extent look
     plausible, is the owner's claim consistent with the site.
   - Rate suitability for construction from 1 to 10 and give concrete
     recommendations.

Verified document facts:
- Survey number: {_v(ctx.survey_number)}
- Verified owner: {_v(ctx.verified_name)}
- Land status (deed): {_v(ctx.land_status)}
- Recorded area: {_v(ctx.total_area)}
- Land classification (Patta): {_v(ctx.land_classification)}
- Revenue village: {_v(ctx.village)}
- Land record check: {_v(ctx.record_status)}
"""


async def _poll_state(name: str):
    try:
        return await asyncio.to_thread(get_media_state, name)
    except google_exceptions.GoogleAPICallError as e:
        raise VideoProcessingFailed("Video processing failed. Please try again.", details=str(e)) from e


async def _wait_until_active(name: str, on_progress: LLMProgressCallback):
    """Poll the File API until the upload leaves PROCESSING."""
    state, handle = await _poll_state(name)
    polls = 0
    while state == "PROCESSING":
        if polls >= VIDEO_MAX_POLLS:
            raise VideoProcessingTimeout(
                "Video processing timeout. Please try again with a shorter video.",
                details=f"Still processing after {polls * VIDEO_POLL_INTERVAL:.0f}s",
            )
        await asyncio.sleep(VIDEO_POLL_INTERVAL)
        state, handle = await _poll_state(name)
        polls += 1
        await on_progress("video_processing", f"Processing video... ({polls * VIDEO_POLL_INTERVAL:.0f}s)", {
            "type": "video_processing",
            "polls": polls,
        })

    if state == "FAILED":
        raise VideoProcessingFailed("Video processing failed. Please try again.")
    logger.info(f"Video {name} ready after {polls} poll(s) (state {state})")
    return handle


async def analyze_site_video(
    data: bytes,
    mime_type: str,
    ctx: SiteContext,
    on_progress: LLMProgressCallback | None = None,
    filename: str = "",
) -> Stage3Claim:
    """Run Stage 3 end to end.

    Raises:
        InputValidationError: size/type rejected (nothing written, nothing sent)
        VideoProcessingTimeout: upload still PROCESSING after the poll ceiling
        VideoProcessingFailed: upload failed or ended in FAILED
        ExtractionError: analysis call or response failed
    """
    cb = on_progress or _noop_cb
    ext = validate_video(len(data), mime_type)

    temp_path: Path = VIDEO_TEMP_DIR / f"land-video-{uuid.uuid4().hex}{ext}"
    remote_name: str | None = None
    logger.info(f"Stage 3: video {filename or temp_path.name} "
                f"({len(data) / 1024 / 1024:.2f}MB, {mime_type}), survey {ctx.survey_number!r}")
    try:
        await asyncio.to_thread(temp_path.write_bytes, data)

        await cb("video_upload", "Uploading video for analysis...", {"type": "video_upload"})
        try:
            uploaded = await asyncio.to_thread(
                upload_media, str(temp_path), mime_type,
                f"Land Site Visit - {ctx.survey_number or 'Unknown'}",
            )
        except google_exceptions.GoogleAPICallError as e:
            raise VideoProcessingFailed("Video upload failed. Please try again.", details=str(e)) from e
        remote_name = uploaded.name

        handle = await _wait_until_active(remote_name, cb)

        instruction = StageInstruction(
            task_label="Stage 3 · Site Video",
            prompt=build_site_prompt(ctx),
            claim_model=Stage3Claim,
        )
        video = MediaPayload(label="site video", mime_type=mime_type, handle=handle)
        claim = await ClaimExtractor(on_progress=on_progress).extract(instruction, [video])
        logger.info(f"Stage 3 result: suitability {claim.suitability_score}/10, "
                    f"noise {claim.audio.noise_pollution_score}/10")
        return claim
    finally:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to remove temp video {temp_path}: {e}")
        if remote_name:
            await _delete_remote(remote_name)


async def _delete_remote(name: str) -> None:
    """Best-effort remote cleanup — never raises."""
    try:
        await asyncio.to_thread(delete_media, name)
    except Exception as e:
        logger.warning(f"Could not delete uploaded video {name}: {e}")
