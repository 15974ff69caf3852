"""Stage extractors: identity + deed, land record, site video."""

from .base import ClaimExtractor, MediaPayload, StageInstruction
from .identity_deed import verify_identity_and_deed, enforce_identity_gate
from .land_record import LandRecordContext, verify_land_record, enforce_land_record_gate
from .site_video import SiteContext, analyze_site_video, validate_video

__all__ = [
    "ClaimExtractor",
    "MediaPayload",
    "StageInstruction",
    "verify_identity_and_deed",
    "enforce_identity_gate",
    "LandRecordContext",
    "verify_land_record",
    "enforce_land_record_gate",
    "SiteContext",
    "analyze_site_video",
    "validate_video",
]
