"""Pipeline orchestrator - coordinates one seller verification attempt.

  Stage 1  → Identity & deed matching (PAN card + sale deed)
  Stage 2  → Land record cross-validation (Patta / Chitta)
  Location → Geofence confirmation at the revenue village
  Stage 3  → Site video analysis
  Save     → Verification record + subject flag

Ordering is an explicit state machine held in a ``VerificationSession``
that is persisted between HTTP requests.  Any stage that has been
reached may be re-run; re-running a stage discards everything
downstream of it.
"""

from __future__ import annotations

import base64
import json
import time
import uuid
import logging
from datetime import datetime
from enum import Enum

from landguard.config import SESSIONS_DIR, VIDEO_TEMP_DIR, SESSION_TTL_SECONDS
from landguard.pipeline.assembler import assemble_and_save
from landguard.pipeline.errors import (
    GeofenceError, IdentityMismatch, LandRecordRejected, StageOrderError, VerificationError,
)
from landguard.pipeline.extractors.base import MediaPayload
from landguard.pipeline.extractors.identity_deed import enforce_identity_gate, verify_identity_and_deed
from landguard.pipeline.extractors.land_record import (
    LandRecordContext, enforce_land_record_gate, verify_land_record,
)
from landguard.pipeline.extractors.site_video import SiteContext, analyze_site_video
from landguard.pipeline.geofence import GeofenceResult, GeofenceSession, NominatimGeocoder, ResolvedTarget
from landguard.pipeline.gemini_client import LLMProgressCallback
from landguard.pipeline.schemas import Stage1Claim, Stage2Claim, Stage3Claim
from landguard.pipeline.store import VerificationStore, atomic_write_json, is_safe_key

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    IDENTITY = "IDENTITY"
    LAND_RECORD = "LAND_RECORD"
    LOCATION = "LOCATION"
    SITE_VIDEO = "SITE_VIDEO"
    READY = "READY"
    COMPLETED = "COMPLETED"
    HALTED = "HALTED"


class StageEvent(str, Enum):
    IDENTITY_MATCHED = "IDENTITY_MATCHED"
    IDENTITY_MISMATCH = "IDENTITY_MISMATCH"
    LAND_RECORD_ACCEPTED = "LAND_RECORD_ACCEPTED"
    LAND_RECORD_REJECTED = "LAND_RECORD_REJECTED"
    LOCATION_VERIFIED = "LOCATION_VERIFIED"
    SITE_ANALYZED = "SITE_ANALYZED"
    RECORD_SAVED = "RECORD_SAVED"


TRANSITIONS: dict[tuple[PipelineStage, StageEvent], PipelineStage] = {
    (PipelineStage.IDENTITY, StageEvent.IDENTITY_MATCHED): PipelineStage.LAND_RECORD,
    (PipelineStage.IDENTITY, StageEvent.IDENTITY_MISMATCH): PipelineStage.HALTED,
    (PipelineStage.LAND_RECORD, StageEvent.LAND_RECORD_ACCEPTED): PipelineStage.LOCATION,
    (PipelineStage.LAND_RECORD, StageEvent.LAND_RECORD_REJECTED): PipelineStage.HALTED,
    (PipelineStage.LOCATION, StageEvent.LOCATION_VERIFIED): PipelineStage.SITE_VIDEO,
    (PipelineStage.SITE_VIDEO, StageEvent.SITE_ANALYZED): PipelineStage.READY,
    (PipelineStage.READY, StageEvent.RECORD_SAVED): PipelineStage.COMPLETED,
}

# Linear order used to decide whether a stage has been reached
_ORDER = [
    PipelineStage.IDENTITY,
    PipelineStage.LAND_RECORD,
    PipelineStage.LOCATION,
    PipelineStage.SITE_VIDEO,
    PipelineStage.READY,
]

_STAGE_LABELS = {
    PipelineStage.IDENTITY: "Step 1 (identity & deed)",
    PipelineStage.LAND_RECORD: "Step 2 (land record)",
    PipelineStage.LOCATION: "location confirmation",
    PipelineStage.SITE_VIDEO: "Step 3 (site video)",
    PipelineStage.READY: "saving",
}


class VerificationSession:
    """Server-side state of one verification attempt."""

    def __init__(self, subject_id: str = ""):
        self.session_id = uuid.uuid4().hex[:12]
        self.subject_id = subject_id
        self.created_at = datetime.now().isoformat()
        self.updated_at = self.created_at
        self.stage = PipelineStage.IDENTITY.value
        self.halted_at: str | None = None
        self.halt_reason: str | None = None
        self.stage1: dict | None = None
        self.stage2: dict | None = None
        self.stage3: dict | None = None
        self.geofence: dict | None = None
        self.verification_id: str | None = None
        self.token: str | None = None
        self.progress: list[dict] = []

    # ── state machine ──

    @property
    def current(self) -> PipelineStage:
        return PipelineStage(self.stage)

    def _reached(self, stage: PipelineStage) -> bool:
        current = self.current
        if current == PipelineStage.COMPLETED:
            return False
        if current == PipelineStage.HALTED:
            halted_at = PipelineStage(self.halted_at or PipelineStage.IDENTITY.value)
            return _ORDER.index(halted_at) >= _ORDER.index(stage)
        return _ORDER.index(current) >= _ORDER.index(stage)

    def require(self, stage: PipelineStage) -> None:
        """Raise ``StageOrderError`` unless ``stage`` may run now."""
        if self.current == PipelineStage.COMPLETED:
            raise StageOrderError(
                "This verification is already completed.",
                details=f"Record {self.verification_id}",
            )
        if not self._reached(stage):
            idx = _ORDER.index(stage)
            missing = _STAGE_LABELS[_ORDER[idx - 1]] if idx > 0 else _STAGE_LABELS[stage]
            raise StageOrderError(
                f"Please complete {missing} first.",
                details=f"Session is at {self.stage}",
            )

    def rewind(self, stage: PipelineStage) -> None:
        """Return to ``stage`` and drop every claim produced after it."""
        idx = _ORDER.index(stage)
        if idx <= _ORDER.index(PipelineStage.IDENTITY):
            self.stage1 = None
        if idx <= _ORDER.index(PipelineStage.LAND_RECORD):
            self.stage2 = None
            self.geofence = None
        if idx <= _ORDER.index(PipelineStage.SITE_VIDEO):
            self.stage3 = None
        self.stage = stage.value
        self.halted_at = None
        self.halt_reason = None

    def apply(self, event: StageEvent, reason: str | None = None) -> PipelineStage:
        key = (self.current, event)
        if key not in TRANSITIONS:
            raise StageOrderError(f"Invalid transition: {event.value} while at {self.stage}")
        nxt = TRANSITIONS[key]
        if nxt == PipelineStage.HALTED:
            self.halted_at = self.stage
            self.halt_reason = reason
        self.stage = nxt.value
        self._log("state", f"{key[0].value} --{event.value}--> {nxt.value}")
        return nxt

    # ── typed accessors ──

    @property
    def stage1_claim(self) -> Stage1Claim | None:
        return Stage1Claim.model_validate(self.stage1) if self.stage1 else None

    @property
    def stage2_claim(self) -> Stage2Claim | None:
        return Stage2Claim.model_validate(self.stage2) if self.stage2 else None

    @property
    def stage3_claim(self) -> Stage3Claim | None:
        return Stage3Claim.model_validate(self.stage3) if self.stage3 else None

    def geofence_state(self) -> GeofenceSession:
        if self.geofence:
            return GeofenceSession.from_dict(self.geofence)
        claim = self.stage2_claim
        return GeofenceSession(geo_target=claim.geo_target) if claim else GeofenceSession()

    # ── persistence ──

    def _log(self, stage: str, message: str, detail: dict | None = None):
        entry = {
            "timestamp": datetime.now().isoformat(),
            "stage": stage,
            "message": message,
        }
        if detail:
            entry["detail"] = detail
        self.progress.append(entry)

    async def progress_callback(self, stage: str, message: str, detail: dict) -> None:
        """Bridge inference progress events into the session log."""
        self._log(stage, message, detail)

    def save(self):
        """Persist session state to disk as JSON (atomic write)."""
        self.updated_at = datetime.now().isoformat()
        atomic_write_json(SESSIONS_DIR / f"{self.session_id}.json", self.to_dict(), prefix="sess_")

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "subject_id": self.subject_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "stage": self.stage,
            "halted_at": self.halted_at,
            "halt_reason": self.halt_reason,
            "stage1": self.stage1,
            "stage2": self.stage2,
            "stage3": self.stage3,
            "geofence": self.geofence,
            "verification_id": self.verification_id,
            "token": self.token,
            "progress": self.progress,
        }

    # Only these fields can be loaded from disk — prevents setattr injection
    _LOADABLE_FIELDS = frozenset({
        "session_id", "subject_id", "created_at", "updated_at", "stage",
        "halted_at", "halt_reason", "stage1", "stage2", "stage3", "geofence",
        "verification_id", "token", "progress",
    })

    @classmethod
    def load(cls, session_id: str) -> "VerificationSession":
        if not is_safe_key(session_id):
            raise FileNotFoundError(f"Session {session_id} not found")
        session_file = SESSIONS_DIR / f"{session_id}.json"
        if not session_file.exists():
            raise FileNotFoundError(f"Session {session_id} not found")
        data = json.loads(session_file.read_text(encoding="utf-8"))
        session = cls()
        for key, value in data.items():
            if key in cls._LOADABLE_FIELDS:
                setattr(session, key, value)
            else:
                logger.warning(f"Session {session_id}: ignoring unknown field '{key}'")
        return session

    def summary(self) -> dict:
        """Client-facing view of the session (no progress log)."""
        geo = self.geofence_state()
        return {
            "session_id": self.session_id,
            "stage": self.stage,
            "halted_at": self.halted_at,
            "halt_reason": self.halt_reason,
            "stage1": self.stage1,
            "stage2": self.stage2,
            "stage3": self.stage3,
            "geofence": {
                "state": geo.state.value,
                "display_address": geo.display_address(),
                "verified": geo.is_verified,
                "last_result": geo.last_result.to_dict() if geo.last_result else None,
            },
            "verification_id": self.verification_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def make_token(survey_number: str) -> str:
    """Opaque wizard token: base64 of '<epoch-ms>-<survey number>'."""
    raw = f"{int(time.time() * 1000)}-{survey_number}"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


# ═══════════════════════════════════════════════════
# STAGE RUNNERS
# ═══════════════════════════════════════════════════

async def run_identity_stage(
    session: VerificationSession,
    pan: MediaPayload,
    deed: MediaPayload,
    on_progress: LLMProgressCallback | None = None,
) -> Stage1Claim:
    """Stage 1.  Always allowed (except on a completed session)."""
    session.require(PipelineStage.IDENTITY)
    session._log("stage1", "Verifying identity document against sale deed...")
    claim = await verify_identity_and_deed(pan, deed, on_progress=on_progress or session.progress_callback)

    session.rewind(PipelineStage.IDENTITY)
    session.stage1 = claim.model_dump()
    try:
        enforce_identity_gate(claim)
    except IdentityMismatch as e:
        session.apply(StageEvent.IDENTITY_MISMATCH, reason=e.message)
        session.save()
        raise
    session.token = make_token(claim.survey_number)
    session.apply(StageEvent.IDENTITY_MATCHED)
    session.save()
    return claim


async def run_land_record_stage(
    session: VerificationSession,
    record: MediaPayload,
    on_progress: LLMProgressCallback | None = None,
) -> Stage2Claim:
    session.require(PipelineStage.LAND_RECORD)
    stage1 = session.stage1_claim
    ctx = LandRecordContext.from_stage1(stage1)
    session._log("stage2", "Cross-checking land record...")
    claim = await verify_land_record(record, ctx, on_progress=on_progress or session.progress_callback)

    session.rewind(PipelineStage.LAND_RECORD)
    session.stage2 = claim.model_dump()
    try:
        enforce_land_record_gate(claim)
    except LandRecordRejected as e:
        session.apply(StageEvent.LAND_RECORD_REJECTED, reason=e.message)
        session.save()
        raise
    session.geofence = GeofenceSession(geo_target=claim.geo_target).to_dict()
    session.apply(StageEvent.LAND_RECORD_ACCEPTED)
    session.save()
    return claim


async def resolve_location(
    session: VerificationSession,
    geocoder: NominatimGeocoder,
    override_village: str | None = None,
) -> tuple[GeofenceSession, ResolvedTarget]:
    """Resolve the geofence target.  Re-resolving discards any site analysis."""
    session.require(PipelineStage.LOCATION)
    geo = session.geofence_state()
    if session.current != PipelineStage.LOCATION:
        session.rewind(PipelineStage.LOCATION)
    try:
        target = await geo.resolve(geocoder, override_village=override_village)
    finally:
        session.geofence = geo.to_dict()
        session.save()
    return geo, target


def check_location(session: VerificationSession, latitude: float, longitude: float) -> tuple[GeofenceSession, GeofenceResult]:
    """Check the seller's position.  A verified check unlocks Stage 3."""
    session.require(PipelineStage.LOCATION)
    geo = session.geofence_state()
    result = geo.check(latitude, longitude)
    session.geofence = geo.to_dict()
    if result.verified:
        if session.current == PipelineStage.LOCATION:
            session.apply(StageEvent.LOCATION_VERIFIED)
    elif session.current != PipelineStage.LOCATION:
        # Out of range after a previous success: Stage 3 is locked again
        session.rewind(PipelineStage.LOCATION)
    session._log("location", f"Position check: {result.distance_km:.2f} km, verified={result.verified}")
    session.save()
    return geo, result


async def run_site_stage(
    session: VerificationSession,
    data: bytes,
    mime_type: str,
    filename: str = "",
    on_progress: LLMProgressCallback | None = None,
) -> Stage3Claim:
    """Stage 3.  Re-running replaces only the Stage 3 claim."""
    session.require(PipelineStage.SITE_VIDEO)
    if not session.geofence_state().is_verified:
        raise GeofenceError("Please confirm your location at the site before uploading the video.")
    ctx = SiteContext.from_claims(session.stage1_claim, session.stage2_claim)
    session._log("stage3", "Analyzing site video...")
    claim = await analyze_site_video(
        data, mime_type, ctx,
        on_progress=on_progress or session.progress_callback,
        filename=filename,
    )
    session.stage3 = claim.model_dump()
    if session.current == PipelineStage.SITE_VIDEO:
        session.apply(StageEvent.SITE_ANALYZED)
    session.save()
    return claim


def save_verification(session: VerificationSession, store: VerificationStore) -> str:
    """Persist the verification once.  Saving a completed session returns its id."""
    if session.current == PipelineStage.COMPLETED and session.verification_id:
        return session.verification_id
    session.require(PipelineStage.READY)
    geo = session.geofence_state()
    try:
        verification_id = assemble_and_save(
            store, session.subject_id,
            session.stage1_claim, session.stage2_claim, session.stage3_claim,
            display_address=geo.display_address(),
        )
    except VerificationError as e:
        session._log("save", f"Save failed: {e.message}")
        session.save()
        raise
    session.verification_id = verification_id
    session.apply(StageEvent.RECORD_SAVED)
    session.save()
    return verification_id


# ═══════════════════════════════════════════════════
# HOUSEKEEPING
# ═══════════════════════════════════════════════════

def cleanup_stale_files(ttl_seconds: int = SESSION_TTL_SECONDS) -> int:
    """Delete sessions older than the TTL and any orphaned temp videos.

    Temp videos only outlive a request when the process died mid-upload,
    so any video file present at startup is an orphan.
    """
    now = time.time()
    cleaned = 0
    for f in SESSIONS_DIR.glob("*.json"):
        try:
            if now - f.stat().st_mtime > ttl_seconds:
                f.unlink(missing_ok=True)
                cleaned += 1
        except OSError:
            pass
    for f in SESSIONS_DIR.glob("*.tmp"):
        f.unlink(missing_ok=True)
        cleaned += 1
    for f in VIDEO_TEMP_DIR.glob("land-video-*"):
        try:
            f.unlink(missing_ok=True)
            cleaned += 1
        except OSError:
            pass
    if cleaned:
        logger.info(f"Startup cleanup: removed {cleaned} stale file(s)")
    return cleaned
