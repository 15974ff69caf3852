"""Seller verification endpoints: three stages, geofence, save."""

import json
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from landguard.config import DOCUMENT_MAX_BYTES, DOCUMENT_MAX_MB, VIDEO_MAX_BYTES, VIDEO_MAX_MB, VERIFIER_ROLES
from landguard.pipeline.assembler import assemble_and_save
from landguard.pipeline.errors import InputValidationError, VerificationError
from landguard.pipeline.extractors.base import MediaPayload
from landguard.pipeline.extractors.land_record import (
    LandRecordContext, enforce_land_record_gate, verify_land_record,
)
from landguard.pipeline.extractors.site_video import SiteContext, analyze_site_video, validate_video
from landguard.pipeline.gemini_client import check_gemini_status
from landguard.pipeline.geofence import GeofenceSession, GeofenceState, NominatimGeocoder, ResolvedTarget
from landguard.pipeline.orchestrator import (
    PipelineStage, VerificationSession, check_location, resolve_location, run_identity_stage,
    run_land_record_stage, run_site_stage, save_verification,
)
from landguard.pipeline.schemas import GeoTarget, Stage1Claim, Stage2Claim
from landguard.pipeline.store import JsonFileStore, VerificationStore, is_safe_key

router = APIRouter()
logger = logging.getLogger(__name__)

_UPLOAD_CHUNK = 1024 * 1024  # 1 MB


# ═══════════════════════════════════════════════════
# Dependencies
# ═══════════════════════════════════════════════════

_store: JsonFileStore | None = None


def get_store() -> VerificationStore:
    global _store
    if _store is None:
        _store = JsonFileStore()
    return _store


def get_geocoder() -> NominatimGeocoder:
    return NominatimGeocoder()


@dataclass
class Principal:
    subject_id: str
    role: str
    display_name: str = ""


def get_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
    store: VerificationStore = Depends(get_store),
) -> Principal:
    """Identity asserted by the upstream gateway.

    Only verifier roles (sellers by default) may run the pipeline.  The
    subject is created on first sight.
    """
    subject_id = (x_user_id or "").strip()
    if not subject_id or not is_safe_key(subject_id):
        raise HTTPException(status_code=401, detail="Unauthorized. Please sign in.")
    role = (x_user_role or "").strip().upper()
    if role not in VERIFIER_ROLES:
        raise HTTPException(status_code=403, detail="Only sellers can verify land listings.")
    name = (x_user_name or "").strip()
    try:
        store.upsert_subject(subject_id, display_name=name, role=role)
    except OSError as e:
        logger.warning(f"Subject upsert failed for {subject_id}: {e}")
    return Principal(subject_id=subject_id, role=role, display_name=name)


# ═══════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════

_LOAD_MAX_RETRIES = 3
_LOAD_BACKOFF_BASE = 0.2


async def _load_session_with_retry(session_id: str, principal: Principal) -> VerificationSession:
    """Load a session owned by ``principal``, retrying on transient file errors.

    Raises:
        HTTPException 404  – missing, or owned by someone else
        HTTPException 503  – transient file error after all retries
    """
    last_exc: Exception | None = None
    for attempt in range(_LOAD_MAX_RETRIES):
        try:
            session = VerificationSession.load(session_id)
            break
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail="Session not found")
        except (PermissionError, OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            last_exc = exc
            wait = _LOAD_BACKOFF_BASE * (2 ** attempt)
            logger.warning(
                "Session %s load attempt %d/%d failed (%s: %s) — retrying in %.1fs",
                session_id, attempt + 1, _LOAD_MAX_RETRIES, type(exc).__name__, exc, wait,
            )
            await asyncio.sleep(wait)
    else:
        logger.error("Session %s: all %d load attempts failed — last error: %s",
                     session_id, _LOAD_MAX_RETRIES, last_exc)
        raise HTTPException(status_code=503, detail="Temporary file access error — please retry in a few seconds.")

    if session.subject_id != principal.subject_id:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _sanitize_filename(raw: str) -> str:
    """Strip path components and keep only the basename."""
    name = PurePosixPath(raw or "").name
    return Path(name).name or "upload"


async def _read_upload(file: UploadFile, max_bytes: int, max_mb: int, label: str) -> bytes:
    """Streaming read with a hard size cap (never buffers past the limit)."""
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await file.read(_UPLOAD_CHUNK)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise InputValidationError(
                f"{label} file size must be under {max_mb}MB",
                details=f"{_sanitize_filename(file.filename)} exceeds the limit",
            )
        chunks.append(chunk)
    content = b"".join(chunks)
    if not content:
        raise InputValidationError(f"{label} file is empty", details=_sanitize_filename(file.filename))
    return content


async def _read_document(file: UploadFile, label: str) -> MediaPayload:
    data = await _read_upload(file, DOCUMENT_MAX_BYTES, DOCUMENT_MAX_MB, label)
    return MediaPayload(label=label, data=data)


def _error_response(exc: VerificationError) -> JSONResponse:
    return JSONResponse(content=exc.to_response(), status_code=exc.status_code)


def _server_error(exc: Exception, where: str) -> JSONResponse:
    logger.exception(f"{where} API error")
    return JSONResponse(
        content={"success": False, "error": "Server Error", "details": str(exc) or type(exc).__name__},
        status_code=500,
    )


def _stage1_payload(claim: Stage1Claim, token: str | None) -> dict:
    data = claim.model_dump()
    # Purchaser (PAN holder) carries forward, never the seller
    data["verified_name"] = claim.verified_name
    data["extracted_survey_no"] = claim.survey_number
    data["token"] = token
    return data


def _stage2_payload(claim: Stage2Claim) -> dict:
    data = claim.model_dump()
    data["matches"] = {"name_matched": claim.name_matched, "survey_matched": claim.survey_matched}
    data["land_info"] = {
        "classification": claim.land_classification,
        "official_area": claim.official_area_text,
        "is_safe": not claim.is_government_land,
    }
    data["map_data"] = {"lat": None, "lng": None, "display_address": claim.geo_target.display_address()}
    data["warning_message"] = claim.warning_message or None
    return data


def _target_payload(geo: GeofenceSession, target: ResolvedTarget) -> dict:
    return {
        "success": True,
        "state": geo.state.value,
        "target_center": {"latitude": target.latitude, "longitude": target.longitude},
        "has_boundary": target.has_boundary,
        "target_boundary": target.boundary,
        "matched_place": target.display_name,
        "display_address": geo.display_address(),
    }


# ═══════════════════════════════════════════════════
# Stage 1 — identity & deed
# ═══════════════════════════════════════════════════

@router.post("/step1")
async def verify_step1(
    pan: UploadFile | None = File(default=None),
    deed: UploadFile | None = File(default=None),
    session_id: str | None = Form(default=None),
    principal: Principal = Depends(get_principal),
):
    """Match the PAN card holder with the deed purchaser.  Opens a session."""
    if pan is None or deed is None:
        return _error_response(InputValidationError("Both PAN and Deed are required"))
    try:
        session = (
            await _load_session_with_retry(session_id, principal) if session_id
            else VerificationSession(subject_id=principal.subject_id)
        )
        pan_payload = await _read_document(pan, "PAN")
        deed_payload = await _read_document(deed, "Deed")
        claim = await run_identity_stage(session, pan_payload, deed_payload)
    except VerificationError as e:
        return _error_response(e)
    except HTTPException:
        raise
    except Exception as e:
        return _server_error(e, "Step 1")

    return {
        "success": True,
        "phase1_status": "VERIFIED",
        "session_id": session.session_id,
        "data": _stage1_payload(claim, session.token),
    }


# ═══════════════════════════════════════════════════
# Stage 2 — land record
# ═══════════════════════════════════════════════════

@router.post("/step2")
async def verify_step2(
    patta: UploadFile | None = File(default=None),
    session_id: str | None = Form(default=None),
    verified_name: str | None = Form(default=None),
    survey_no: str | None = Form(default=None),
    land_status: str | None = Form(default=None),
    total_area: str | None = Form(default=None),
    principal: Principal = Depends(get_principal),
):
    """Cross-check the Patta / Chitta against the Stage 1 facts.

    With ``session_id`` the facts come from the session; otherwise the
    caller forwards them from the Stage 1 response.
    """
    if patta is None:
        return _error_response(InputValidationError("Patta Chitta document is required"))
    try:
        if session_id:
            session = await _load_session_with_retry(session_id, principal)
            record = await _read_document(patta, "Patta")
            claim = await run_land_record_stage(session, record)
        else:
            ctx = LandRecordContext(
                verified_name=verified_name or "",
                survey_number=survey_no or "",
                land_status=land_status or "",
                total_area=total_area or "",
            )
            ctx.validate()
            record = await _read_document(patta, "Patta")
            claim = await verify_land_record(record, ctx)
            enforce_land_record_gate(claim)
    except VerificationError as e:
        return _error_response(e)
    except HTTPException:
        raise
    except Exception as e:
        return _server_error(e, "Step 2")

    return {
        "success": True,
        "final_status": claim.status,
        "session_id": session_id,
        "data": _stage2_payload(claim),
    }


# ═══════════════════════════════════════════════════
# Geofence
# ═══════════════════════════════════════════════════

class GeofenceResolveRequest(BaseModel):
    session_id: str | None = None
    geo_target: GeoTarget | None = None
    override_village: str | None = None


class ResolvedTargetIn(BaseModel):
    latitude: float
    longitude: float
    boundary: dict | None = None


class GeofenceCheckRequest(BaseModel):
    latitude: float
    longitude: float
    session_id: str | None = None
    target: ResolvedTargetIn | None = None


@router.post("/geofence/resolve")
async def geofence_resolve(
    request: GeofenceResolveRequest,
    principal: Principal = Depends(get_principal),
    geocoder: NominatimGeocoder = Depends(get_geocoder),
):
    """Resolve the revenue village to a center point and boundary."""
    try:
        if request.session_id:
            session = await _load_session_with_retry(request.session_id, principal)
            geo, target = await resolve_location(session, geocoder, override_village=request.override_village)
        else:
            if request.geo_target is None:
                raise InputValidationError("geo_target or session_id is required")
            geo = GeofenceSession(geo_target=request.geo_target)
            target = await geo.resolve(geocoder, override_village=request.override_village)
    except VerificationError as e:
        return _error_response(e)
    except HTTPException:
        raise
    except Exception as e:
        return _server_error(e, "Geofence resolve")
    return _target_payload(geo, target)


@router.post("/geofence/check")
async def geofence_check(
    request: GeofenceCheckRequest,
    principal: Principal = Depends(get_principal),
):
    """Check the seller's position.  Out of range is a normal, retryable outcome."""
    try:
        if request.session_id:
            session = await _load_session_with_retry(request.session_id, principal)
            geo, result = check_location(session, request.latitude, request.longitude)
        else:
            if request.target is None:
                raise InputValidationError("target or session_id is required")
            geo = GeofenceSession(
                state=GeofenceState.READY,
                target=ResolvedTarget(
                    latitude=request.target.latitude,
                    longitude=request.target.longitude,
                    boundary=request.target.boundary,
                ),
            )
            result = geo.check(request.latitude, request.longitude)
    except VerificationError as e:
        return _error_response(e)
    except HTTPException:
        raise
    except Exception as e:
        return _server_error(e, "Geofence check")

    body = {
        "success": True,
        "state": geo.state.value,
        "verified": result.verified,
        "distance_km": result.distance_km,
        "inside_boundary": result.inside_boundary,
        "radius_km": result.radius_km,
    }
    if not result.verified:
        body["message"] = f"Too far from site. You are {result.distance_km:.1f}km away."
    return body


# ═══════════════════════════════════════════════════
# Stage 3 — site video
# ═══════════════════════════════════════════════════

@router.post("/step3")
async def verify_step3(
    video: UploadFile | None = File(default=None),
    session_id: str | None = Form(default=None),
    survey_no: str | None = Form(default=None),
    verified_name: str | None = Form(default=None),
    land_status: str | None = Form(default=None),
    total_area: str | None = Form(default=None),
    principal: Principal = Depends(get_principal),
):
    """Analyze the site walkthrough video (visual, audio, narrative)."""
    if video is None:
        return _error_response(InputValidationError("Video file is required"))
    mime_type = (video.content_type or "").lower()
    filename = _sanitize_filename(video.filename)
    try:
        # Type check before reading the body
        validate_video(1, mime_type)
        if session_id:
            session = await _load_session_with_retry(session_id, principal)
            session.require(PipelineStage.SITE_VIDEO)
            data = await _read_upload(video, VIDEO_MAX_BYTES, VIDEO_MAX_MB, "Video")
            claim = await run_site_stage(session, data, mime_type, filename=filename)
        else:
            data = await _read_upload(video, VIDEO_MAX_BYTES, VIDEO_MAX_MB, "Video")
            ctx = SiteContext(
                survey_number=survey_no or "",
                verified_name=verified_name or "",
                land_status=land_status or "",
                total_area=total_area or "",
            )
            claim = await analyze_site_video(data, mime_type, ctx, filename=filename)
    except VerificationError as e:
        return _error_response(e)
    except HTTPException:
        raise
    except Exception as e:
        return _server_error(e, "Step 3")

    return {"success": True, "session_id": session_id, "data": claim.model_dump()}


# ═══════════════════════════════════════════════════
# Save
# ═══════════════════════════════════════════════════

class SaveRequest(BaseModel):
    session_id: str | None = None
    step1_data: dict | None = None
    step2_data: dict | None = None
    step3_data: dict | None = None


@router.post("/save")
async def save(
    request: SaveRequest,
    principal: Principal = Depends(get_principal),
    store: VerificationStore = Depends(get_store),
):
    """Persist the verification record and mark the seller verified."""
    try:
        if request.session_id:
            session = await _load_session_with_retry(request.session_id, principal)
            verification_id = save_verification(session, store)
        else:
            display_address = ((request.step2_data or {}).get("map_data") or {}).get("display_address", "")
            verification_id = assemble_and_save(
                store, principal.subject_id,
                request.step1_data, request.step2_data, request.step3_data,
                display_address=display_address,
            )
    except VerificationError as e:
        return _error_response(e)
    except HTTPException:
        raise
    except Exception as e:
        return _server_error(e, "Save verification")

    return {
        "success": True,
        "verificationId": verification_id,
        "message": "Verification saved successfully.",
    }


# ═══════════════════════════════════════════════════
# Lookups
# ═══════════════════════════════════════════════════

@router.get("/sessions/{session_id}")
async def get_session(session_id: str, principal: Principal = Depends(get_principal)):
    session = await _load_session_with_retry(session_id, principal)
    return session.summary()


@router.get("/records/{verification_id}")
async def get_record(
    verification_id: str,
    principal: Principal = Depends(get_principal),
    store: VerificationStore = Depends(get_store),
):
    if not is_safe_key(verification_id):
        raise HTTPException(status_code=404, detail="Verification not found")
    record = store.get_record(verification_id)
    if record is None or record.subject_id != principal.subject_id:
        raise HTTPException(status_code=404, detail="Verification not found")
    return record.model_dump(mode="json")


@router.get("/health/llm")
async def llm_health():
    """Inference configuration status."""
    return await check_gemini_status()
