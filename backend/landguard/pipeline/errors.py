"""Exception taxonomy for the verification pipeline.

Every stage boundary catches these and turns them into a structured
``{"success": False, ...}`` body via ``to_response()``.  Gate rejections
are definitive outcomes rather than failures and carry the specific
reason the user should see.
"""

from __future__ import annotations


class VerificationError(Exception):
    """Base class for all pipeline errors."""

    status_code = 500
    error = "Server Error"

    def __init__(self, message: str, *, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_response(self) -> dict:
        body = {"success": False, "error": self.error, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# ── Input validation (no external call made) ──

class InputValidationError(VerificationError):
    status_code = 400
    error = "Invalid input"


# ── Extraction / inference ──

class ExtractionError(VerificationError):
    """The inference call or its response could not be turned into a claim."""
    error = "Extraction failed"


class MalformedResponse(ExtractionError):
    """Model output held no JSON object matching the expected schema."""
    error = "Malformed model response"

    def __init__(self, message: str, *, raw_text: str = "", details: str | None = None):
        super().__init__(message, details=details)
        self.raw_text = raw_text


class InferenceUnavailable(ExtractionError):
    """Inference service not configured or unreachable after retries."""
    error = "Inference service unavailable"


# ── Semantic gates ──

class GateRejection(VerificationError):
    status_code = 400


class IdentityMismatch(GateRejection):
    error = "Identity mismatch"

    def __init__(self, message: str = "The name on the Deed does not match your PAN Card.",
                 *, details: str | None = None):
        super().__init__(message, details=details)


class LandRecordRejected(GateRejection):
    error = "Verification failed"

    def __init__(self, message: str, *, error: str | None = None,
                 risk_level: str = "HIGH", details: str | None = None):
        super().__init__(message, details=details)
        if error:
            self.error = error
        self.risk_level = risk_level

    def to_response(self) -> dict:
        body = super().to_response()
        body["phase2_status"] = "REJECTED"
        body["risk_level"] = self.risk_level
        return body


# ── Stage 3 processing ──

class VideoProcessingTimeout(VerificationError):
    error = "Video processing timeout"


class VideoProcessingFailed(VerificationError):
    error = "Video processing failed"


# ── Geofence ──

class GeofenceError(VerificationError):
    status_code = 400
    error = "Geofence error"


class GeofenceResolutionFailed(GeofenceError):
    """Place lookup failed; recoverable through a manual village override."""
    status_code = 422
    error = "Location not found"

    def to_response(self) -> dict:
        body = super().to_response()
        body["state"] = "RESOLUTION_FAILED"
        body["manual_override_allowed"] = True
        return body


# ── Pipeline ordering / assembly ──

class StageOrderError(VerificationError):
    status_code = 409
    error = "Stage out of order"


class IncompleteVerification(VerificationError):
    status_code = 400
    error = "Incomplete verification"


class PersistenceError(VerificationError):
    error = "Failed to save verification"
