"""Application configuration."""

import os
from pathlib import Path
from dotenv import load_dotenv

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent

# Load .env from backend root (before any os.getenv calls)
load_dotenv(BASE_DIR / ".env")
TEMP_DIR = Path(os.getenv("LANDGUARD_TEMP_DIR", str(BASE_DIR / "temp")))
VIDEO_TEMP_DIR = TEMP_DIR / "videos"
SESSIONS_DIR = TEMP_DIR / "sessions"
DATA_DIR = Path(os.getenv("LANDGUARD_DATA_DIR", str(BASE_DIR / "data")))
RECORDS_DIR = DATA_DIR / "verifications"
SUBJECTS_DIR = DATA_DIR / "subjects"

# Create directories
for d in [TEMP_DIR, VIDEO_TEMP_DIR, SESSIONS_DIR, DATA_DIR, RECORDS_DIR, SUBJECTS_DIR]:
    d.mkdir(parents=True, exist_ok=True)

# Gemini multimodal inference
GEMINI_API_KEY = (os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_GEMINI_API_KEY") or "").strip()
GEMINI_ENABLED = bool(GEMINI_API_KEY)
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-3-flash-preview")
GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "0.1"))
# Retries apply to transient failures only (5xx, timeouts). 0 = single attempt.
GEMINI_MAX_RETRIES = int(os.getenv("GEMINI_MAX_RETRIES", "2"))
GEMINI_BACKOFF_BASE = float(os.getenv("GEMINI_BACKOFF_BASE", "1.0"))  # seconds, doubles per retry
GEMINI_BACKOFF_CAP = 30.0
# Per-request timeout in seconds for Stage 1/2 extraction calls. 0 = no timeout.
GEMINI_REQUEST_TIMEOUT = float(os.getenv("GEMINI_REQUEST_TIMEOUT", "0"))

# Uploads
DOCUMENT_MAX_MB = int(os.getenv("DOCUMENT_MAX_MB", "20"))
DOCUMENT_MAX_BYTES = DOCUMENT_MAX_MB * 1024 * 1024

# Stage 3: site walkthrough video
VIDEO_MAX_MB = int(os.getenv("VIDEO_MAX_MB", "100"))
VIDEO_MAX_BYTES = VIDEO_MAX_MB * 1024 * 1024
VIDEO_ALLOWED_MIME_TYPES = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/x-msvideo": ".avi",
}
VIDEO_POLL_INTERVAL = float(os.getenv("VIDEO_POLL_INTERVAL", "2"))  # Seconds between state polls
VIDEO_MAX_POLLS = int(os.getenv("VIDEO_MAX_POLLS", "30"))           # 30 x 2s = 60s ceiling

# Geofence
GEOFENCE_RADIUS_KM = float(os.getenv("GEOFENCE_RADIUS_KM", "2.0"))
NOMINATIM_URL = os.getenv("NOMINATIM_URL", "https://nominatim.openstreetmap.org/search")
NOMINATIM_USER_AGENT = os.getenv("NOMINATIM_USER_AGENT", "LandGuard-Verification-App")
NOMINATIM_TIMEOUT = float(os.getenv("NOMINATIM_TIMEOUT", "10"))
GEOCODE_MIN_INTERVAL = float(os.getenv("GEOCODE_MIN_INTERVAL", "1.0"))  # Nominatim policy: max 1 req/s
GEOCODE_STATE = os.getenv("GEOCODE_STATE", "Tamil Nadu")
GEOCODE_COUNTRY = os.getenv("GEOCODE_COUNTRY", "India")

# Identity matching thresholds (deterministic second opinion, 0.0-1.0)
NAME_MATCH_THRESHOLD = float(os.getenv("NAME_MATCH_THRESHOLD", "0.85"))
NAME_PARTIAL_THRESHOLD = float(os.getenv("NAME_PARTIAL_THRESHOLD", "0.55"))

# Sessions
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(24 * 60 * 60)))

# Roles allowed to run the verification pipeline
VERIFIER_ROLES = frozenset(
    r.strip().upper() for r in os.getenv("VERIFIER_ROLES", "SELLER").split(",") if r.strip()
)

CORS_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if o.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Debug trace mode — set LANDGUARD_TRACE=1 for detailed matching/geofence logs
TRACE_ENABLED = os.getenv("LANDGUARD_TRACE", "").strip().lower() in ("1", "true", "yes")
