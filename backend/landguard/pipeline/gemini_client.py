"""Gemini client for multimodal inference.

Supports:
  - Prompt + inline media parts (PDF / image bytes) → raw response text
  - Bounded retry with exponential backoff on transient failures only
  - File API helpers for large media (upload → poll → delete)
  - Tolerant JSON extraction from free-form model output
"""

import json
import time
import random
import asyncio
import logging
from typing import Any, Callable, Awaitable

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from landguard.config import (
    GEMINI_API_KEY, GEMINI_ENABLED, GEMINI_MODEL, GEMINI_TEMPERATURE,
    GEMINI_MAX_RETRIES, GEMINI_BACKOFF_BASE, GEMINI_BACKOFF_CAP,
)
from landguard.pipeline.errors import ExtractionError, InferenceUnavailable

logger = logging.getLogger(__name__)

# Type for progress callback: async fn(stage, message, details_dict)
LLMProgressCallback = Callable[[str, str, dict], Awaitable[None]]

# No-op callback default
async def _noop_cb(stage: str, message: str, details: dict) -> None:
    pass

# Transient failures worth another attempt. DeadlineExceeded is a 504 and
# already a ServerError subclass; asyncio.TimeoutError covers our own
# per-request timeout.
_TRANSIENT_ERRORS = (google_exceptions.ServerError, asyncio.TimeoutError, TimeoutError)

_configured = False


def _ensure_configured() -> None:
    global _configured
    if not GEMINI_ENABLED:
        raise InferenceUnavailable(
            "Gemini is not configured",
            details="Set GEMINI_API_KEY in backend/.env",
        )
    if not _configured:
        genai.configure(api_key=GEMINI_API_KEY)
        _configured = True


def _generate(parts: list[Any]) -> str:
    """Blocking generate_content call. Runs in a worker thread."""
    model = genai.GenerativeModel(GEMINI_MODEL)
    response = model.generate_content(
        parts,
        generation_config={"temperature": GEMINI_TEMPERATURE},
    )
    # .text raises ValueError when the candidate was blocked or empty
    try:
        return response.text
    except ValueError:
        return ""


def _backoff_seconds(attempt: int) -> float:
    """Exponential backoff with jitter for retry ``attempt`` (1-based)."""
    return min(GEMINI_BACKOFF_BASE * (2 ** (attempt - 1)) + random.uniform(0, 1), GEMINI_BACKOFF_CAP)


async def call_gemini(
    prompt: str,
    media: list[dict] | None = None,
    task_label: str = "",
    on_progress: LLMProgressCallback | None = None,
    timeout: float | None = None,
) -> str:
    """Send a prompt (plus optional media parts) to Gemini and return raw text.

    Args:
        prompt: Instruction text
        media: Inline parts shaped ``{"mime_type": ..., "data": bytes}`` or
               File API handles returned by ``upload_video``
        task_label: Human-readable label for progress/log lines
        on_progress: Async callback for progress updates
        timeout: Per-attempt timeout in seconds (None/0 = wait indefinitely)

    Raises:
        InferenceUnavailable: not configured, or transient failures exhausted
        ExtractionError: non-retryable API error (bad request, auth, quota)
    """
    cb = on_progress or _noop_cb
    label = task_label or "Gemini Call"
    _ensure_configured()

    parts: list[Any] = list(media or []) + [prompt]
    attempts = max(GEMINI_MAX_RETRIES, 0) + 1

    await cb("llm_start", label, {
        "type": "llm_start",
        "task": label,
        "model": GEMINI_MODEL,
        "prompt_chars": len(prompt),
        "media_parts": len(media or []),
    })

    last_error: Exception | None = None
    for attempt in range(attempts):
        if attempt > 0:
            backoff = _backoff_seconds(attempt)
            await cb("llm_retry", f"{label} — Retry {attempt}/{attempts - 1}", {
                "type": "llm_retry",
                "task": label,
                "attempt": attempt + 1,
                "reason": str(last_error),
                "backoff_seconds": round(backoff, 2),
            })
            await asyncio.sleep(backoff)

        t0 = time.time()
        try:
            call = asyncio.to_thread(_generate, parts)
            if timeout:
                text = await asyncio.wait_for(call, timeout=timeout)
            else:
                text = await call
        except _TRANSIENT_ERRORS as e:
            last_error = e
            logger.warning(f"[{label}] Transient error on attempt {attempt + 1}/{attempts}: {e!r}")
            continue
        except google_exceptions.GoogleAPICallError as e:
            logger.error(f"[{label}] Non-retryable API error: {e}")
            await cb("llm_failed", f"{label} — {e}", {"type": "llm_failed", "task": label, "error": str(e)})
            raise ExtractionError(f"{label} failed", details=str(e)) from e

        elapsed = time.time() - t0
        logger.info(f"[{label}] Response: {len(text)} chars in {elapsed:.1f}s")
        await cb("llm_done", f"✓ {label} — Complete", {
            "type": "llm_done",
            "task": label,
            "total_seconds": round(elapsed, 2),
            "response_length": len(text),
        })
        return text

    await cb("llm_failed", f"{label} — Failed after {attempts} attempts", {
        "type": "llm_failed",
        "task": label,
        "error": str(last_error),
    })
    raise InferenceUnavailable(
        f"{label} failed after {attempts} attempts",
        details=str(last_error),
    )


def _parse_json_response(text: str) -> dict:
    """Extract the first balanced JSON object from model output.

    The model may wrap the object in prose or a ```json fence; braces
    inside string literals are ignored while scanning.

    Raises:
        json.JSONDecodeError: no parseable object found
    """
    if not text or not text.strip():
        raise json.JSONDecodeError("Empty response", "", 0)

    text = text.strip()
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    while start >= 0:
        depth = 0
        in_string = False
        escape = False
        for i in range(start, len(text)):
            ch = text[i]
            if escape:
                escape = False
                continue
            if ch == "\\":
                escape = True
                continue
            if ch == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    try:
                        parsed = json.loads(text[start:i + 1])
                    except json.JSONDecodeError:
                        break
                    if isinstance(parsed, dict):
                        return parsed
                    break
        start = text.find("{", start + 1)

    raise json.JSONDecodeError("No valid JSON object found in response", text[:200], 0)


# ═══════════════════════════════════════════════════════════════════
# FILE API — large media (site video) is uploaded, not inlined
# ═══════════════════════════════════════════════════════════════════

def upload_media(path: str, mime_type: str, display_name: str = ""):
    """Upload a local file to the Gemini File API. Blocking."""
    _ensure_configured()
    return genai.upload_file(path=path, mime_type=mime_type, display_name=display_name or None)


def get_media_state(name: str) -> tuple[str, Any]:
    """Return (state_name, file_handle) for an uploaded file. Blocking."""
    handle = genai.get_file(name)
    state = getattr(getattr(handle, "state", None), "name", "") or "STATE_UNSPECIFIED"
    return state, handle


def delete_media(name: str) -> None:
    """Delete an uploaded file. Blocking."""
    genai.delete_file(name)


async def check_gemini_status() -> dict:
    """Report inference configuration.

    Results are cached for 120 seconds so repeated health probes do
    not hit the API.
    """
    global _gemini_status_cache, _gemini_status_ts
    now = time.time()
    if _gemini_status_cache is not None and (now - _gemini_status_ts) < 120:
        return _gemini_status_cache

    if not GEMINI_ENABLED:
        return {"status": "unconfigured", "configured_model": GEMINI_MODEL, "api_key_set": False}

    try:
        _ensure_configured()
        model = await asyncio.to_thread(genai.get_model, f"models/{GEMINI_MODEL}")
        result = {
            "status": "online",
            "configured_model": GEMINI_MODEL,
            "api_key_set": True,
            "model_available": bool(model),
            "max_retries": GEMINI_MAX_RETRIES,
        }
        _gemini_status_cache = result
        _gemini_status_ts = now
        return result
    except google_exceptions.GoogleAPICallError as e:
        return {"status": "offline", "configured_model": GEMINI_MODEL, "api_key_set": True, "error": str(e)}


# Cache for check_gemini_status
_gemini_status_cache: dict | None = None
_gemini_status_ts: float = 0.0
