"""Stage 2 — Patta / Chitta land record cross-validation.

The model reads the record; ownership and survey correspondence are then
re-derived here with the deterministic comparators rather than trusted
from the model's booleans.  Government / commons land is a hard reject.
"""

from __future__ import annotations

import re
import logging
from dataclasses import dataclass

from landguard.config import NAME_PARTIAL_THRESHOLD, TRACE_ENABLED
from landguard.pipeline.errors import InputValidationError, LandRecordRejected
from landguard.pipeline.extractors.base import ClaimExtractor, MediaPayload, StageInstruction
from landguard.pipeline.gemini_client import LLMProgressCallback
from landguard.pipeline.schemas import (
    GeoTarget, LandRecordExtraction, Stage1Claim, Stage2Claim,
)
from landguard.pipeline.utils import (
    LAND_CLASSIFICATIONS, SurveyNumber, best_name_match, classify_land, find_government_markers,
    has_tamil, normalize_tamil_numerals, split_survey_numbers,
)

logger = logging.getLogger(__name__)

GOVERNMENT_LAND_ERROR = "Government Land Detected"
GOVERNMENT_LAND_MESSAGE = "Alert: This land is classified as Government Property and cannot be sold."
INVALID_RECORD_MESSAGE = "The uploaded file is not a readable Patta / Chitta land record."

# Evidence the model writes when it found nothing ("No poramboke marking", "இல்லை")
_NEGATED_EVIDENCE_RE = re.compile(
    r"\b(?:no(?![.:]?\s*\d|\.)|not|none|nil|without|absent)\b|n/a|இல்லை", re.IGNORECASE,
)


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


@dataclass
class LandRecordContext:
    """Stage 1 facts the land record is checked against."""
    verified_name: str
    survey_number: str
    land_status: str = ""
    total_area: str = ""

    @classmethod
    def from_stage1(cls, claim: Stage1Claim) -> "LandRecordContext":
        return cls(
            verified_name=claim.verified_name,
            survey_number=claim.survey_number,
            land_status=claim.land_status,
            total_area=claim.total_area,
        )

    def validate(self) -> None:
        if not (self.verified_name or "").strip() or not (self.survey_number or "").strip():
            raise InputValidationError(
                "Step 1 verification data is missing. Please complete Step 1 first.",
            )


def build_land_record_prompt(ctx: LandRecordContext) -> str:
    optional = ""
    if ctx.land_status:
        optional += f'\n- Claimed land status: "{ctx.land_status}"'
    if ctx.total_area:
        optional += f'\n- Claimed total area: "{ctx.total_area}"'
    return f"""
You are a government land record auditor.  The attached file is a Tamil Nadu
"Patta Chitta" record, in Tamil, English or both.

The claimed purchaser below is the NEW owner who bought the land.  The record
should show this person as the current registered owner.  Do NOT compare
against the vendor / seller.

Claims from the verified sale deed:
- Claimed purchaser (new owner): "{ctx.verified_name}"
- Claimed survey number: "{ctx.survey_number}"{optional}

From the record:
1. List every owner (pattadar) name exactly as printed, and say whether one of
   them is the claimed purchaser (allow phonetic variants such as 'Ravi' /
   'Ravee' and missing initials).
2. List every survey / subdivision number, and say whether the claimed survey
   number is among them.
3. Copy the land type label as printed (Nanjai / நஞ்சை = wet, Punjai /
   புன்செய் = dry, Manaivari / Natham = house site) and classify it as
   Wetland, Dryland, Housing or Unknown.
4. Risk scan: does the record mark the land as Sarkar, Poramboke
   (புறம்போக்கு), Government (அரசு) or Waqf?  If it does, copy that text verbatim into
   government_land_evidence; otherwise leave government_land_evidence empty.
5. Copy the official area exactly as printed (e.g. "0.40.50 Hect").
6. Location: district (மாவட்டம்), taluk (வட்டம்) and revenue village
   (கிராமம்).  If no village is printed, repeat the taluk name.
7. Set document_valid to false only if this is not a land record at all or is
   unreadable, and explain why in remarks.
"""


def _comparable(values: list[str]) -> list[str]:
    return [v for v in values if v and v.strip() and not has_tamil(v)]


def _derive_name_match(ctx: LandRecordContext, extraction: LandRecordExtraction) -> bool:
    owners = _comparable(extraction.owner_names)
    if not owners or has_tamil(ctx.verified_name):
        _trace(f"STAGE2 name: no comparable owners, using model verdict {extraction.name_matched}")
        return extraction.name_matched
    similarity, best = best_name_match(ctx.verified_name, owners)
    _trace(f"STAGE2 name: {ctx.verified_name!r} best {best!r} sim={similarity:.3f}")
    return similarity >= NAME_PARTIAL_THRESHOLD


def _derive_survey_match(ctx: LandRecordContext, extraction: LandRecordExtraction) -> bool:
    record_surveys: list[str] = []
    for raw in extraction.survey_numbers:
        record_surveys.extend(split_survey_numbers(normalize_tamil_numerals(raw)) or [raw])
    record_surveys = [s for s in record_surveys if any(ch.isdigit() for ch in s)]
    if not record_surveys:
        _trace(f"STAGE2 survey: no comparable numbers, using model verdict {extraction.survey_matched}")
        return extraction.survey_matched
    claimed = SurveyNumber(ctx.survey_number)
    matched = any(claimed.matches(s) for s in record_surveys)
    _trace(f"STAGE2 survey: {claimed!r} vs {record_surveys} → {matched}")
    return matched


def _usable_evidence(extraction: LandRecordExtraction) -> str:
    """Evidence text worth scanning for markers.

    A negated answer only counts when the model itself flagged the land.
    """
    evidence = extraction.government_land_evidence.strip()
    if evidence and not extraction.is_government_land and _NEGATED_EVIDENCE_RE.search(evidence):
        _trace(f"STAGE2 ignoring negated evidence: {evidence!r}")
        return ""
    return evidence


def evaluate_land_record(ctx: LandRecordContext, extraction: LandRecordExtraction) -> Stage2Claim:
    """Turn a raw land-record extraction into a Stage2Claim.

    Order of precedence:
      1. government / commons marker  → REJECTED (fixed reason)
      2. model says not a land record → REJECTED
      3. name and survey both match   → APPROVED
      4. otherwise                    → WARNING with the reason
    """
    geo = GeoTarget(
        district_name=extraction.district_name.strip(),
        taluk_name=extraction.taluk_name.strip(),
        revenue_village_name=(extraction.revenue_village_name.strip() or extraction.taluk_name.strip()),
    )

    label = extraction.land_type_label.strip()
    classification = classify_land(label)
    if classification == "Unknown" and extraction.land_classification in LAND_CLASSIFICATIONS:
        classification = extraction.land_classification

    evidence = _usable_evidence(extraction)
    markers = find_government_markers(label, evidence)
    is_government = bool(markers) or extraction.is_government_land
    if extraction.is_government_land and not markers:
        markers = ["Government"]

    name_matched = _derive_name_match(ctx, extraction)
    survey_matched = _derive_survey_match(ctx, extraction)

    if is_government:
        status, reason = "REJECTED", GOVERNMENT_LAND_MESSAGE
    elif not extraction.document_valid:
        status = "REJECTED"
        reason = INVALID_RECORD_MESSAGE + (f" {extraction.remarks.strip()}" if extraction.remarks.strip() else "")
    elif name_matched and survey_matched:
        status, reason = "APPROVED", ""
    else:
        problems = []
        if not name_matched:
            problems.append(f"the owner on the land record does not match {ctx.verified_name}")
        if not survey_matched:
            problems.append(f"survey number {ctx.survey_number} was not found on the land record")
        status = "WARNING"
        reason = "Caution: " + " and ".join(problems) + "."

    return Stage2Claim(
        record_owner_names=extraction.owner_names,
        record_survey_numbers=extraction.survey_numbers,
        name_matched=name_matched,
        survey_matched=survey_matched,
        land_classification=classification,
        classification_label=label,
        is_government_land=is_government,
        government_markers=markers,
        official_area_text=extraction.official_area_text.strip(),
        geo_target=geo,
        status=status,
        rejection_reason=reason,
        warning_message=reason if status == "WARNING" else "",
    )


async def verify_land_record(
    record: MediaPayload,
    ctx: LandRecordContext,
    on_progress: LLMProgressCallback | None = None,
) -> Stage2Claim:
    """Run Stage 2 extraction and evaluation.  The gate is not applied here."""
    ctx.validate()
    logger.info(f"Stage 2: land record {len(record.data)} bytes ({record.mime_type}), "
                f"claimed owner {ctx.verified_name!r}, survey {ctx.survey_number!r}")
    instruction = StageInstruction(
        task_label="Stage 2 · Land Record",
        prompt=build_land_record_prompt(ctx),
        claim_model=LandRecordExtraction,
    )
    extraction = await ClaimExtractor(on_progress=on_progress).extract(instruction, [record])
    claim = evaluate_land_record(ctx, extraction)
    logger.info(f"Stage 2 result: {claim.status} (name={claim.name_matched}, survey={claim.survey_matched}, "
                f"class={claim.land_classification}, government={claim.is_government_land})")
    return claim


def enforce_land_record_gate(claim: Stage2Claim) -> None:
    """Raise ``LandRecordRejected`` when the claim must halt the pipeline."""
    if claim.is_government_land:
        raise LandRecordRejected(GOVERNMENT_LAND_MESSAGE, error=GOVERNMENT_LAND_ERROR, risk_level="HIGH")
    if claim.status == "REJECTED":
        raise LandRecordRejected(
            claim.rejection_reason or "The Patta record does not match the Deed information.",
            error="Invalid land record",
        )
