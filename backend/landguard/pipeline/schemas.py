"""Claim models for each verification stage.

Two layers per stage:
  - ``*Extraction`` — the shape the model is asked to fill.  Its JSON
    Schema is appended to the stage prompt, and the response is validated
    against it.  Loose on input: nulls become defaults, scores are
    clamped, enum casing is normalized.
  - ``*Claim`` — the stage's final output after deterministic checks.
    This is what the session stores and the assembler persists.
"""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from landguard.pipeline.utils import AreaText, SurveyNumber

MatchStatus = Literal["MATCHED", "PARTIAL", "MISMATCH"]
LandRecordStatus = Literal["APPROVED", "WARNING", "REJECTED"]
LandClassification = Literal["Wetland", "Dryland", "Housing", "Unknown"]


def _clamp_int(value, low: int, high: int, default: int) -> int:
    try:
        n = int(round(float(value)))
    except (TypeError, ValueError):
        return default
    return max(low, min(high, n))


class _Lenient(BaseModel):
    """Ignore unknown keys; nulls fall back to the field default."""

    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _none_to_default(cls, v, info):
        if v is None:
            field = cls.model_fields[info.field_name]
            if field.default_factory is not None:
                return field.default_factory()
            if isinstance(field.default, (str, bool, int, float)):
                return field.default
        return v


# ═══════════════════════════════════════════════════
# STAGE 1 — IDENTITY & DEED
# ═══════════════════════════════════════════════════

class LegalMarkers(_Lenient):
    registrar_seal_found: bool = Field(False, description="Sub-Registrar seal visible on the deed")
    seal_description: str = Field("", description="What the seal shows, or empty")
    stamp_paper_detected: bool = Field(False, description="Deed is on non-judicial stamp paper")


class IdentityDeedExtraction(_Lenient):
    purchaser_name: str = Field("", description="Full name on the PAN card")
    purchaser_father_name: str = Field("", description="Father's name on the PAN card")
    deed_buyer_name: str = Field("", description="Purchaser / vendee / claimant named in the deed")
    deed_seller_name: str = Field("", description="Seller / vendor / executant named in the deed")
    match_status: MatchStatus = Field(
        "MISMATCH", description="MATCHED, PARTIAL or MISMATCH for PAN name vs deed buyer name",
    )
    confidence_score: int = Field(0, description="0-100")
    match_explanation: str = ""
    survey_number: str = Field("", description="Survey / S.F. number exactly as printed")
    district: str = ""
    land_status: str = Field("", description="Land type as written (Agricultural, Nanjai, House Site, ...)")
    total_area: str = Field("", description="Extent exactly as written, with units")
    legal_markers: LegalMarkers = Field(default_factory=LegalMarkers)

    @field_validator("match_status", mode="before")
    @classmethod
    def _upper_status(cls, v):
        s = str(v or "").strip().upper()
        if s in ("MATCH", "MATCHES"):
            return "MATCHED"
        if s in ("PARTIAL_MATCH", "PARTIALLY_MATCHED"):
            return "PARTIAL"
        return s or "MISMATCH"

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _clamp_confidence(cls, v):
        return _clamp_int(v, 0, 100, 0)


class Stage1Claim(IdentityDeedExtraction):
    name_similarity: float = 0.0

    @property
    def survey(self) -> SurveyNumber:
        return SurveyNumber(self.survey_number)

    @property
    def area(self) -> AreaText:
        return AreaText(self.total_area)

    @property
    def verified_name(self) -> str:
        return self.purchaser_name


# ═══════════════════════════════════════════════════
# STAGE 2 — LAND RECORD (PATTA / CHITTA)
# ═══════════════════════════════════════════════════

class GeoTarget(_Lenient):
    district_name: str = ""
    taluk_name: str = ""
    revenue_village_name: str = ""

    @property
    def village(self) -> str:
        return self.revenue_village_name or self.taluk_name

    def display_address(self) -> str:
        return ", ".join(p for p in (self.village, self.taluk_name, self.district_name) if p)


class LandRecordExtraction(_Lenient):
    owner_names: list[str] = Field(default_factory=list, description="Every owner (pattadar) listed")
    survey_numbers: list[str] = Field(default_factory=list, description="Every survey / subdivision number listed")
    name_matched: bool = Field(False, description="An owner matches the verified purchaser")
    survey_matched: bool = Field(False, description="A survey number matches the deed's survey number")
    land_type_label: str = Field("", description="Land type text as printed (Nanjai, புன்செய், Natham, ...)")
    land_classification: str = Field("Unknown", description="Wetland, Dryland, Housing or Unknown")
    is_government_land: bool = Field(False, description="Poramboke / Sarkar / Government / Waqf land")
    government_land_evidence: str = Field("", description="Verbatim record text marking government land, or empty string")
    official_area_text: str = Field("", description="Extent as printed on the record")
    district_name: str = ""
    taluk_name: str = ""
    revenue_village_name: str = ""
    document_valid: bool = Field(True, description="False when the file is not a readable land record")
    remarks: str = ""

    @field_validator("owner_names", "survey_numbers", mode="before")
    @classmethod
    def _coerce_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return [str(x) for x in v if x]


class Stage2Claim(BaseModel):
    record_owner_names: list[str] = Field(default_factory=list)
    record_survey_numbers: list[str] = Field(default_factory=list)
    name_matched: bool = False
    survey_matched: bool = False
    land_classification: LandClassification = "Unknown"
    classification_label: str = ""
    is_government_land: bool = False
    government_markers: list[str] = Field(default_factory=list)
    official_area_text: str = ""
    geo_target: GeoTarget = Field(default_factory=GeoTarget)
    status: LandRecordStatus = "WARNING"
    rejection_reason: str = ""
    warning_message: str = ""

    @property
    def area(self) -> AreaText:
        return AreaText(self.official_area_text)


# ═══════════════════════════════════════════════════
# STAGE 3 — SITE VIDEO
# ═══════════════════════════════════════════════════

class LandQuality(_Lenient):
    topography: str = Field("", description="Flat, Sloped, Rocky, ...")
    soil_type: str = ""
    vegetation: str = ""
    nearby_infrastructure: list[str] = Field(default_factory=list)
    water_presence: str = ""
    boundary_clarity: str = ""


class AudioAnalysis(_Lenient):
    detected_sounds: list[str] = Field(default_factory=list)
    traffic_density: str = Field("", description="High, Moderate, Low, Nature or Industrial")
    noise_pollution_score: int = Field(1, description="1 = silent/rural, 10 = noisy junction")
    environment_summary: str = ""

    @field_validator("noise_pollution_score", mode="before")
    @classmethod
    def _clamp_noise(cls, v):
        return _clamp_int(v, 1, 10, 1)


class Stage3Claim(_Lenient):
    land_quality: LandQuality = Field(default_factory=LandQuality)
    audio: AudioAnalysis = Field(
        default_factory=AudioAnalysis,
        validation_alias=AliasChoices("audio", "audio_analysis"),
    )
    overall_verdict: str = ""
    suitability_score: int = Field(1, description="1-10")
    recommendations: str = ""
    detailed_report: str = Field("", description="2-3 paragraph narrative for a buyer")

    @field_validator("suitability_score", mode="before")
    @classmethod
    def _clamp_suitability(cls, v):
        return _clamp_int(v, 1, 10, 1)

    @field_validator("recommendations", mode="before")
    @classmethod
    def _join_recommendations(cls, v):
        if isinstance(v, list):
            return "\n".join(str(x) for x in v)
        return v


# ═══════════════════════════════════════════════════
# PERSISTED ENTITIES
# ═══════════════════════════════════════════════════

class VerificationSubject(BaseModel):
    subject_id: str
    display_name: str = ""
    role: str = ""
    is_verified: bool = False
    verified_at: str | None = None


class VerificationRecord(BaseModel):
    verification_id: str
    subject_id: str
    status: Literal["COMPLETED"] = "COMPLETED"
    created_at: str
    display_address: str = ""
    stage1: Stage1Claim
    stage2: Stage2Claim
    stage3: Stage3Claim
