"""Shared fixtures for the LandGuard verification test suite."""

import pytest
from unittest.mock import patch

from landguard.pipeline.schemas import (
    GeoTarget, IdentityDeedExtraction, LandRecordExtraction, Stage1Claim, Stage2Claim, Stage3Claim,
)
from landguard.pipeline.store import JsonFileStore


# ═══════════════════════════════════════════════════
# Filesystem isolation
# ═══════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path):
    """Point every on-disk location at a per-test temp directory."""
    sessions = tmp_path / "sessions"
    videos = tmp_path / "videos"
    sessions.mkdir()
    videos.mkdir()
    with patch("landguard.pipeline.orchestrator.SESSIONS_DIR", sessions), \
         patch("landguard.pipeline.orchestrator.VIDEO_TEMP_DIR", videos), \
         patch("landguard.pipeline.extractors.site_video.VIDEO_TEMP_DIR", videos):
        yield {"sessions": sessions, "videos": videos, "root": tmp_path}


@pytest.fixture
def store(tmp_path):
    return JsonFileStore(records_dir=tmp_path / "records", subjects_dir=tmp_path / "subjects")


# ═══════════════════════════════════════════════════
# Claim fixtures (shaped like real stage output)
# ═══════════════════════════════════════════════════

@pytest.fixture
def identity_extraction():
    """PAN holder and deed buyer written differently but the same person."""
    return IdentityDeedExtraction(
        purchaser_name="Ravi Kumar",
        purchaser_father_name="Subramanian",
        deed_buyer_name="R. Kumar",
        deed_seller_name="Lakshmi W/o Senthil",
        match_status="MATCHED",
        confidence_score=92,
        match_explanation="Initial R expands to Ravi.",
        survey_number="S.F.No. 311/1A",
        district="Chengalpattu",
        land_status="Agricultural",
        total_area="2400 Sq. Ft",
    )


@pytest.fixture
def stage1_claim():
    return Stage1Claim(
        purchaser_name="Ravi Kumar",
        purchaser_father_name="Subramanian",
        deed_buyer_name="R. Kumar",
        deed_seller_name="Lakshmi W/o Senthil",
        match_status="MATCHED",
        confidence_score=92,
        match_explanation="Initial R expands to Ravi.",
        survey_number="311/1A",
        district="Chengalpattu",
        land_status="Agricultural",
        total_area="2400 Sq. Ft",
        name_similarity=0.9,
    )


@pytest.fixture
def land_extraction():
    """Clean Patta: owner and survey match, dry land, not government."""
    return LandRecordExtraction(
        owner_names=["Ravi Kumar S/o Subramanian"],
        survey_numbers=["311/1A", "311/2"],
        name_matched=True,
        survey_matched=True,
        land_type_label="Punjai",
        land_classification="Dryland",
        official_area_text="0.22.30 Hect",
        district_name="Chengalpattu",
        taluk_name="Tambaram",
        revenue_village_name="Chromepet",
    )


@pytest.fixture
def stage2_claim():
    return Stage2Claim(
        record_owner_names=["Ravi Kumar S/o Subramanian"],
        record_survey_numbers=["311/1A"],
        name_matched=True,
        survey_matched=True,
        land_classification="Dryland",
        classification_label="Punjai",
        official_area_text="0.22.30 Hect",
        geo_target=GeoTarget(district_name="Chengalpattu", taluk_name="Tambaram",
                             revenue_village_name="Chromepet"),
        status="APPROVED",
    )


@pytest.fixture
def stage3_claim():
    return Stage3Claim.model_validate({
        "land_quality": {"topography": "Flat", "soil_type": "Red loam",
                         "nearby_infrastructure": ["Electric poles", "Tar road"]},
        "audio_analysis": {"detected_sounds": ["Birds", "Distant traffic"],
                           "traffic_density": "Low", "noise_pollution_score": 3},
        "overall_verdict": "Suitable for residential construction",
        "suitability_score": 8,
        "recommendations": ["Get a soil test", "Confirm road access"],
        "detailed_report": "The plot is flat with clear boundaries.",
    })


# ═══════════════════════════════════════════════════
# Geocoder double
# ═══════════════════════════════════════════════════

# Square around Chromepet, roughly 4 km across
CHROMEPET_CENTER = (12.9516, 80.1462)
CHROMEPET_BOUNDARY = {
    "type": "Polygon",
    "coordinates": [[
        [80.1262, 12.9316], [80.1662, 12.9316], [80.1662, 12.9716],
        [80.1262, 12.9716], [80.1262, 12.9316],
    ]],
}


class FakeGeocoder:
    """Stands in for NominatimGeocoder; answers from a dict of query → hit."""

    def __init__(self, hits: dict | None = None, default: dict | None = None):
        self.hits = hits or {}
        self.default = default
        self.queries: list[str] = []

    async def search(self, query: str):
        self.queries.append(query)
        return self.hits.get(query, self.default)


def chromepet_hit(with_boundary: bool = False) -> dict:
    hit = {
        "lat": str(CHROMEPET_CENTER[0]),
        "lon": str(CHROMEPET_CENTER[1]),
        "display_name": "Chromepet, Tambaram, Chengalpattu, Tamil Nadu, India",
    }
    if with_boundary:
        hit["geojson"] = CHROMEPET_BOUNDARY
    return hit
