"""Endpoint tests for /api/verify (FastAPI TestClient, no network).

Tests cover:
  - principal gate: 401 without identity, 403 for non-seller roles
  - step1/step2/step3 success and structured failure bodies
  - session mode ordering (409) and ownership (404)
  - stateless mode with forwarded fields
  - geofence resolve/check, including the manual override path
  - save + record lookup
"""

import pytest
from unittest.mock import patch, AsyncMock

from fastapi.testclient import TestClient

from landguard.api.verification import get_geocoder, get_store
from landguard.main import app
from landguard.pipeline.orchestrator import PipelineStage, VerificationSession

from conftest import CHROMEPET_CENTER, FakeGeocoder, chromepet_hit

SELLER = {"X-User-Id": "seller-1", "X-User-Role": "seller", "X-User-Name": "Ravi Kumar"}
OTHER_SELLER = {"X-User-Id": "seller-2", "X-User-Role": "SELLER"}

PAN_FILE = ("pan.jpg", b"\xff\xd8\xff\xe0 pan image", "image/jpeg")
DEED_FILE = ("deed.pdf", b"%PDF-1.7 deed", "application/pdf")
PATTA_FILE = ("patta.pdf", b"%PDF-1.7 patta", "application/pdf")
VIDEO_FILE = ("walk.mp4", b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 256, "video/mp4")

KM_PER_DEG_LAT = 111.195


@pytest.fixture
def geocoder():
    return FakeGeocoder(default=chromepet_hit(with_boundary=False))


@pytest.fixture
def client(store, geocoder):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_geocoder] = lambda: geocoder
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def stages(stage1_claim, stage2_claim, stage3_claim):
    with patch("landguard.pipeline.orchestrator.verify_identity_and_deed",
               new_callable=AsyncMock, return_value=stage1_claim) as s1, \
         patch("landguard.pipeline.orchestrator.verify_land_record",
               new_callable=AsyncMock, return_value=stage2_claim) as s2, \
         patch("landguard.pipeline.orchestrator.analyze_site_video",
               new_callable=AsyncMock, return_value=stage3_claim) as s3:
        yield {"identity": s1, "land_record": s2, "site": s3}


def _step1(client, headers=SELLER, **data):
    return client.post("/api/verify/step1", files={"pan": PAN_FILE, "deed": DEED_FILE},
                       data=data, headers=headers)


def _north_of_center(km: float) -> dict:
    return {"latitude": CHROMEPET_CENTER[0] + km / KM_PER_DEG_LAT, "longitude": CHROMEPET_CENTER[1]}


# ═══════════════════════════════════════════════════
# Health + principal gate
# ═══════════════════════════════════════════════════

class TestHealthAndAuth:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    def test_llm_health(self, client):
        with patch("landguard.api.verification.check_gemini_status",
                   new_callable=AsyncMock, return_value={"status": "unconfigured"}):
            response = client.get("/api/verify/health/llm")
        assert response.json() == {"status": "unconfigured"}

    def test_unauthenticated(self, client, stages):
        response = _step1(client, headers={})
        assert response.status_code == 401
        stages["identity"].assert_not_awaited()

    def test_non_seller_forbidden(self, client, stages):
        response = _step1(client, headers={"X-User-Id": "buyer-9", "X-User-Role": "BUYER"})
        assert response.status_code == 403
        stages["identity"].assert_not_awaited()

    def test_unsafe_subject_id(self, client):
        response = _step1(client, headers={"X-User-Id": "../etc", "X-User-Role": "SELLER"})
        assert response.status_code == 401

    def test_subject_upserted(self, client, stages, store):
        _step1(client)
        subject = store.get_subject("seller-1")
        assert subject.role == "SELLER"
        assert subject.display_name == "Ravi Kumar"
        assert subject.is_verified is False


# ═══════════════════════════════════════════════════
# Step 1
# ═══════════════════════════════════════════════════

class TestStep1:

    def test_success(self, client, stages):
        response = _step1(client)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["phase1_status"] == "VERIFIED"
        assert body["data"]["verified_name"] == "Ravi Kumar"
        assert body["data"]["extracted_survey_no"] == "311/1A"
        assert body["data"]["token"]
        session = VerificationSession.load(body["session_id"])
        assert session.current == PipelineStage.LAND_RECORD
        assert session.subject_id == "seller-1"

    def test_missing_deed(self, client, stages):
        response = client.post("/api/verify/step1", files={"pan": PAN_FILE}, headers=SELLER)
        assert response.status_code == 400
        assert response.json()["message"] == "Both PAN and Deed are required"
        stages["identity"].assert_not_awaited()

    def test_identity_mismatch(self, client, stages, stage1_claim):
        stages["identity"].return_value = stage1_claim.model_copy(
            update={"match_status": "MISMATCH", "match_explanation": "Different person."},
        )
        response = _step1(client)
        assert response.status_code == 400
        body = response.json()
        assert body == {
            "success": False,
            "error": "Identity mismatch",
            "message": "The name on the Deed does not match your PAN Card.",
            "details": "Different person.",
        }

    def test_oversized_document(self, client, stages):
        with patch("landguard.api.verification.DOCUMENT_MAX_BYTES", 4):
            response = _step1(client)
        assert response.status_code == 400
        assert "must be under" in response.json()["message"]
        stages["identity"].assert_not_awaited()

    def test_unexpected_error_is_500(self, client, stages):
        stages["identity"].side_effect = RuntimeError("kaboom")
        response = _step1(client)
        assert response.status_code == 500
        assert response.json()["error"] == "Server Error"

    def test_unknown_session(self, client, stages):
        response = _step1(client, session_id="nope1234")
        assert response.status_code == 404


# ═══════════════════════════════════════════════════
# Step 2
# ═══════════════════════════════════════════════════

class TestStep2:

    def test_session_mode(self, client, stages):
        session_id = _step1(client).json()["session_id"]
        response = client.post("/api/verify/step2", files={"patta": PATTA_FILE},
                               data={"session_id": session_id}, headers=SELLER)
        assert response.status_code == 200
        body = response.json()
        assert body["final_status"] == "APPROVED"
        assert body["data"]["land_info"] == {
            "classification": "Dryland", "official_area": "0.22.30 Hect", "is_safe": True,
        }
        assert body["data"]["map_data"]["display_address"] == "Chromepet, Tambaram, Chengalpattu"
        assert body["data"]["warning_message"] is None

    def test_out_of_order(self, client, stages):
        session = VerificationSession(subject_id="seller-1")
        session.save()
        response = client.post("/api/verify/step2", files={"patta": PATTA_FILE},
                               data={"session_id": session.session_id}, headers=SELLER)
        assert response.status_code == 409
        assert response.json()["error"] == "Stage out of order"
        stages["land_record"].assert_not_awaited()

    def test_other_subjects_session(self, client, stages):
        session_id = _step1(client).json()["session_id"]
        response = client.post("/api/verify/step2", files={"patta": PATTA_FILE},
                               data={"session_id": session_id}, headers=OTHER_SELLER)
        assert response.status_code == 404

    def test_stateless_mode(self, client, stage2_claim):
        with patch("landguard.api.verification.verify_land_record",
                   new_callable=AsyncMock, return_value=stage2_claim) as mock_verify:
            response = client.post("/api/verify/step2", files={"patta": PATTA_FILE}, headers=SELLER, data={
                "verified_name": "Ravi Kumar", "survey_no": "311/1A", "total_area": "2400 Sq. Ft",
            })
        assert response.status_code == 200
        assert response.json()["session_id"] is None
        ctx = mock_verify.await_args.args[1]
        assert (ctx.verified_name, ctx.survey_number, ctx.total_area) == ("Ravi Kumar", "311/1A", "2400 Sq. Ft")

    def test_stateless_missing_step1_facts(self, client):
        with patch("landguard.api.verification.verify_land_record", new_callable=AsyncMock) as mock_verify:
            response = client.post("/api/verify/step2", files={"patta": PATTA_FILE}, headers=SELLER,
                                   data={"survey_no": "311/1A"})
        assert response.status_code == 400
        assert "complete Step 1" in response.json()["message"]
        mock_verify.assert_not_awaited()

    def test_government_land(self, client, stage2_claim):
        rejected = stage2_claim.model_copy(update={
            "status": "REJECTED", "is_government_land": True, "government_markers": ["Poramboke"],
        })
        with patch("landguard.api.verification.verify_land_record",
                   new_callable=AsyncMock, return_value=rejected):
            response = client.post("/api/verify/step2", files={"patta": PATTA_FILE}, headers=SELLER,
                                   data={"verified_name": "Ravi Kumar", "survey_no": "311/1A"})
        assert response.status_code == 400
        body = response.json()
        assert body["phase2_status"] == "REJECTED"
        assert body["error"] == "Government Land Detected"
        assert body["risk_level"] == "HIGH"

    def test_missing_patta(self, client):
        response = client.post("/api/verify/step2", data={"session_id": "abc"}, headers=SELLER)
        assert response.status_code == 400


# ═══════════════════════════════════════════════════
# Geofence
# ═══════════════════════════════════════════════════

class TestGeofenceEndpoints:

    def _at_location(self, client) -> str:
        session_id = _step1(client).json()["session_id"]
        client.post("/api/verify/step2", files={"patta": PATTA_FILE},
                    data={"session_id": session_id}, headers=SELLER)
        return session_id

    def test_resolve_and_check(self, client, stages):
        session_id = self._at_location(client)
        resolved = client.post("/api/verify/geofence/resolve", json={"session_id": session_id}, headers=SELLER)
        assert resolved.status_code == 200
        assert resolved.json()["state"] == "READY"
        assert resolved.json()["target_center"]["latitude"] == pytest.approx(CHROMEPET_CENTER[0])

        far = client.post("/api/verify/geofence/check",
                          json={"session_id": session_id, **_north_of_center(3.1)}, headers=SELLER)
        assert far.status_code == 200
        assert far.json()["success"] is True
        assert far.json()["verified"] is False
        assert far.json()["state"] == "OUT_OF_RANGE"
        assert far.json()["message"] == "Too far from site. You are 3.1km away."

        near = client.post("/api/verify/geofence/check",
                           json={"session_id": session_id, **_north_of_center(1.4)}, headers=SELLER)
        assert near.json()["verified"] is True
        assert VerificationSession.load(session_id).current == PipelineStage.SITE_VIDEO

    def test_resolution_failure_then_override(self, client, stages, geocoder):
        session_id = self._at_location(client)
        geocoder.default = None
        failed = client.post("/api/verify/geofence/resolve", json={"session_id": session_id}, headers=SELLER)
        assert failed.status_code == 422
        assert failed.json()["manual_override_allowed"] is True

        geocoder.default = chromepet_hit()
        fixed = client.post("/api/verify/geofence/resolve",
                            json={"session_id": session_id, "override_village": "Nemilichery"}, headers=SELLER)
        assert fixed.status_code == 200
        assert fixed.json()["display_address"] == "Nemilichery, Tambaram, Chengalpattu"

    def test_check_before_resolve(self, client, stages):
        session_id = self._at_location(client)
        response = client.post("/api/verify/geofence/check",
                               json={"session_id": session_id, **_north_of_center(0.1)}, headers=SELLER)
        assert response.status_code == 400
        assert response.json()["error"] == "Geofence error"

    def test_stateless_resolve_and_check(self, client):
        resolved = client.post("/api/verify/geofence/resolve", headers=SELLER, json={
            "geo_target": {"district_name": "Chengalpattu", "taluk_name": "Tambaram",
                           "revenue_village_name": "Chromepet"},
        })
        assert resolved.status_code == 200
        center = resolved.json()["target_center"]
        checked = client.post("/api/verify/geofence/check", headers=SELLER, json={
            "target": center, **_north_of_center(1.4),
        })
        assert checked.json()["verified"] is True

    def test_stateless_resolve_needs_target(self, client):
        response = client.post("/api/verify/geofence/resolve", json={}, headers=SELLER)
        assert response.status_code == 400


# ═══════════════════════════════════════════════════
# Step 3 + save
# ═══════════════════════════════════════════════════

class TestStep3AndSave:

    def _at_site(self, client) -> str:
        session_id = _step1(client).json()["session_id"]
        client.post("/api/verify/step2", files={"patta": PATTA_FILE},
                    data={"session_id": session_id}, headers=SELLER)
        client.post("/api/verify/geofence/resolve", json={"session_id": session_id}, headers=SELLER)
        client.post("/api/verify/geofence/check",
                    json={"session_id": session_id, **_north_of_center(0.2)}, headers=SELLER)
        return session_id

    def test_full_flow(self, client, stages, store):
        session_id = self._at_site(client)
        analyzed = client.post("/api/verify/step3", files={"video": VIDEO_FILE},
                               data={"session_id": session_id}, headers=SELLER)
        assert analyzed.status_code == 200
        assert analyzed.json()["data"]["suitability_score"] == 8

        saved = client.post("/api/verify/save", json={"session_id": session_id}, headers=SELLER)
        assert saved.status_code == 200
        verification_id = saved.json()["verificationId"]
        assert store.get_subject("seller-1").is_verified is True

        record = client.get(f"/api/verify/records/{verification_id}", headers=SELLER)
        assert record.status_code == 200
        assert record.json()["stage2"]["land_classification"] == "Dryland"
        assert client.get(f"/api/verify/records/{verification_id}", headers=OTHER_SELLER).status_code == 404

        summary = client.get(f"/api/verify/sessions/{session_id}", headers=SELLER).json()
        assert summary["stage"] == "COMPLETED"
        assert summary["verification_id"] == verification_id

    def test_video_before_location(self, client, stages):
        session_id = _step1(client).json()["session_id"]
        response = client.post("/api/verify/step3", files={"video": VIDEO_FILE},
                               data={"session_id": session_id}, headers=SELLER)
        assert response.status_code == 409
        stages["site"].assert_not_awaited()

    def test_wrong_video_type(self, client, stages):
        response = client.post("/api/verify/step3", headers=SELLER,
                               files={"video": ("clip.webm", b"\x1aE\xdf\xa3", "video/webm")})
        assert response.status_code == 400
        assert "Invalid file type" in response.json()["message"]

    def test_oversized_video(self, client, stages, isolated_dirs):
        session_id = self._at_site(client)
        with patch("landguard.api.verification.VIDEO_MAX_BYTES", 64):
            response = client.post("/api/verify/step3", files={"video": VIDEO_FILE},
                                   data={"session_id": session_id}, headers=SELLER)
        assert response.status_code == 400
        assert response.json()["message"] == "Video file size must be under 100MB"
        stages["site"].assert_not_awaited()
        assert list(isolated_dirs["videos"].iterdir()) == []

    def test_stateless_step3(self, client, stage3_claim):
        with patch("landguard.api.verification.analyze_site_video",
                   new_callable=AsyncMock, return_value=stage3_claim) as mock_analyze:
            response = client.post("/api/verify/step3", files={"video": VIDEO_FILE}, headers=SELLER,
                                   data={"survey_no": "311/1A", "verified_name": "Ravi Kumar"})
        assert response.status_code == 200
        ctx = mock_analyze.await_args.args[2]
        assert ctx.survey_number == "311/1A"

    def test_stateless_save(self, client, store, stage1_claim, stage2_claim, stage3_claim):
        response = client.post("/api/verify/save", headers=SELLER, json={
            "step1_data": stage1_claim.model_dump(),
            "step2_data": {**stage2_claim.model_dump(), "map_data": {"display_address": "Chromepet"}},
            "step3_data": stage3_claim.model_dump(),
        })
        assert response.status_code == 200
        record = store.get_record(response.json()["verificationId"])
        assert record.display_address == "Chromepet"

    def test_stateless_save_missing_step(self, client, store, stage1_claim, stage2_claim):
        response = client.post("/api/verify/save", headers=SELLER, json={
            "step1_data": stage1_claim.model_dump(), "step2_data": stage2_claim.model_dump(),
        })
        assert response.status_code == 400
        assert response.json()["details"] == "Missing verification data from step 3"
        assert store.get_subject("seller-1").is_verified is False

    def test_save_requires_identity(self, client):
        response = client.post("/api/verify/save", json={"session_id": "abc"})
        assert response.status_code == 401
