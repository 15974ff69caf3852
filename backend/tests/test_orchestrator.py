"""Tests for the verification session state machine and stage runners.

Stage internals are mocked; these tests pin down ordering, halting,
rewinding, persistence and housekeeping.
"""

import base64
import json
import os
import time
import pytest
from unittest.mock import patch, MagicMock, AsyncMock

from landguard.pipeline.errors import (
    IdentityMismatch, LandRecordRejected, PersistenceError, StageOrderError, VideoProcessingTimeout,
    GeofenceResolutionFailed,
)
from landguard.pipeline.extractors.base import MediaPayload
from landguard.pipeline.geofence import GeofenceState
from landguard.pipeline.orchestrator import (
    PipelineStage,
    StageEvent,
    VerificationSession,
    check_location,
    cleanup_stale_files,
    make_token,
    resolve_location,
    run_identity_stage,
    run_land_record_stage,
    run_site_stage,
    save_verification,
)

from conftest import CHROMEPET_CENTER, FakeGeocoder, chromepet_hit

PAN = MediaPayload(label="PAN", data=b"\xff\xd8\xff pan")
DEED = MediaPayload(label="Deed", data=b"%PDF deed")
PATTA = MediaPayload(label="Patta", data=b"%PDF patta")
VIDEO = b"\x00\x00\x00\x18ftypmp42"

FAR_AWAY = (CHROMEPET_CENTER[0] + 0.05, CHROMEPET_CENTER[1])  # ~5.6 km north


@pytest.fixture
def stages(stage1_claim, stage2_claim, stage3_claim):
    """Mock every stage's inference so only orchestration runs."""
    with patch("landguard.pipeline.orchestrator.verify_identity_and_deed",
               new_callable=AsyncMock, return_value=stage1_claim) as s1, \
         patch("landguard.pipeline.orchestrator.verify_land_record",
               new_callable=AsyncMock, return_value=stage2_claim) as s2, \
         patch("landguard.pipeline.orchestrator.analyze_site_video",
               new_callable=AsyncMock, return_value=stage3_claim) as s3:
        yield MagicMock(identity=s1, land_record=s2, site=s3)


async def _advance_to(session: VerificationSession, stage: PipelineStage):
    """Drive a session forward with happy-path results."""
    await run_identity_stage(session, PAN, DEED)
    if stage == PipelineStage.LAND_RECORD:
        return
    await run_land_record_stage(session, PATTA)
    if stage == PipelineStage.LOCATION:
        return
    await resolve_location(session, FakeGeocoder(default=chromepet_hit()))
    check_location(session, *CHROMEPET_CENTER)
    if stage == PipelineStage.SITE_VIDEO:
        return
    await run_site_stage(session, VIDEO, "video/mp4")


# ═══════════════════════════════════════════════════
# State machine
# ═══════════════════════════════════════════════════

class TestStateMachine:

    def test_new_session_starts_at_identity(self):
        session = VerificationSession(subject_id="seller-1")
        assert session.current == PipelineStage.IDENTITY
        session.require(PipelineStage.IDENTITY)

    def test_cannot_skip_ahead(self):
        session = VerificationSession(subject_id="seller-1")
        with pytest.raises(StageOrderError) as exc_info:
            session.require(PipelineStage.LAND_RECORD)
        assert exc_info.value.status_code == 409
        assert "Step 1" in exc_info.value.message

    def test_invalid_transition(self):
        session = VerificationSession(subject_id="seller-1")
        with pytest.raises(StageOrderError):
            session.apply(StageEvent.SITE_ANALYZED)

    def test_transitions_are_logged(self):
        session = VerificationSession(subject_id="seller-1")
        session.apply(StageEvent.IDENTITY_MATCHED)
        assert session.progress[-1]["stage"] == "state"
        assert "IDENTITY_MATCHED" in session.progress[-1]["message"]

    def test_token_encodes_survey(self):
        decoded = base64.b64decode(make_token("311/1A")).decode()
        millis, survey = decoded.split("-", 1)
        assert survey == "311/1A"
        assert millis.isdigit()


# ═══════════════════════════════════════════════════
# Happy path and gates
# ═══════════════════════════════════════════════════

class TestPipelineFlow:

    @pytest.mark.asyncio
    async def test_full_run_and_save(self, stages, store):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.READY)
        assert session.current == PipelineStage.READY
        assert session.token

        verification_id = save_verification(session, store)
        assert session.current == PipelineStage.COMPLETED
        assert store.get_record(verification_id).display_address == "Chromepet, Tambaram, Chengalpattu"
        assert store.get_subject("seller-1").is_verified is True

        # Saving again returns the same record; no duplicate
        assert save_verification(session, store) == verification_id
        assert len(store.list_records("seller-1")) == 1

    @pytest.mark.asyncio
    async def test_completed_session_is_closed(self, stages, store):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.READY)
        save_verification(session, store)
        with pytest.raises(StageOrderError):
            await run_identity_stage(session, PAN, DEED)

    @pytest.mark.asyncio
    async def test_identity_mismatch_halts(self, stages, stage1_claim):
        stages.identity.return_value = stage1_claim.model_copy(update={"match_status": "MISMATCH"})
        session = VerificationSession(subject_id="seller-1")
        with pytest.raises(IdentityMismatch):
            await run_identity_stage(session, PAN, DEED)

        assert session.current == PipelineStage.HALTED
        assert session.halted_at == "IDENTITY"
        assert session.token is None
        with pytest.raises(StageOrderError):
            await run_land_record_stage(session, PATTA)
        stages.land_record.assert_not_awaited()

        # Halt is persisted
        assert VerificationSession.load(session.session_id).current == PipelineStage.HALTED

    @pytest.mark.asyncio
    async def test_retry_after_mismatch(self, stages, stage1_claim):
        stages.identity.return_value = stage1_claim.model_copy(update={"match_status": "MISMATCH"})
        session = VerificationSession(subject_id="seller-1")
        with pytest.raises(IdentityMismatch):
            await run_identity_stage(session, PAN, DEED)

        stages.identity.return_value = stage1_claim
        await run_identity_stage(session, PAN, DEED)
        assert session.current == PipelineStage.LAND_RECORD
        assert session.halted_at is None

    @pytest.mark.asyncio
    async def test_government_land_halts(self, stages, stage2_claim):
        stages.land_record.return_value = stage2_claim.model_copy(update={
            "status": "REJECTED", "is_government_land": True, "government_markers": ["Poramboke"],
        })
        session = VerificationSession(subject_id="seller-1")
        await run_identity_stage(session, PAN, DEED)
        with pytest.raises(LandRecordRejected):
            await run_land_record_stage(session, PATTA)

        assert session.current == PipelineStage.HALTED
        assert session.halted_at == "LAND_RECORD"
        assert session.geofence is None
        with pytest.raises(StageOrderError):
            await resolve_location(session, FakeGeocoder(default=chromepet_hit()))

    @pytest.mark.asyncio
    async def test_warning_record_continues(self, stages, stage2_claim):
        stages.land_record.return_value = stage2_claim.model_copy(update={
            "status": "WARNING", "name_matched": False, "warning_message": "Caution: owner differs.",
        })
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.LOCATION)
        assert session.current == PipelineStage.LOCATION

    @pytest.mark.asyncio
    async def test_land_record_uses_stage1_purchaser(self, stages):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.LOCATION)
        ctx = stages.land_record.await_args.args[1]
        assert ctx.verified_name == "Ravi Kumar"
        assert ctx.survey_number == "311/1A"


# ═══════════════════════════════════════════════════
# Rewinding and re-runs
# ═══════════════════════════════════════════════════

class TestRewind:

    @pytest.mark.asyncio
    async def test_rerun_stage1_discards_downstream(self, stages):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.READY)
        await run_identity_stage(session, PAN, DEED)
        assert session.current == PipelineStage.LAND_RECORD
        assert session.stage2 is None
        assert session.geofence is None
        assert session.stage3 is None

    @pytest.mark.asyncio
    async def test_stage3_rerun_replaces_only_stage3(self, stages, stage3_claim):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.READY)
        stage1, stage2 = session.stage1, session.stage2

        stages.site.return_value = stage3_claim.model_copy(update={"suitability_score": 4})
        await run_site_stage(session, VIDEO, "video/mp4")
        assert session.current == PipelineStage.READY
        assert session.stage3_claim.suitability_score == 4
        assert session.stage1 == stage1 and session.stage2 == stage2

    @pytest.mark.asyncio
    async def test_stage3_failure_keeps_previous_claim(self, stages):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.READY)
        previous = session.stage3

        stages.site.side_effect = VideoProcessingTimeout("Video processing timeout.")
        with pytest.raises(VideoProcessingTimeout):
            await run_site_stage(session, VIDEO, "video/mp4")
        assert session.stage3 == previous
        assert session.current == PipelineStage.READY

    @pytest.mark.asyncio
    async def test_site_stage_locked_until_location_verified(self, stages):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.LOCATION)
        await resolve_location(session, FakeGeocoder(default=chromepet_hit()))
        _, result = check_location(session, *FAR_AWAY)
        assert result.verified is False
        assert session.current == PipelineStage.LOCATION
        with pytest.raises(StageOrderError):
            await run_site_stage(session, VIDEO, "video/mp4")
        stages.site.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_out_of_range_after_verified_relocks(self, stages):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.READY)
        check_location(session, *FAR_AWAY)
        assert session.current == PipelineStage.LOCATION
        assert session.stage3 is None
        assert session.geofence_state().state == GeofenceState.OUT_OF_RANGE

    @pytest.mark.asyncio
    async def test_re_resolve_rewinds_to_location(self, stages):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.SITE_VIDEO)
        await resolve_location(session, FakeGeocoder(default=chromepet_hit()), override_village="Nemilichery")
        assert session.current == PipelineStage.LOCATION
        geo = session.geofence_state()
        assert geo.state == GeofenceState.READY
        assert geo.village == "Nemilichery"

    @pytest.mark.asyncio
    async def test_resolution_failure_is_persisted(self, stages):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.LOCATION)
        with pytest.raises(GeofenceResolutionFailed):
            await resolve_location(session, FakeGeocoder())
        loaded = VerificationSession.load(session.session_id)
        assert loaded.geofence_state().state == GeofenceState.RESOLUTION_FAILED


# ═══════════════════════════════════════════════════
# Save failures
# ═══════════════════════════════════════════════════

class TestSaveVerification:

    @pytest.mark.asyncio
    async def test_save_before_ready(self, stages, store):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.SITE_VIDEO)
        with pytest.raises(StageOrderError):
            save_verification(session, store)

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_session_ready(self, stages):
        session = VerificationSession(subject_id="seller-1")
        await _advance_to(session, PipelineStage.READY)
        broken = MagicMock()
        broken.create_record.side_effect = OSError("disk full")
        with pytest.raises(PersistenceError):
            save_verification(session, broken)
        assert session.current == PipelineStage.READY
        assert session.verification_id is None
        assert "Save failed" in session.progress[-1]["message"]


# ═══════════════════════════════════════════════════
# Persistence and housekeeping
# ═══════════════════════════════════════════════════

class TestSessionPersistence:

    def test_save_and_load(self, isolated_dirs):
        session = VerificationSession(subject_id="seller-1")
        session.apply(StageEvent.IDENTITY_MATCHED)
        session.save()
        loaded = VerificationSession.load(session.session_id)
        assert loaded.subject_id == "seller-1"
        assert loaded.current == PipelineStage.LAND_RECORD
        assert not list(isolated_dirs["sessions"].glob("*.tmp"))

    def test_unknown_fields_ignored(self, isolated_dirs):
        path = isolated_dirs["sessions"] / "abc123.json"
        path.write_text(json.dumps({"session_id": "abc123", "stage": "IDENTITY", "__class__": "evil"}))
        loaded = VerificationSession.load("abc123")
        assert loaded.session_id == "abc123"
        assert loaded.__class__ is VerificationSession

    def test_missing_session(self):
        with pytest.raises(FileNotFoundError):
            VerificationSession.load("does-not-exist")

    def test_path_traversal_rejected(self):
        with pytest.raises(FileNotFoundError):
            VerificationSession.load("../../etc/passwd")

    def test_summary_has_no_progress_log(self):
        summary = VerificationSession(subject_id="seller-1").summary()
        assert "progress" not in summary
        assert summary["geofence"]["state"] == "IDLE"


class TestCleanup:

    def test_removes_stale_sessions_and_orphan_videos(self, isolated_dirs):
        sessions, videos = isolated_dirs["sessions"], isolated_dirs["videos"]
        stale = sessions / "old.json"
        fresh = sessions / "new.json"
        stale.write_text("{}")
        fresh.write_text("{}")
        old = time.time() - 48 * 3600
        os.utime(stale, (old, old))
        (sessions / "sess_partial.tmp").write_text("{")
        (videos / "land-video-deadbeef.mp4").write_bytes(b"\x00")

        removed = cleanup_stale_files(ttl_seconds=24 * 3600)
        assert removed == 3
        assert fresh.exists()
        assert not stale.exists()
        assert list(videos.iterdir()) == []
