"""Verification record assembler.

Builds the final record from all three stage claims and persists it,
then flips the subject's verified flag.  The two writes behave as a
unit: if the flag cannot be written (after one retry) the record is
deleted again and ``PersistenceError`` is raised.
"""

from __future__ import annotations

import uuid
import logging
from typing import Any

from pydantic import BaseModel, ValidationError

from landguard.pipeline.errors import IncompleteVerification, InputValidationError, PersistenceError
from landguard.pipeline.schemas import Stage1Claim, Stage2Claim, Stage3Claim, VerificationRecord
from landguard.pipeline.store import VerificationStore, now_iso

logger = logging.getLogger(__name__)

_FLAG_WRITE_ATTEMPTS = 2


def _coerce(value: Any, model: type[BaseModel], step: int) -> Any:
    if value is None or value == {}:
        raise IncompleteVerification(
            "All verification steps must be completed.",
            details=f"Missing verification data from step {step}",
        )
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise InputValidationError(f"Step {step} data is malformed", details=str(e)) from e


def build_record(
    subject_id: str,
    stage1: Stage1Claim | dict | None,
    stage2: Stage2Claim | dict | None,
    stage3: Stage3Claim | dict | None,
    display_address: str = "",
) -> VerificationRecord:
    """Validate that every stage is present and passed its gate."""
    s1 = _coerce(stage1, Stage1Claim, 1)
    s2 = _coerce(stage2, Stage2Claim, 2)
    s3 = _coerce(stage3, Stage3Claim, 3)

    if s1.match_status == "MISMATCH":
        raise IncompleteVerification("Identity verification did not pass.")
    if s2.status == "REJECTED" or s2.is_government_land:
        raise IncompleteVerification("Land record verification did not pass.")

    return VerificationRecord(
        verification_id=uuid.uuid4().hex,
        subject_id=subject_id,
        created_at=now_iso(),
        display_address=display_address or s2.geo_target.display_address(),
        stage1=s1,
        stage2=s2,
        stage3=s3,
    )


def save_record(store: VerificationStore, record: VerificationRecord) -> str:
    """Persist the record and flip the subject flag, compensating on failure.

    Returns the verification id.

    Raises:
        PersistenceError: the record could not be written, or the subject
            flag could not be written and the record was rolled back
    """
    try:
        store.create_record(record)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to write verification record {record.verification_id}: {e}")
        raise PersistenceError("Failed to save verification", details=str(e)) from e

    last_error: Exception | None = None
    for attempt in range(1, _FLAG_WRITE_ATTEMPTS + 1):
        try:
            store.mark_subject_verified(record.subject_id, record.created_at)
            logger.info(f"Verification saved for subject {record.subject_id}: {record.verification_id}")
            return record.verification_id
        except (OSError, ValueError) as e:
            last_error = e
            logger.warning(f"Subject flag write failed (attempt {attempt}/{_FLAG_WRITE_ATTEMPTS}) "
                           f"for {record.subject_id}: {e}")

    # Roll back so no record exists alongside a stale subject flag
    try:
        store.delete_record(record.verification_id)
        logger.error(f"Rolled back record {record.verification_id} after subject flag failure")
    except OSError as e:
        logger.critical(f"Rollback of record {record.verification_id} failed: {e}")
    raise PersistenceError("Failed to save verification", details=str(last_error))


def assemble_and_save(
    store: VerificationStore,
    subject_id: str,
    stage1: Stage1Claim | dict | None,
    stage2: Stage2Claim | dict | None,
    stage3: Stage3Claim | dict | None,
    display_address: str = "",
) -> str:
    record = build_record(subject_id, stage1, stage2, stage3, display_address)
    return save_record(store, record)
