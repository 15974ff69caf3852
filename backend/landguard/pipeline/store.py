"""Persistence for verification records and subjects.

``VerificationStore`` is the narrow interface the assembler depends on.
``JsonFileStore`` keeps one JSON document per record / subject, written
atomically.  Failures surface as ``OSError``.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import logging
from datetime import datetime
from pathlib import Path
from typing import Protocol

from landguard.config import RECORDS_DIR, SUBJECTS_DIR
from landguard.pipeline.schemas import VerificationRecord, VerificationSubject

logger = logging.getLogger(__name__)

_SAFE_KEY_RE = re.compile(r'^[A-Za-z0-9_.@-]{1,128}$')


def is_safe_key(key: str) -> bool:
    """True if ``key`` can be used as a file name without escaping its directory."""
    return bool(key) and bool(_SAFE_KEY_RE.match(key)) and key not in (".", "..")


def atomic_write_json(path: Path, payload: dict, prefix: str = "tmp_") -> None:
    """Write JSON to ``path`` via a temp file + os.replace().

    Prevents half-written / corrupt JSON if the process dies mid-write.
    """
    data = json.dumps(payload, indent=2, default=str, ensure_ascii=False)
    # Temp in the same directory so os.replace() is same-device
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp", prefix=prefix)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(data)
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class VerificationStore(Protocol):
    def get_subject(self, subject_id: str) -> VerificationSubject | None: ...
    def upsert_subject(self, subject_id: str, display_name: str = "", role: str = "") -> VerificationSubject: ...
    def mark_subject_verified(self, subject_id: str, verified_at: str) -> VerificationSubject: ...
    def create_record(self, record: VerificationRecord) -> None: ...
    def get_record(self, verification_id: str) -> VerificationRecord | None: ...
    def delete_record(self, verification_id: str) -> None: ...


class JsonFileStore:
    """File-backed ``VerificationStore``."""

    def __init__(self, records_dir: Path = RECORDS_DIR, subjects_dir: Path = SUBJECTS_DIR):
        self.records_dir = Path(records_dir)
        self.subjects_dir = Path(subjects_dir)
        self.records_dir.mkdir(parents=True, exist_ok=True)
        self.subjects_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _path(directory: Path, key: str) -> Path:
        if not is_safe_key(key):
            raise ValueError(f"Unsafe store key: {key!r}")
        return directory / f"{key}.json"

    # ── subjects ──

    def get_subject(self, subject_id: str) -> VerificationSubject | None:
        path = self._path(self.subjects_dir, subject_id)
        if not path.exists():
            return None
        return VerificationSubject.model_validate_json(path.read_text(encoding="utf-8"))

    def upsert_subject(self, subject_id: str, display_name: str = "", role: str = "") -> VerificationSubject:
        """Create the subject on first sight; refresh name/role afterwards.

        The verified flag is never touched here.
        """
        subject = self.get_subject(subject_id)
        if subject is None:
            subject = VerificationSubject(subject_id=subject_id, display_name=display_name, role=role)
            logger.info(f"Subject {subject_id} created (role {role or '?'})")
        else:
            changed = False
            if display_name and display_name != subject.display_name:
                subject.display_name, changed = display_name, True
            if role and role != subject.role:
                subject.role, changed = role, True
            if not changed:
                return subject
        atomic_write_json(self._path(self.subjects_dir, subject_id), subject.model_dump(), prefix="subj_")
        return subject

    def mark_subject_verified(self, subject_id: str, verified_at: str) -> VerificationSubject:
        subject = self.get_subject(subject_id) or VerificationSubject(subject_id=subject_id)
        subject.is_verified = True
        subject.verified_at = verified_at
        atomic_write_json(self._path(self.subjects_dir, subject_id), subject.model_dump(), prefix="subj_")
        return subject

    # ── records ──

    def create_record(self, record: VerificationRecord) -> None:
        path = self._path(self.records_dir, record.verification_id)
        if path.exists():
            raise FileExistsError(f"Verification record {record.verification_id} already exists")
        atomic_write_json(path, record.model_dump(mode="json"), prefix="rec_")

    def get_record(self, verification_id: str) -> VerificationRecord | None:
        path = self._path(self.records_dir, verification_id)
        if not path.exists():
            return None
        return VerificationRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def delete_record(self, verification_id: str) -> None:
        self._path(self.records_dir, verification_id).unlink(missing_ok=True)

    def list_records(self, subject_id: str) -> list[VerificationRecord]:
        records = []
        for path in sorted(self.records_dir.glob("*.json")):
            record = VerificationRecord.model_validate_json(path.read_text(encoding="utf-8"))
            if record.subject_id == subject_id:
                records.append(record)
        return records


def now_iso() -> str:
    return datetime.now().isoformat()
