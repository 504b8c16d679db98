# User value: This file keeps the same score from landing in the library twice, and flags likely repeats for a librarian.
import hashlib
import logging
import re
from dataclasses import asdict, dataclass
from typing import Optional

from schemas.session_contract import DuplicatePolicy, ReviewStatus

logger = logging.getLogger("api.duplicates")

SOURCE_INDEX_PREFIX = "smart_upload:source_sha256"
WORK_INDEX_PREFIX = "library:work"
WORK_FINGERPRINT_LENGTH = 16


@dataclass
class DuplicateCheck:
    policy: DuplicatePolicy
    reason: str
    matching_session_id: Optional[str] = None
    matching_piece_id: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return self.policy != DuplicatePolicy.NEW_PIECE

    def to_dict(self) -> dict:
        out = asdict(self)
        out["policy"] = self.policy.value
        out["is_duplicate"] = self.is_duplicate
        return out


def compute_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def normalize_work_text(value) -> str:
    text = str(value or "").lower().strip()
    text = re.sub(r"[^\w\s]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def compute_work_fingerprint(title, composer=None) -> str:
    """Same title and composer, ignoring case, punctuation and spacing, give the same fingerprint."""
    basis = f"{normalize_work_text(title)}::{normalize_work_text(composer)}"
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()[:WORK_FINGERPRINT_LENGTH]


def source_index_key(sha256: str) -> str:
    return f"{SOURCE_INDEX_PREFIX}:{sha256}"


def work_index_key(fingerprint: str) -> str:
    return f"{WORK_INDEX_PREFIX}:{fingerprint}"


def check_source_duplicate(store, sha256: str) -> DuplicateCheck:
    """An identical file that is still in play (not rejected) is skipped."""
    existing_id = store.r.get(source_index_key(sha256))
    existing = store.get(existing_id) if existing_id else None
    if not existing or existing.get("review_status") == ReviewStatus.REJECTED.value:
        return DuplicateCheck(DuplicatePolicy.NEW_PIECE, "No duplicates detected")
    return DuplicateCheck(
        DuplicatePolicy.SKIP_DUPLICATE,
        f"Exact source file match: session {existing_id}",
        matching_session_id=existing_id,
    )


def remember_source(r, sha256: str, session_id: str) -> None:
    r.set(source_index_key(sha256), session_id)


def check_work_duplicate(r, title, composer=None, *, session_id: str = "") -> DuplicateCheck:
    """A committed piece with the same work fingerprint needs a human to decide."""
    if not normalize_work_text(title):
        return DuplicateCheck(DuplicatePolicy.NEW_PIECE, "No title to compare")
    piece_id = r.get(work_index_key(compute_work_fingerprint(title, composer)))
    if not piece_id:
        return DuplicateCheck(DuplicatePolicy.NEW_PIECE, "No duplicates detected")
    logger.info("work_duplicate_detected session_id=%s piece_id=%s", session_id, piece_id)
    return DuplicateCheck(
        DuplicatePolicy.EXCEPTION_REVIEW,
        f'Possible duplicate of "{title}" (work fingerprint match)',
        matching_piece_id=piece_id,
    )
