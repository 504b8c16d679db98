# User value: This file puts approved parts into the library exactly once, however many times approve is clicked.
import json
import logging
import re
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Optional

from schemas.session_contract import DuplicatePolicy, ReviewStatus
from services.duplicates import DuplicateCheck, check_work_duplicate, compute_work_fingerprint, work_index_key
from services.part_naming import build_part_display_name, guess_instrument_family, normalize_instrument_label
from services.quality_gates import is_forbidden_label
from services.sessions import SessionStore, SessionTransitionError
from utils.metrics import incr
from utils.stage_logging import COMPLETED, SKIPPED, log_stage

logger = logging.getLogger("api.commit")

LIBRARY_PREFIX = "library"
PIECES_INDEX = "library:pieces"


class CommitError(RuntimeError):
    pass


class DuplicateWorkError(CommitError):
    def __init__(self, check: DuplicateCheck):
        self.check = check
        super().__init__(
            f"{check.reason}: piece {check.matching_piece_id}. "
            "Approve with duplicate_policy NEW_PIECE or VERSION_UPDATE, or reject the session"
        )


@dataclass
class CommitResult:
    piece_id: str
    title: str
    parts_committed: int
    was_idempotent: bool
    version_of: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def session_piece_key(session_id: str) -> str:
    return f"{LIBRARY_PREFIX}:session_piece:{session_id}"


def piece_key(piece_id: str) -> str:
    return f"{LIBRARY_PREFIX}:piece:{piece_id}"


def part_key(part_id: str) -> str:
    return f"{LIBRARY_PREFIX}:part:{part_id}"


def piece_versions_key(piece_id: str) -> str:
    return f"{LIBRARY_PREFIX}:piece_versions:{piece_id}"


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")


def _clean(value) -> Optional[str]:
    if value is None or is_forbidden_label(value):
        return None
    return re.sub(r"\s+", " ", str(value)).strip() or None


def resolve_title(session: dict, override: Optional[dict] = None) -> Optional[str]:
    override = override or {}
    metadata = session.get("extracted_metadata") or {}
    for candidate in (override.get("title"), metadata.get("title")):
        title = _clean(candidate)
        if title:
            return title
    stem = PurePosixPath(session.get("file_name") or "").stem
    return _clean(stem)


def _upsert_named(r, kind: str, name: Optional[str]) -> str:
    if not name:
        return ""
    slug = _slug(name)
    if not slug:
        return ""
    key = f"{LIBRARY_PREFIX}:{kind}:{slug}"
    if r.hsetnx(key, "id", uuid.uuid4().hex):
        r.hset(key, mapping={"name": name, "slug": slug, "created_at": datetime.utcnow().isoformat()})
        logger.info("library_%s_created slug=%s", kind, slug)
    return r.hget(key, "id") or ""


def _idempotent_result(store: SessionStore, session_id: str, piece_id: str, reviewer: str) -> CommitResult:
    piece = store.r.hgetall(piece_key(piece_id)) or {}
    part_ids = json.loads(piece.get("part_ids") or "[]")

    session = store.get(session_id)
    if session and session.get("review_status") == ReviewStatus.PENDING_REVIEW.value:
        try:
            store.mark_approved(session_id, reviewer=reviewer)
        except SessionTransitionError as exc:
            logger.warning("commit_idempotent_approve_blocked session_id=%s error=%s", session_id, exc)

    incr("commit_idempotent_total")
    log_stage(session_id=session_id, stage="commit", event=SKIPPED, piece_id=piece_id, reason="already_committed")
    return CommitResult(
        piece_id=piece_id,
        title=piece.get("title", ""),
        parts_committed=len(part_ids),
        was_idempotent=True,
        version_of=piece.get("version_of") or None,
    )


def commit_session(
    store: SessionStore,
    storage,
    session_id: str,
    *,
    reviewer: str,
    override_metadata: Optional[dict] = None,
    auto: bool = False,
    duplicate_policy: Optional[str] = None,
) -> CommitResult:
    """Materialize a session's parts as a library piece.

    The session -> piece mapping is the idempotency anchor: it is checked before any
    write and claimed with SET NX, so repeats and races return the existing piece.
    A piece whose title and composer match an existing one is refused unless
    duplicate_policy says to add it as a new piece or as a version of that match.
    """
    r = store.r
    existing = r.get(session_piece_key(session_id))
    if existing:
        return _idempotent_result(store, session_id, existing, reviewer)

    session = store.require(session_id)
    if session.get("review_status") == ReviewStatus.REJECTED.value:
        raise CommitError("Session was rejected; reopen it before approving")

    override = {k: v for k, v in (override_metadata or {}).items() if v not in (None, "")}
    parsed_parts = session.get("parsed_parts") or []
    title = resolve_title(session, override)
    if not parsed_parts and not _clean(override.get("title")):
        raise CommitError("Nothing to commit: session has no parts and no override title")
    if not title:
        raise CommitError("Nothing to commit: no usable title")

    metadata = session.get("extracted_metadata") or {}
    composer = _clean(override.get("composer") or metadata.get("composer"))
    policy = DuplicatePolicy(duplicate_policy) if duplicate_policy else None
    duplicate = check_work_duplicate(r, title, composer, session_id=session_id)
    if duplicate.is_duplicate and policy not in (DuplicatePolicy.NEW_PIECE, DuplicatePolicy.VERSION_UPDATE):
        incr("commit_duplicate_blocked_total")
        raise DuplicateWorkError(duplicate)
    version_of = None
    if duplicate.is_duplicate and policy == DuplicatePolicy.VERSION_UPDATE:
        version_of = duplicate.matching_piece_id
    fingerprint = compute_work_fingerprint(title, composer)

    piece_id = uuid.uuid4().hex
    if not r.set(session_piece_key(session_id), piece_id, nx=True):
        return _idempotent_result(store, session_id, r.get(session_piece_key(session_id)), reviewer)

    # APPROVED is terminal, so once this transition lands a concurrent reject is refused
    try:
        store.mark_approved(session_id, reviewer=reviewer, auto=auto)
    except SessionTransitionError as exc:
        r.delete(session_piece_key(session_id))
        incr("commit_blocked_total")
        logger.warning("commit_approve_blocked session_id=%s current=%s", session_id, exc)
        raise CommitError("Session changed during commit; it is no longer pending review") from exc

    now = datetime.utcnow().isoformat()
    try:
        composer_id = _upsert_named(r, "composer", composer)
        publisher_id = _upsert_named(r, "publisher", _clean(override.get("publisher") or metadata.get("publisher")))

        part_ids = []
        committed_keys = set()
        pipe = r.pipeline()
        for part in parsed_parts:
            normalized = normalize_instrument_label(part.get("instrument") or part.get("part_name"))
            part_id = uuid.uuid4().hex
            part_ids.append(part_id)
            committed_keys.add(part.get("storage_key"))
            pipe.hset(
                part_key(part_id),
                mapping={
                    "id": part_id,
                    "piece_id": piece_id,
                    "instrument": normalized.instrument,
                    "section": guess_instrument_family(normalized.instrument),
                    "transposition": normalized.transposition,
                    "chair": normalized.chair or "",
                    "part_type": normalized.part_type,
                    "part_name": part.get("part_name") or build_part_display_name(title, normalized.instrument),
                    "storage_key": part.get("storage_key") or "",
                    "file_name": part.get("file_name") or "",
                    "page_count": int(part.get("page_count") or 0),
                },
            )
        pipe.hset(
            piece_key(piece_id),
            mapping={
                "id": piece_id,
                "title": title,
                "composer_id": composer_id,
                "arranger": _clean(override.get("arranger") or metadata.get("arranger")) or "",
                "publisher_id": publisher_id,
                "source_session_id": session_id,
                "original_storage_key": session.get("storage_key") or "",
                "work_fingerprint": fingerprint,
                "version_of": version_of or "",
                "part_ids": json.dumps(part_ids),
                "created_by": reviewer,
                "created_at": now,
            },
        )
        pipe.zadd(PIECES_INDEX, {piece_id: datetime.utcnow().timestamp()})
        # the first piece of a work stays its anchor
        pipe.set(work_index_key(fingerprint), piece_id, nx=True)
        if version_of:
            pipe.zadd(piece_versions_key(version_of), {piece_id: datetime.utcnow().timestamp()})
        pipe.execute()
    except Exception:
        # release the claim so a later approve can retry from scratch; the session stays APPROVED
        r.delete(session_piece_key(session_id))
        logger.exception("commit_failed session_id=%s piece_id=%s", session_id, piece_id)
        raise

    for key in session.get("temp_files") or []:
        if key in committed_keys:
            continue
        try:
            storage.delete(key)
        except Exception as exc:
            logger.warning("commit_temp_cleanup_failed session_id=%s key=%s error=%s", session_id, key, exc)

    incr("commit_completed_total", auto=str(auto).lower())
    log_stage(
        session_id=session_id,
        stage="commit",
        event=COMPLETED,
        user=reviewer,
        piece_id=piece_id,
        parts_committed=len(part_ids),
        version_of=version_of,
    )
    return CommitResult(
        piece_id=piece_id,
        title=title,
        parts_committed=len(part_ids),
        was_idempotent=False,
        version_of=version_of,
    )
