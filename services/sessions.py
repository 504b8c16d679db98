# User value: This file is the single record of where each uploaded score is in the pipeline, and why it stopped if it did.
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from redis.exceptions import WatchError

from schemas.session_contract import (
    BOOL_FIELDS,
    CONTRACT_VERSION,
    INT_FIELDS,
    JSON_FIELDS,
    SECOND_PASS_ENQUEUE_ELIGIBLE,
    ParseStatus,
    ReviewStatus,
    SecondPassStatus,
    SessionErrorCode,
)
from services.job_definitions import JOB_SECOND_PASS
from utils.metrics import incr
from utils.request_id import get_request_id
from utils.stage_logging import FAILED, STARTED, log_stage
from utils.status_machine import transition_hset

logger = logging.getLogger("api.sessions")

SESSION_KEY_PREFIX = "smart_upload:session"
SESSIONS_INDEX = "smart_upload:sessions"
REVIEW_INDEX_PREFIX = "smart_upload:review"
# a QUEUED claim whose job has not been registered yet is held for this long
SECOND_PASS_CLAIM_GRACE_SEC = 30


class SessionNotFoundError(KeyError):
    pass


class SecondPassIneligibleError(RuntimeError):
    def __init__(self, session_id: str, current: Optional[str], reason: str):
        self.session_id = session_id
        self.current = current
        super().__init__(reason)


class SessionTransitionError(RuntimeError):
    def __init__(self, session_id: str, current: Optional[dict], target: Optional[dict]):
        self.session_id = session_id
        self.current = current or {}
        self.target = target or {}
        super().__init__(f"Invalid transition for session {session_id}: {self.current} -> {self.target}")


@dataclass
class SecondPassGate:
    ok: bool
    current: Optional[str]
    reason: str = ""


def _now() -> str:
    return datetime.utcnow().isoformat()


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}:{session_id}"


def review_index_key(status) -> str:
    value = status.value if hasattr(status, "value") else str(status)
    return f"{REVIEW_INDEX_PREFIX}:{value}"


def _enc(value) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def encode_mapping(mapping: dict) -> dict:
    out = {}
    for key, value in mapping.items():
        if key in JSON_FIELDS:
            out[key] = json.dumps(value if value is not None else None, ensure_ascii=False, default=str)
        else:
            out[key] = _enc(value)
    return out


def decode_session(data: dict) -> dict:
    if not data:
        return {}
    out = dict(data)
    for key in JSON_FIELDS:
        raw = data.get(key)
        if raw in (None, ""):
            out[key] = [] if key in ("parsed_parts", "cutting_instructions", "temp_files", "quality_gate_reasons") else None
            continue
        try:
            out[key] = json.loads(raw)
        except ValueError:
            logger.warning("session_field_unreadable session_id=%s field=%s", data.get("session_id"), key)
            out[key] = None
    for key in INT_FIELDS:
        raw = data.get(key)
        out[key] = int(float(raw)) if raw not in (None, "") else None
    for key in BOOL_FIELDS:
        out[key] = data.get(key) == "1"
    out["second_pass_status"] = data.get("second_pass_status") or None
    for key in (
        "error_code",
        "error_message",
        "reviewed_by",
        "reviewed_at",
        "routing_decision",
        "rejection_reason",
        "source_sha256",
    ):
        out[key] = data.get(key) or None
    out.pop("created_ts", None)
    out.pop("second_pass_queued_ts", None)
    return out


class SessionStore:
    """Named transitions over the session hash. Nothing else writes status fields."""

    def __init__(self, r):
        self.r = r

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get_raw(self, session_id: str) -> dict:
        return self.r.hgetall(session_key(session_id)) or {}

    def get(self, session_id: str) -> Optional[dict]:
        data = self.get_raw(session_id)
        return decode_session(data) if data else None

    def require(self, session_id: str) -> dict:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def exists(self, session_id: str) -> bool:
        return bool(self.r.exists(session_key(session_id)))

    def list_by_review_status(self, status: ReviewStatus, offset: int, limit: int) -> tuple[list[dict], int]:
        key = review_index_key(status)
        total = int(self.r.zcard(key) or 0)
        ids = self.r.zrevrange(key, offset, offset + limit - 1) if limit > 0 else []
        pipe = self.r.pipeline(transaction=False)
        for session_id in ids:
            pipe.hgetall(session_key(session_id))
        rows = pipe.execute() if ids else []
        return [decode_session(row) for row in rows if row], total

    def review_counts(self) -> dict:
        pipe = self.r.pipeline(transaction=False)
        for status in ReviewStatus:
            pipe.zcard(review_index_key(status))
        pending, approved, rejected = pipe.execute()
        return {"pending": int(pending or 0), "approved": int(approved or 0), "rejected": int(rejected or 0)}

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def create(
        self,
        *,
        session_id: str,
        storage_key: str,
        file_name: str,
        file_size: int,
        mime_type: str,
        uploaded_by: str,
        total_pages: Optional[int] = None,
        source_sha256: str = "",
    ) -> dict:
        now = _now()
        created_ts = time.time()
        mapping = {
            "contract_version": CONTRACT_VERSION,
            "session_id": session_id,
            "storage_key": storage_key,
            "file_name": file_name,
            "file_size": file_size,
            "mime_type": mime_type,
            "total_pages": total_pages,
            "source_sha256": source_sha256,
            "parse_status": ParseStatus.AWAITING_PARSE,
            "review_status": ReviewStatus.PENDING_REVIEW,
            "auto_approved": False,
            "uploaded_by": uploaded_by,
            "request_id": get_request_id() or "",
            "created_at": now,
            "updated_at": now,
            "created_ts": created_ts,
        }
        ok, current, target = transition_hset(
            self.r,
            key=session_key(session_id),
            mapping=encode_mapping(mapping),
            context="SESSION_CREATE",
        )
        if not ok:
            raise SessionTransitionError(session_id, current, target)

        pipe = self.r.pipeline()
        pipe.zadd(SESSIONS_INDEX, {session_id: created_ts})
        pipe.zadd(review_index_key(ReviewStatus.PENDING_REVIEW), {session_id: created_ts})
        pipe.execute()
        return self.require(session_id)

    def _transition(self, session_id: str, mapping: dict, context: str, *, raise_on_block: bool = True) -> bool:
        raw = self.get_raw(session_id)
        if not raw:
            raise SessionNotFoundError(session_id)

        payload = dict(mapping)
        payload["updated_at"] = _now()
        ok, current, target = transition_hset(
            self.r,
            key=session_key(session_id),
            mapping=encode_mapping(payload),
            context=context,
            request_id=get_request_id() or "",
        )
        if not ok:
            if raise_on_block:
                raise SessionTransitionError(session_id, current, target)
            return False

        if "review_status" in mapping and current and current.get("review_status") != target.get("review_status"):
            score = float(raw.get("created_ts") or time.time())
            pipe = self.r.pipeline()
            if current.get("review_status"):
                pipe.zrem(review_index_key(current["review_status"]), session_id)
            pipe.zadd(review_index_key(target["review_status"]), {session_id: score})
            pipe.execute()
        return True

    def set_fields(self, session_id: str, mapping: dict) -> None:
        """Non-status bookkeeping (job refs, progress notes)."""
        for field in ("parse_status", "second_pass_status", "review_status"):
            if field in mapping:
                raise ValueError(f"{field} must change through a named transition")
        if not self.exists(session_id):
            raise SessionNotFoundError(session_id)
        payload = dict(mapping)
        payload["updated_at"] = _now()
        self.r.hset(session_key(session_id), mapping=encode_mapping(payload))

    def set_job_ref(self, session_id: str, field: str, job_id: str) -> None:
        if field not in ("first_pass_job_id", "second_pass_job_id", "auto_commit_job_id"):
            raise ValueError(f"Unknown job reference field {field}")
        self.set_fields(session_id, {field: job_id})

    # parse -------------------------------------------------------------
    def mark_parsing(self, session_id: str, job_id: str = "") -> bool:
        return self._transition(
            session_id,
            {"parse_status": ParseStatus.PARSING, "first_pass_job_id": job_id},
            "PARSE_START",
            raise_on_block=False,
        )

    def mark_parsed(
        self,
        session_id: str,
        *,
        extracted_metadata: dict,
        confidence_score: int,
        final_confidence: int,
        routing_decision: str,
        parsed_parts: list,
        cutting_instructions: list,
        temp_files: list,
        quality_gate_reasons: list,
        auto_approved: bool,
        review_status: ReviewStatus,
        total_pages: Optional[int] = None,
        error_code: Optional[SessionErrorCode] = None,
        error_message: str = "",
        duplicate_check: Optional[dict] = None,
    ) -> None:
        mapping = {
            "parse_status": ParseStatus.PARSED,
            "extracted_metadata": extracted_metadata,
            "confidence_score": confidence_score,
            "final_confidence": final_confidence,
            "routing_decision": routing_decision,
            "parsed_parts": parsed_parts,
            "cutting_instructions": cutting_instructions,
            "temp_files": temp_files,
            "quality_gate_reasons": quality_gate_reasons,
            "auto_approved": auto_approved,
            "review_status": review_status,
            "error_code": error_code,
            "error_message": error_message,
            "duplicate_check": duplicate_check,
        }
        if total_pages is not None:
            mapping["total_pages"] = total_pages
        self._transition(session_id, mapping, "PARSE_COMPLETE")

    def mark_parse_failed(self, session_id: str, code: SessionErrorCode, message: str) -> bool:
        return self._transition(
            session_id,
            {"parse_status": ParseStatus.FAILED, "error_code": code, "error_message": message},
            "PARSE_FAILED",
            raise_on_block=False,
        )

    # second pass -------------------------------------------------------
    def try_queue_second_pass(
        self, session_id: str, job_id: str, is_job_live: Callable[[str], bool]
    ) -> SecondPassGate:
        """Compare-and-swap second_pass_status to QUEUED and attach job_id.

        Succeeds only when the first pass has finished and the status is in
        {None, QUEUED, FAILED}. A QUEUED session is re-claimable only once its job is
        no longer live and the previous claim is older than the dispatch grace window.
        """
        key = session_key(session_id)
        with self.r.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    if not pipe.exists(key):
                        pipe.unwatch()
                        raise SessionNotFoundError(session_id)
                    parse_status, current, claimed_job, claimed_ts = pipe.hmget(
                        key, ["parse_status", "second_pass_status", "second_pass_job_id", "second_pass_queued_ts"]
                    )
                    current = current or ""
                    if parse_status not in (ParseStatus.PARSED.value, ParseStatus.FAILED.value):
                        pipe.unwatch()
                        return SecondPassGate(False, current or None, f"First pass not finished (parse_status={parse_status})")
                    if current not in SECOND_PASS_ENQUEUE_ELIGIBLE:
                        pipe.unwatch()
                        return SecondPassGate(False, current, f"secondPassStatus is {current}")
                    if current == SecondPassStatus.QUEUED.value:
                        in_grace = time.time() - float(claimed_ts or 0) < SECOND_PASS_CLAIM_GRACE_SEC
                        if is_job_live(claimed_job) or in_grace:
                            pipe.unwatch()
                            return SecondPassGate(False, current, f"Second pass already queued as job {claimed_job}")

                    pipe.multi()
                    pipe.hset(
                        key,
                        mapping={
                            "second_pass_status": SecondPassStatus.QUEUED.value,
                            "second_pass_job_id": job_id,
                            "second_pass_queued_ts": str(time.time()),
                            "updated_at": _now(),
                        },
                    )
                    pipe.execute()
                    return SecondPassGate(True, current or None)
                except WatchError:
                    logger.info("second_pass_cas_retry session_id=%s", session_id)
                    continue

    def rollback_second_pass(self, session_id: str, reason: str) -> bool:
        return self._transition(
            session_id,
            {
                "second_pass_status": SecondPassStatus.FAILED,
                "error_code": SessionErrorCode.QUEUE_FAILED,
                "error_message": reason,
            },
            "SECOND_PASS_ROLLBACK",
            raise_on_block=False,
        )

    def mark_second_pass_running(self, session_id: str, job_id: str = "") -> bool:
        return self._transition(
            session_id,
            {"second_pass_status": SecondPassStatus.RUNNING, "second_pass_job_id": job_id},
            "SECOND_PASS_START",
            raise_on_block=False,
        )

    def mark_second_pass_verified(
        self,
        session_id: str,
        *,
        result: dict,
        extracted_metadata: dict,
        confidence_score: int,
        final_confidence: int,
        routing_decision: str,
        extra: Optional[dict] = None,
    ) -> None:
        """extra carries parts, gate reasons or a review decision produced by verification."""
        mapping = {
            "second_pass_status": SecondPassStatus.VERIFIED,
            "second_pass_result": result,
            "extracted_metadata": extracted_metadata,
            "confidence_score": confidence_score,
            "final_confidence": final_confidence,
            "routing_decision": routing_decision,
            "error_code": None,
            "error_message": "",
        }
        mapping.update(extra or {})
        self._transition(session_id, mapping, "SECOND_PASS_COMPLETE")

    def mark_second_pass_failed(self, session_id: str, code: SessionErrorCode, message: str) -> bool:
        return self._transition(
            session_id,
            {"second_pass_status": SecondPassStatus.FAILED, "error_code": code, "error_message": message},
            "SECOND_PASS_FAILED",
            raise_on_block=False,
        )

    # review ------------------------------------------------------------
    def mark_approved(self, session_id: str, *, reviewer: str, auto: bool = False) -> None:
        mapping = {
            "review_status": ReviewStatus.APPROVED,
            "reviewed_by": reviewer,
            "reviewed_at": _now(),
        }
        if auto:
            mapping["auto_approved"] = True
        self._transition(session_id, mapping, "REVIEW_APPROVE")

    def mark_rejected(self, session_id: str, *, reviewer: str, reason: str = "") -> None:
        self._transition(
            session_id,
            {
                "review_status": ReviewStatus.REJECTED,
                "reviewed_by": reviewer,
                "reviewed_at": _now(),
                "rejection_reason": reason,
            },
            "REVIEW_REJECT",
        )


def request_second_pass(store: SessionStore, queue_manager, session_id: str, *, requested_by: str = "") -> str:
    """Claim the session for a second pass and dispatch the job. Returns the job id."""
    job_id = uuid.uuid4().hex
    gate = store.try_queue_second_pass(session_id, job_id, queue_manager.is_live)
    if not gate.ok:
        incr("second_pass_enqueue_rejected_total")
        logger.info(
            "second_pass_enqueue_rejected session_id=%s current=%s reason=%s",
            session_id,
            gate.current,
            gate.reason,
        )
        raise SecondPassIneligibleError(session_id, gate.current, gate.reason)

    try:
        queue_manager.add(JOB_SECOND_PASS, {"session_id": session_id, "requested_by": requested_by}, job_id=job_id)
    except Exception as exc:
        store.rollback_second_pass(session_id, f"Failed to enqueue second pass: {exc}")
        log_stage(session_id=session_id, stage="second_pass_enqueue", event=FAILED, job_id=job_id, error=str(exc))
        raise

    incr("second_pass_enqueued_total")
    log_stage(session_id=session_id, stage="second_pass_enqueue", event=STARTED, job_id=job_id, user=requested_by)
    return job_id
