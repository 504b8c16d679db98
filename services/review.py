# User value: This file is the reviewer's desk: see what needs attention, approve or reject in bulk, and preview cut parts.
import base64
import logging
import math
from typing import Optional

from config import SMART_UPLOAD_PDF_TIMEOUT_MS, SMART_UPLOAD_PREVIEW_SCALE
from schemas.session_contract import ReviewStatus
from services.ai.structured_output import with_timeout
from services.commit import CommitResult, DuplicateWorkError, commit_session
from services.job_definitions import JOB_CLEANUP
from services.pdf_tools import render_page
from services.quality_gates import is_forbidden_label
from services.sessions import SessionNotFoundError, SessionStore
from utils.metrics import incr
from utils.stage_logging import COMPLETED, log_stage

logger = logging.getLogger("api.review")

MAX_PAGE_SIZE = 100

SKIP_NOT_FOUND = "Session not found"
SKIP_NO_TITLE = "No title in extracted metadata"
SKIP_IDEMPOTENT = "Already committed (idempotent)"


class PartNotFoundError(LookupError):
    pass


class PreviewPageError(ValueError):
    pass


def _summary(session: dict) -> dict:
    metadata = session.get("extracted_metadata") or {}
    return {
        "session_id": session.get("session_id"),
        "file_name": session.get("file_name"),
        "title": metadata.get("title"),
        "composer": metadata.get("composer"),
        "parse_status": session.get("parse_status"),
        "second_pass_status": session.get("second_pass_status"),
        "review_status": session.get("review_status"),
        "routing_decision": session.get("routing_decision"),
        "confidence_score": session.get("confidence_score"),
        "final_confidence": session.get("final_confidence"),
        "auto_approved": session.get("auto_approved"),
        "parts": len(session.get("parsed_parts") or []),
        "quality_gate_reasons": session.get("quality_gate_reasons") or [],
        "duplicate_check": session.get("duplicate_check"),
        "error_code": session.get("error_code"),
        "error_message": session.get("error_message"),
        "created_at": session.get("created_at"),
        "updated_at": session.get("updated_at"),
    }


def list_sessions(store: SessionStore, status: str = ReviewStatus.PENDING_REVIEW.value, page: int = 1, limit: int = 20) -> dict:
    review_status = ReviewStatus(status)
    page = max(1, int(page))
    limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
    sessions, total = store.list_by_review_status(review_status, (page - 1) * limit, limit)
    return {
        "sessions": [_summary(s) for s in sessions],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
        "counts": store.review_counts(),
    }


def approve(
    store: SessionStore,
    storage,
    session_id: str,
    *,
    reviewer: str,
    override_metadata: Optional[dict] = None,
    duplicate_policy: Optional[str] = None,
) -> CommitResult:
    return commit_session(
        store,
        storage,
        session_id,
        reviewer=reviewer,
        override_metadata=override_metadata,
        duplicate_policy=duplicate_policy,
    )


def reject(store: SessionStore, queue_manager, session_id: str, *, reviewer: str, reason: str = "") -> dict:
    session = store.require(session_id)
    store.mark_rejected(session_id, reviewer=reviewer, reason=reason)

    cleanup_job_id = None
    temp_files = session.get("temp_files") or []
    if temp_files:
        job = queue_manager.add(JOB_CLEANUP, {"session_id": session_id, "keys": temp_files})
        cleanup_job_id = job.id

    incr("review_rejected_total")
    log_stage(session_id=session_id, stage="review", event=COMPLETED, user=reviewer, decision="rejected")
    return {
        "success": True,
        "session_id": session_id,
        "review_status": ReviewStatus.REJECTED.value,
        "cleanup_job_id": cleanup_job_id,
    }


def _unique(ids: list[str]) -> list[str]:
    return list(dict.fromkeys(i for i in ids if i))


def bulk_approve(store: SessionStore, storage, session_ids: list[str], *, reviewer: str) -> dict:
    approved_ids = []
    skipped = []
    for session_id in _unique(session_ids):
        session = store.get(session_id)
        if session is None:
            skipped.append({"session_id": session_id, "reason": SKIP_NOT_FOUND})
            continue
        title = (session.get("extracted_metadata") or {}).get("title")
        if is_forbidden_label(title):
            skipped.append({"session_id": session_id, "reason": SKIP_NO_TITLE})
            continue
        try:
            result = commit_session(store, storage, session_id, reviewer=reviewer)
        except DuplicateWorkError as exc:
            skipped.append({"session_id": session_id, "reason": exc.check.reason})
            continue
        except Exception as exc:
            logger.warning("bulk_approve_item_failed session_id=%s error=%s", session_id, exc)
            skipped.append({"session_id": session_id, "reason": f"Import error: {exc}"})
            continue
        if result.was_idempotent:
            skipped.append({"session_id": session_id, "reason": SKIP_IDEMPOTENT})
            continue
        approved_ids.append(session_id)

    incr("review_bulk_approved_total", value=float(len(approved_ids)))
    logger.info(
        "bulk_approve_done reviewer=%s approved=%s skipped=%s",
        reviewer,
        len(approved_ids),
        len(skipped),
    )
    return {
        "approved": len(approved_ids),
        "skipped": len(skipped),
        "approved_ids": approved_ids,
        "skipped_details": skipped,
    }


def bulk_reject(store: SessionStore, queue_manager, session_ids: list[str], *, reviewer: str, reason: str = "") -> dict:
    rejected_ids = []
    skipped = []
    for session_id in _unique(session_ids):
        try:
            reject(store, queue_manager, session_id, reviewer=reviewer, reason=reason)
        except SessionNotFoundError:
            skipped.append({"session_id": session_id, "reason": SKIP_NOT_FOUND})
            continue
        except Exception as exc:
            logger.warning("bulk_reject_item_failed session_id=%s error=%s", session_id, exc)
            skipped.append({"session_id": session_id, "reason": f"Reject error: {exc}"})
            continue
        rejected_ids.append(session_id)
    return {
        "rejected": len(rejected_ids),
        "skipped": len(skipped),
        "rejected_ids": rejected_ids,
        "skipped_details": skipped,
    }


def render_part_preview(store: SessionStore, storage, session_id: str, part_storage_key: str, page: int = 0) -> dict:
    session = store.require(session_id)
    keys = {p.get("storage_key") for p in session.get("parsed_parts") or []}
    if not part_storage_key or part_storage_key not in keys:
        raise PartNotFoundError("Part not found in session")
    if page < 0:
        raise PreviewPageError(f"Page {page} out of range")

    data = storage.download(part_storage_key)
    try:
        png, total_pages = with_timeout(
            lambda: render_page(data, page, scale=SMART_UPLOAD_PREVIEW_SCALE), SMART_UPLOAD_PDF_TIMEOUT_MS
        )
    except IndexError as exc:
        raise PreviewPageError(f"Page {page} out of range") from exc
    return {
        "image_base64": base64.b64encode(png).decode("ascii"),
        "total_pages": total_pages,
    }
