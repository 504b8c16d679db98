# User value: This file lets musicians drop in a score PDF and follow it until its parts are ready.
import hashlib
import logging
import os
import re
import unicodedata
import uuid

from fastapi import APIRouter, Depends, File, Header, HTTPException, UploadFile

from config import IDEMPOTENCY_TTL_SEC, SMART_UPLOAD_MAX_FILE_SIZE_MB, SMART_UPLOAD_STORAGE_PREFIX
from schemas.requests import SecondPassRequest
from schemas.responses import SessionQueuedResponse
from schemas.session_contract import ParseStatus, SecondPassStatus, SessionErrorCode
from services.auth import (
    PERMISSION_MUSIC_UPLOAD,
    PERMISSION_SYSTEM_CONFIG,
    require_permission,
    require_service_or_permission,
)
from services.deps import get_queue_manager, get_session_store, get_settings_service, get_storage
from services.duplicates import check_source_duplicate, compute_sha256, remember_source
from services.feature_flags import is_queue_orchestration_enabled
from services.job_definitions import JOB_PROCESS
from services.pdf_tools import PdfProcessingError, count_pages
from services.queue import QueueManager
from services.sessions import SecondPassIneligibleError, SessionNotFoundError, SessionStore, request_second_pass
from services.storage import StorageError
from utils.metrics import incr
from utils.request_id import get_request_id
from utils.stage_logging import COMPLETED, FAILED, SKIPPED, STARTED, log_stage

router = APIRouter(prefix="/smart-upload", tags=["smart-upload"])
logger = logging.getLogger("api.smart_upload")

ALLOWED_MIME_TYPES = {"application/pdf", "application/x-pdf"}
ALLOWED_EXTENSIONS = {".pdf"}


def _error(status_code: int, error_code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error_code": error_code, "error_message": message})


def safe_file_name(uploaded_name: str) -> str:
    base = os.path.basename(uploaded_name or "upload.pdf")
    stem, ext = os.path.splitext(base)
    stem = unicodedata.normalize("NFKC", stem)
    stem = re.sub(r"[^A-Za-z0-9]+", "_", stem).strip("_") or "upload"
    return f"{stem}{ext.lower() or '.pdf'}"


def normalize_idempotency_key(raw: str | None) -> str:
    if not raw:
        return ""
    key = re.sub(r"[^A-Za-z0-9_.:-]", "", str(raw).strip())
    return key[:128]


def idempotency_redis_key(email: str, idem_key: str) -> str:
    return f"smart_upload:idempotency:{email}:{idem_key}"


def derive_idempotent_session_id(email: str, idem_key: str) -> str:
    return hashlib.sha256(f"{email}|smart_upload|{idem_key}".encode("utf-8")).hexdigest()[:32]


def get_upload_size_bytes(file_obj) -> int:
    pos = file_obj.tell()
    file_obj.seek(0, os.SEEK_END)
    size = file_obj.tell()
    file_obj.seek(pos, os.SEEK_SET)
    return int(size)


def validate_upload(file_name: str, content_type: str | None, size: int) -> None:
    _, ext = os.path.splitext(file_name or "")
    if ext.lower() not in ALLOWED_EXTENSIONS:
        raise _error(400, "INVALID_FILE_TYPE", "Only .pdf files are accepted")
    if (content_type or "").split(";")[0].strip().lower() not in ALLOWED_MIME_TYPES:
        raise _error(400, "INVALID_FILE_TYPE", f"Unsupported content type {content_type or 'unknown'}")
    if size <= 0:
        raise _error(400, SessionErrorCode.PDF_INVALID.value, "Uploaded file is empty")
    if size > SMART_UPLOAD_MAX_FILE_SIZE_MB * 1024 * 1024:
        raise _error(413, SessionErrorCode.FILE_TOO_LARGE.value, f"File exceeds {SMART_UPLOAD_MAX_FILE_SIZE_MB} MB")


@router.post("/upload", status_code=202, response_model=SessionQueuedResponse)
async def upload(
    file: UploadFile = File(...),
    idempotency_key: str | None = Header(default=None, alias="X-Idempotency-Key"),
    user=Depends(require_permission(PERMISSION_MUSIC_UPLOAD)),
    store: SessionStore = Depends(get_session_store),
    queue_manager: QueueManager = Depends(get_queue_manager),
    storage=Depends(get_storage),
    settings_service=Depends(get_settings_service),
):
    email = user["email"].lower()
    request_id = get_request_id()

    if not settings_service.load().enabled:
        raise _error(503, "SMART_UPLOAD_DISABLED", "Smart upload is disabled by an administrator")

    idem_key = normalize_idempotency_key(idempotency_key)
    if idem_key:
        existing_id = store.r.get(idempotency_redis_key(email, idem_key))
        existing = store.get(existing_id) if existing_id else None
        if existing and existing.get("uploaded_by") == email:
            incr("smart_upload_idempotent_reused_total")
            log_stage(session_id=existing_id, stage="upload_idempotency", event=COMPLETED, user=email, reused=True)
            return SessionQueuedResponse(
                session_id=existing_id,
                status=existing.get("parse_status"),
                job_id=existing.get("first_pass_job_id") or None,
                reused=True,
            )

    validate_upload(file.filename, file.content_type, get_upload_size_bytes(file.file))
    data = await file.read()
    try:
        total_pages = count_pages(data)
    except PdfProcessingError as exc:
        incr("smart_upload_rejected_total", reason=exc.code.value)
        raise _error(400, exc.code.value, str(exc)) from exc

    session_id = derive_idempotent_session_id(email, idem_key) if idem_key else uuid.uuid4().hex
    if idem_key and store.exists(session_id):
        existing = store.get(session_id)
        store.r.set(idempotency_redis_key(email, idem_key), session_id, ex=IDEMPOTENCY_TTL_SEC)
        return SessionQueuedResponse(
            session_id=session_id,
            status=existing.get("parse_status"),
            job_id=existing.get("first_pass_job_id") or None,
            reused=True,
        )

    source_sha256 = compute_sha256(data)
    duplicate = check_source_duplicate(store, source_sha256)
    if duplicate.is_duplicate:
        existing = store.get(duplicate.matching_session_id) or {}
        incr("smart_upload_duplicate_skipped_total")
        log_stage(
            session_id=duplicate.matching_session_id,
            stage="upload_duplicate",
            event=SKIPPED,
            user=email,
            reason=duplicate.reason,
        )
        return SessionQueuedResponse(
            session_id=duplicate.matching_session_id,
            status=existing.get("parse_status") or ParseStatus.AWAITING_PARSE.value,
            job_id=existing.get("first_pass_job_id") or None,
            reused=True,
            duplicate_policy=duplicate.policy.value,
        )

    file_name = safe_file_name(file.filename)
    storage_key = f"{SMART_UPLOAD_STORAGE_PREFIX}/{session_id}/original/{file_name}"
    log_stage(session_id=session_id, stage="upload", event=STARTED, user=email, file_name=file_name, size=len(data))

    try:
        storage.upload(storage_key, data, content_type="application/pdf", metadata={"session_id": session_id, "uploaded_by": email})
    except StorageError as exc:
        log_stage(session_id=session_id, stage="upload", event=FAILED, user=email, error=str(exc))
        raise _error(503, "INFRA_STORAGE", "Failed to store upload") from exc

    store.create(
        session_id=session_id,
        storage_key=storage_key,
        file_name=file.filename or file_name,
        file_size=len(data),
        mime_type="application/pdf",
        uploaded_by=email,
        total_pages=total_pages,
        source_sha256=source_sha256,
    )
    remember_source(store.r, source_sha256, session_id)
    if idem_key:
        store.r.set(idempotency_redis_key(email, idem_key), session_id, ex=IDEMPOTENCY_TTL_SEC)

    job_id = None
    if is_queue_orchestration_enabled():
        try:
            job = queue_manager.add(JOB_PROCESS, {"session_id": session_id}, job_id=f"{session_id}-first-pass")
        except Exception as exc:
            store.mark_parse_failed(session_id, SessionErrorCode.QUEUE_FAILED, f"Failed to enqueue first pass: {exc}")
            log_stage(session_id=session_id, stage="upload", event=FAILED, user=email, error=str(exc))
            raise _error(503, "INFRA_QUEUE", "Failed to queue processing") from exc
        job_id = job.id
        store.set_job_ref(session_id, "first_pass_job_id", job_id)
    else:
        log_stage(session_id=session_id, stage="first_pass_enqueue", event=SKIPPED, reason="orchestration_disabled")

    incr("smart_upload_sessions_created_total")
    log_stage(session_id=session_id, stage="upload", event=COMPLETED, user=email, job_id=job_id, request_id=request_id)
    return SessionQueuedResponse(session_id=session_id, status=ParseStatus.AWAITING_PARSE.value, job_id=job_id)


@router.post("/second-pass", status_code=202, response_model=SessionQueuedResponse)
# User value: lets a reviewer or an internal service ask for a second look at a doubtful extraction.
def enqueue_second_pass(
    body: SecondPassRequest,
    user=Depends(require_service_or_permission(PERMISSION_MUSIC_UPLOAD, PERMISSION_SYSTEM_CONFIG)),
    store: SessionStore = Depends(get_session_store),
    queue_manager: QueueManager = Depends(get_queue_manager),
):
    try:
        job_id = request_second_pass(store, queue_manager, body.session_id, requested_by=user.get("email", ""))
    except SessionNotFoundError:
        raise _error(404, "SESSION_NOT_FOUND", "Session not found")
    except SecondPassIneligibleError as exc:
        raise _error(400, "SECOND_PASS_NOT_ELIGIBLE", str(exc))
    except Exception as exc:
        logger.error("second_pass_enqueue_failed session_id=%s error=%s", body.session_id, exc)
        raise _error(500, SessionErrorCode.QUEUE_FAILED.value, "Failed to enqueue second pass") from exc

    return SessionQueuedResponse(session_id=body.session_id, status=SecondPassStatus.QUEUED.value, job_id=job_id)


@router.get("/sessions/{session_id}")
def get_session(
    session_id: str,
    user=Depends(require_permission(PERMISSION_MUSIC_UPLOAD, PERMISSION_SYSTEM_CONFIG)),
    store: SessionStore = Depends(get_session_store),
    queue_manager: QueueManager = Depends(get_queue_manager),
):
    session = store.get(session_id)
    if session is None:
        raise _error(404, "SESSION_NOT_FOUND", "Session not found")

    first_job, second_job = session.get("first_pass_job_id"), session.get("second_pass_job_id")
    session["jobs"] = {
        "first_pass": queue_manager.get_job_status(first_job) if first_job else None,
        "second_pass": queue_manager.get_job_status(second_job) if second_job else None,
    }
    session["last_failure"] = (
        {"error_code": session.get("error_code"), "error_message": session.get("error_message")}
        if session.get("error_code")
        else None
    )
    return session
