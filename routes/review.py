# User value: This file gives reviewers one place to clear the queue of uploads waiting for a decision.
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from schemas.requests import ApproveRequest, BulkApproveRequest, BulkRejectRequest, RejectRequest
from schemas.responses import BulkApproveResponse, BulkRejectResponse, CommitResponse, PartPreviewResponse
from schemas.session_contract import ReviewStatus, SessionErrorCode
from services import review as review_service
from services.auth import PERMISSION_MUSIC_UPLOAD, require_permission
from services.commit import CommitError, DuplicateWorkError
from services.deps import get_queue_manager, get_session_store, get_storage
from services.job_definitions import JOB_BULK_APPROVE
from services.pdf_tools import PdfProcessingError
from services.queue import QueueManager
from services.sessions import SessionNotFoundError, SessionStore, SessionTransitionError
from services.storage import StorageNotFoundError

router = APIRouter(prefix="/smart-upload/review", tags=["review"])
logger = logging.getLogger("api.review")


def _error(status_code: int, error_code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error_code": error_code, "error_message": message})


@router.get("")
def list_review_sessions(
    status: ReviewStatus = Query(default=ReviewStatus.PENDING_REVIEW),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user=Depends(require_permission(PERMISSION_MUSIC_UPLOAD)),
    store: SessionStore = Depends(get_session_store),
):
    return review_service.list_sessions(store, status=status.value, page=page, limit=limit)


@router.post("/bulk-approve", response_model=BulkApproveResponse)
# User value: clears a batch of good extractions in one click; problem sessions are reported, not fatal.
def bulk_approve(
    body: BulkApproveRequest,
    background: bool = Query(default=False),
    user=Depends(require_permission(PERMISSION_MUSIC_UPLOAD)),
    store: SessionStore = Depends(get_session_store),
    queue_manager: QueueManager = Depends(get_queue_manager),
    storage=Depends(get_storage),
):
    if background:
        job = queue_manager.add(JOB_BULK_APPROVE, {"session_ids": body.session_ids, "reviewer": user["email"]})
        return JSONResponse(status_code=202, content={"job_id": job.id, "status": job.status})
    return review_service.bulk_approve(store, storage, body.session_ids, reviewer=user["email"])


@router.post("/bulk-reject", response_model=BulkRejectResponse)
def bulk_reject(
    body: BulkRejectRequest,
    user=Depends(require_permission(PERMISSION_MUSIC_UPLOAD)),
    store: SessionStore = Depends(get_session_store),
    queue_manager: QueueManager = Depends(get_queue_manager),
):
    return review_service.bulk_reject(store, queue_manager, body.session_ids, reviewer=user["email"], reason=body.reason)


@router.post("/{session_id}/approve", response_model=CommitResponse)
def approve_session(
    session_id: str,
    body: ApproveRequest | None = None,
    user=Depends(require_permission(PERMISSION_MUSIC_UPLOAD)),
    store: SessionStore = Depends(get_session_store),
    storage=Depends(get_storage),
):
    override = body.override_metadata.model_dump(exclude_none=True) if body and body.override_metadata else None
    try:
        result = review_service.approve(
            store,
            storage,
            session_id,
            reviewer=user["email"],
            override_metadata=override,
            duplicate_policy=body.duplicate_policy if body else None,
        )
    except SessionNotFoundError:
        raise _error(404, "SESSION_NOT_FOUND", "Session not found")
    except DuplicateWorkError as exc:
        raise _error(409, "DUPLICATE_WORK", str(exc))
    except (CommitError, SessionTransitionError) as exc:
        raise _error(400, "COMMIT_REJECTED", str(exc))

    return CommitResponse(success=True, session_id=session_id, **result.to_dict())


@router.post("/{session_id}/reject")
def reject_session(
    session_id: str,
    body: RejectRequest | None = None,
    user=Depends(require_permission(PERMISSION_MUSIC_UPLOAD)),
    store: SessionStore = Depends(get_session_store),
    queue_manager: QueueManager = Depends(get_queue_manager),
):
    try:
        return review_service.reject(
            store,
            queue_manager,
            session_id,
            reviewer=user["email"],
            reason=body.reason if body else "",
        )
    except SessionNotFoundError:
        raise _error(404, "SESSION_NOT_FOUND", "Session not found")
    except SessionTransitionError as exc:
        raise _error(400, "INVALID_TRANSITION", str(exc))


@router.get("/{session_id}/part-preview", response_model=PartPreviewResponse)
def part_preview(
    session_id: str,
    part_storage_key: str = Query(..., min_length=1),
    page: int = Query(default=0),
    user=Depends(require_permission(PERMISSION_MUSIC_UPLOAD)),
    store: SessionStore = Depends(get_session_store),
    storage=Depends(get_storage),
):
    try:
        return review_service.render_part_preview(store, storage, session_id, part_storage_key, page)
    except SessionNotFoundError:
        raise _error(404, "SESSION_NOT_FOUND", "Session not found")
    except (review_service.PartNotFoundError, StorageNotFoundError):
        raise _error(404, "PART_NOT_FOUND", "Part not found in session")
    except review_service.PreviewPageError as exc:
        raise _error(400, "INVALID_REQUEST", str(exc))
    except PdfProcessingError as exc:
        raise _error(422, exc.code.value, str(exc))
    except TimeoutError as exc:
        logger.warning("part_preview_timeout session_id=%s key=%s", session_id, part_storage_key)
        raise _error(503, SessionErrorCode.RENDER_FAILED.value, str(exc))
