# User value: This file lets admins see jobs that gave up and send them back for another try.
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from services.auth import PERMISSION_SYSTEM_CONFIG, require_permission
from services.deps import get_queue_manager
from services.queue import JobNotFoundError, QueueManager, QueueOperationError

router = APIRouter(prefix="/dlq", tags=["dlq"])
logger = logging.getLogger("api.dlq")


@router.get("")
def list_dead_letter_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user=Depends(require_permission(PERMISSION_SYSTEM_CONFIG)),
    queue_manager: QueueManager = Depends(get_queue_manager),
):
    return {
        "jobs": queue_manager.list_dead_letter(limit=limit, offset=offset),
        "total": queue_manager.dead_letter_depth(),
    }


@router.post("/{dlq_job_id}/retry", status_code=202)
# User value: recovers a failed upload without asking the musician to upload again.
def retry_dead_letter_job(
    dlq_job_id: str,
    user=Depends(require_permission(PERMISSION_SYSTEM_CONFIG)),
    queue_manager: QueueManager = Depends(get_queue_manager),
):
    try:
        job = queue_manager.retry_dead_letter(dlq_job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail={"error_code": "DLQ_JOB_NOT_FOUND", "error_message": "Dead-letter job not found"})
    except QueueOperationError as exc:
        raise HTTPException(status_code=400, detail={"error_code": "QUEUE_OPERATION_FAILED", "error_message": str(exc)})

    logger.info("dlq_retry_requested dlq_job_id=%s new_job_id=%s by=%s", dlq_job_id, job.id, user.get("email"))
    return {"job_id": job.id, "queue": job.queue, "name": job.name, "status": job.status}
