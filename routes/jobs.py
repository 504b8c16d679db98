# User value: This file lets the upload screen poll a background job and show real progress.
# routes/jobs.py
from fastapi import APIRouter, Depends, HTTPException

from schemas.responses import JobStatusResponse
from services.auth import verify_google_token
from services.deps import get_queue_manager
from services.queue import QueueManager

router = APIRouter()


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
# User value: supports progress polling so users are not left guessing while a score is processed.
def get_job_status(
    job_id: str,
    user=Depends(verify_google_token),
    queue_manager: QueueManager = Depends(get_queue_manager),
):
    status = queue_manager.get_job_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail={"error_code": "JOB_NOT_FOUND", "error_message": "Job not found"})
    return status
