# User value: This file keeps API responses stable so the review UI can always explain session state.
from pydantic import BaseModel, Field
from typing import List, Optional


class SessionQueuedResponse(BaseModel):
    # User value: confirms a session is accepted so users can poll its progress.
    session_id: str
    status: str
    job_id: Optional[str] = None
    reused: bool = False
    duplicate_policy: Optional[str] = None


class CommitResponse(BaseModel):
    success: bool = True
    session_id: str
    piece_id: str
    title: str
    parts_committed: int = Field(ge=0)
    was_idempotent: bool
    version_of: Optional[str] = None


class SkippedSession(BaseModel):
    session_id: str
    reason: str


class BulkApproveResponse(BaseModel):
    approved: int = Field(ge=0)
    skipped: int = Field(ge=0)
    approved_ids: List[str] = Field(default_factory=list)
    skipped_details: List[SkippedSession] = Field(default_factory=list)


class BulkRejectResponse(BaseModel):
    rejected: int = Field(ge=0)
    skipped: int = Field(ge=0)
    rejected_ids: List[str] = Field(default_factory=list)
    skipped_details: List[SkippedSession] = Field(default_factory=list)


class PartPreviewResponse(BaseModel):
    # User value: lets reviewers eyeball a split part before approving it.
    image_base64: str
    total_pages: int = Field(ge=0)


class QueueStats(BaseModel):
    queue: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class JobStatusResponse(BaseModel):
    id: str
    name: str
    queue: str
    status: str
    progress: int = Field(default=0, ge=0, le=100)
    step: Optional[str] = None
    message: Optional[str] = None
    attempts_made: int = 0
    max_attempts: int = 1
    failed_reason: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    finished_at: Optional[str] = None
