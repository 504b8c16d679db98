# User value: This file validates reviewer and pipeline requests before any session state is touched.
from pydantic import BaseModel, Field
from typing import List, Literal, Optional


class SecondPassRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)


class OverrideMetadata(BaseModel):
    # User value: lets reviewers fix title/composer before the piece lands in the library.
    title: Optional[str] = Field(default=None, max_length=300)
    composer: Optional[str] = Field(default=None, max_length=200)
    arranger: Optional[str] = Field(default=None, max_length=200)
    publisher: Optional[str] = Field(default=None, max_length=200)


class ApproveRequest(BaseModel):
    override_metadata: Optional[OverrideMetadata] = None
    # how to commit a session that matches an existing piece
    duplicate_policy: Optional[Literal["NEW_PIECE", "VERSION_UPDATE"]] = None


class RejectRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


class BulkApproveRequest(BaseModel):
    session_ids: List[str] = Field(..., min_length=1, max_length=100)


class BulkRejectRequest(BaseModel):
    session_ids: List[str] = Field(..., min_length=1, max_length=100)
    reason: str = Field(default="", max_length=500)


class TaskModelUpdate(BaseModel):
    provider: Optional[Literal["openai", "anthropic", "gemini", "openrouter", "custom"]] = None
    model: Optional[str] = Field(default=None, min_length=1, max_length=200)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=32000)
    top_p: Optional[float] = Field(default=None, gt=0.0, le=1.0)


class SettingsUpdateRequest(BaseModel):
    # User value: partial updates so admins can tune one knob without resending everything.
    enabled: Optional[bool] = None
    auto_approve_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    skip_parse_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    autonomous_approval_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    max_pages_per_part: Optional[int] = Field(default=None, ge=1, le=500)
    budget_max_llm_calls: Optional[int] = Field(default=None, ge=0)
    budget_max_input_tokens: Optional[int] = Field(default=None, ge=0)
    first_pass: Optional[TaskModelUpdate] = None
    verification: Optional[TaskModelUpdate] = None
    adjudication: Optional[TaskModelUpdate] = None
