# User value: This file keeps every upload session status readable and consistent for reviewers.
from enum import Enum

CONTRACT_VERSION = "2026-10-01-smart-upload"


class ParseStatus(str, Enum):
    AWAITING_PARSE = "AWAITING_PARSE"
    PARSING = "PARSING"
    PARSED = "PARSED"
    FAILED = "FAILED"


class SecondPassStatus(str, Enum):
    # An absent second pass is stored as "" and surfaced as None.
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


class ReviewStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RoutingDecision(str, Enum):
    AUTO_APPROVE = "auto_approve"
    MANUAL_REVIEW = "manual_review"
    NO_PARSE_SECOND_PASS = "no_parse_second_pass"


class DuplicatePolicy(str, Enum):
    NEW_PIECE = "NEW_PIECE"
    SKIP_DUPLICATE = "SKIP_DUPLICATE"
    VERSION_UPDATE = "VERSION_UPDATE"
    EXCEPTION_REVIEW = "EXCEPTION_REVIEW"


class SessionErrorCode(str, Enum):
    # upload / intake
    PDF_INVALID = "PDF_INVALID"
    PDF_ENCRYPTED = "PDF_ENCRYPTED"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    # storage
    STORAGE_DOWNLOAD_FAILED = "STORAGE_DOWNLOAD_FAILED"
    STORAGE_UPLOAD_FAILED = "STORAGE_UPLOAD_FAILED"
    # rendering / splitting
    RENDER_FAILED = "RENDER_FAILED"
    SPLIT_FAILED = "SPLIT_FAILED"
    # model
    MODEL_TIMEOUT = "MODEL_TIMEOUT"
    MODEL_SCHEMA_INVALID = "MODEL_SCHEMA_INVALID"
    MODEL_RATE_LIMITED = "MODEL_RATE_LIMITED"
    MODEL_AUTH_FAILED = "MODEL_AUTH_FAILED"
    MODEL_SERVER_ERROR = "MODEL_SERVER_ERROR"
    MODEL_ENDPOINT_UNREACHABLE = "MODEL_ENDPOINT_UNREACHABLE"
    MODEL_EMPTY_RESPONSE = "MODEL_EMPTY_RESPONSE"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    BUDGET_EXHAUSTED = "BUDGET_EXHAUSTED"
    # pipeline
    SECOND_PASS_FAILED = "SECOND_PASS_FAILED"
    QUEUE_FAILED = "QUEUE_FAILED"
    COMMIT_FAILED = "COMMIT_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# A new second-pass job may only be queued from these states ("" == never queued).
SECOND_PASS_ENQUEUE_ELIGIBLE = ("", SecondPassStatus.QUEUED.value, SecondPassStatus.FAILED.value)

# Stored as JSON strings inside the session hash.
JSON_FIELDS = (
    "extracted_metadata",
    "parsed_parts",
    "cutting_instructions",
    "temp_files",
    "quality_gate_reasons",
    "second_pass_result",
    "duplicate_check",
)

BOOL_FIELDS = ("auto_approved",)

INT_FIELDS = ("file_size", "confidence_score", "final_confidence", "total_pages")
