# User value: This file states, in one place, how hard each kind of background job retries before it needs a human.
from dataclasses import dataclass

from config import CLEANUP_QUEUE, FIRST_PASS_QUEUE, SECOND_PASS_QUEUE

BACKOFF_FIXED = "fixed"
BACKOFF_EXPONENTIAL = "exponential"

JOB_PROCESS = "smart_upload.process"
JOB_SECOND_PASS = "smart_upload.second_pass"
JOB_AUTO_COMMIT = "smart_upload.auto_commit"
JOB_CLEANUP = "smart_upload.cleanup"
JOB_BULK_APPROVE = "smart_upload.bulk_approve"


@dataclass(frozen=True)
class JobDefinition:
    name: str
    queue: str
    max_attempts: int
    backoff_type: str
    backoff_delay_ms: int
    concurrency: int = 1


DEFAULT_DEFINITIONS = {
    JOB_PROCESS: JobDefinition(JOB_PROCESS, FIRST_PASS_QUEUE, 3, BACKOFF_EXPONENTIAL, 5000, concurrency=2),
    JOB_SECOND_PASS: JobDefinition(JOB_SECOND_PASS, SECOND_PASS_QUEUE, 3, BACKOFF_EXPONENTIAL, 5000, concurrency=2),
    JOB_AUTO_COMMIT: JobDefinition(JOB_AUTO_COMMIT, CLEANUP_QUEUE, 3, BACKOFF_EXPONENTIAL, 5000, concurrency=1),
    JOB_CLEANUP: JobDefinition(JOB_CLEANUP, CLEANUP_QUEUE, 1, BACKOFF_FIXED, 1000, concurrency=1),
    # bulk work is serialized to bound resource use
    JOB_BULK_APPROVE: JobDefinition(JOB_BULK_APPROVE, CLEANUP_QUEUE, 1, BACKOFF_FIXED, 1000, concurrency=1),
}


def queue_concurrency(definitions: dict) -> dict[str, int]:
    """A queue runs with the highest concurrency any of its job types asks for."""
    out: dict[str, int] = {}
    for definition in definitions.values():
        out[definition.queue] = max(out.get(definition.queue, 1), definition.concurrency)
    return out
