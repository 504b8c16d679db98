import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from utils.request_id import get_request_id

logger = logging.getLogger("api.stage")

STARTED = "STARTED"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
SKIPPED = "SKIPPED"


def _norm(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_norm(v) for v in value]
    return str(value)


def log_stage(
    *,
    session_id: str,
    stage: str,
    event: str,
    job_id: str | None = None,
    user: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    payload = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "session_id": session_id,
        "stage": stage,
        "event": event.upper(),
    }

    if job_id:
        payload["job_id"] = job_id
    if user:
        payload["user"] = user
    if error:
        payload["error"] = error

    request_id = get_request_id()
    if request_id and "request_id" not in extra:
        payload["request_id"] = request_id

    for key, value in extra.items():
        norm = _norm(value)
        if norm is not None:
            payload[key] = norm

    msg = json.dumps(payload, ensure_ascii=False)
    if error or payload["event"] == FAILED:
        logger.error("stage_event %s", msg)
    else:
        logger.info("stage_event %s", msg)
