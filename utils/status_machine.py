# User value: This file keeps upload sessions moving through well-defined steps so nothing gets stuck silently.
import logging
from typing import Optional

from redis.exceptions import WatchError

from schemas.session_contract import ParseStatus, ReviewStatus, SecondPassStatus

logger = logging.getLogger("api.status_machine")

_NONE = ""

_PARSE_ALLOWED = {
    _NONE: {ParseStatus.AWAITING_PARSE.value},
    ParseStatus.AWAITING_PARSE.value: {
        ParseStatus.AWAITING_PARSE.value,
        ParseStatus.PARSING.value,
        ParseStatus.FAILED.value,
    },
    ParseStatus.PARSING.value: {
        ParseStatus.PARSING.value,
        ParseStatus.PARSED.value,
        ParseStatus.FAILED.value,
    },
    ParseStatus.PARSED.value: {ParseStatus.PARSED.value},
    # queue retries re-enter PARSING after a failed attempt
    ParseStatus.FAILED.value: {ParseStatus.FAILED.value, ParseStatus.PARSING.value},
}

_SECOND_PASS_ALLOWED = {
    _NONE: {SecondPassStatus.QUEUED.value, SecondPassStatus.RUNNING.value},
    SecondPassStatus.QUEUED.value: {
        SecondPassStatus.QUEUED.value,
        SecondPassStatus.RUNNING.value,
        SecondPassStatus.FAILED.value,
    },
    SecondPassStatus.RUNNING.value: {
        SecondPassStatus.VERIFIED.value,
        SecondPassStatus.FAILED.value,
    },
    SecondPassStatus.VERIFIED.value: {SecondPassStatus.VERIFIED.value},
    SecondPassStatus.FAILED.value: {
        SecondPassStatus.FAILED.value,
        SecondPassStatus.QUEUED.value,
        SecondPassStatus.RUNNING.value,
    },
}

_REVIEW_ALLOWED = {
    _NONE: {ReviewStatus.PENDING_REVIEW.value},
    ReviewStatus.PENDING_REVIEW.value: {
        ReviewStatus.PENDING_REVIEW.value,
        ReviewStatus.APPROVED.value,
        ReviewStatus.REJECTED.value,
    },
    ReviewStatus.APPROVED.value: {ReviewStatus.APPROVED.value},
    ReviewStatus.REJECTED.value: {ReviewStatus.REJECTED.value, ReviewStatus.PENDING_REVIEW.value},
}

TRANSITION_TABLES = {
    "parse_status": _PARSE_ALLOWED,
    "second_pass_status": _SECOND_PASS_ALLOWED,
    "review_status": _REVIEW_ALLOWED,
}


def _norm(status) -> str:
    if status is None:
        return _NONE
    if hasattr(status, "value"):
        status = status.value
    return str(status).strip().upper()


def is_allowed_transition(field: str, current, target) -> bool:
    table = TRANSITION_TABLES.get(field)
    if table is None:
        raise KeyError(f"No transition table for field {field}")
    target_n = _norm(target)
    current_n = _norm(current)
    allowed = table.get(current_n)
    if allowed is None:
        return False
    return target_n in allowed


def blocked_transitions(current: dict, mapping: dict) -> list[tuple[str, str, str]]:
    """Return (field, current, target) for every status change in mapping the tables refuse."""
    blocked = []
    for field in TRANSITION_TABLES:
        if field not in mapping:
            continue
        cur = _norm(current.get(field))
        tgt = _norm(mapping.get(field))
        if not is_allowed_transition(field, cur, tgt):
            blocked.append((field, cur, tgt))
    return blocked


def transition_hset(
    r,
    *,
    key: str,
    mapping: dict,
    context: str,
    request_id: str = "",
) -> tuple[bool, Optional[dict], Optional[dict]]:
    """Apply mapping to the hash at key only if every status field change is allowed.

    Returns (ok, current_statuses, target_statuses). The check and the write run inside
    a WATCH/MULTI block so a concurrent writer forces a re-check instead of a lost update.
    """
    status_fields = [f for f in TRANSITION_TABLES if f in mapping]
    if not status_fields:
        r.hset(key, mapping=mapping)
        return True, None, None

    target = {f: _norm(mapping.get(f)) for f in status_fields}

    with r.pipeline() as pipe:
        while True:
            try:
                pipe.watch(key)
                values = pipe.hmget(key, status_fields)
                current = {f: _norm(v) for f, v in zip(status_fields, values)}
                blocked = blocked_transitions(current, mapping)
                if blocked:
                    pipe.unwatch()
                    for field, cur, tgt in blocked:
                        logger.warning(
                            "status_transition_blocked context=%s key=%s field=%s current=%s target=%s request_id=%s",
                            context,
                            key,
                            field,
                            cur or "NONE",
                            tgt or "NONE",
                            request_id,
                        )
                    return False, current, target
                pipe.multi()
                pipe.hset(key, mapping=mapping)
                pipe.execute()
                break
            except WatchError:
                logger.info("status_transition_retry context=%s key=%s", context, key)
                continue

    for field in status_fields:
        if current.get(field) and current[field] == target[field]:
            logger.info(
                "status_transition_idempotent context=%s key=%s field=%s status=%s request_id=%s",
                context,
                key,
                field,
                target[field],
                request_id,
            )

    return True, current, target