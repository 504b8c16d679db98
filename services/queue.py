# User value: This file keeps background work durable: jobs retry with backoff and end up in a dead-letter queue instead of vanishing.
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from config import COMPLETED_HISTORY_LIMIT, DLQ_NAME, QUEUE_PREFIX
from services.job_definitions import BACKOFF_EXPONENTIAL, DEFAULT_DEFINITIONS, JobDefinition, queue_concurrency
from utils.metrics import incr
from utils.request_id import get_request_id

logger = logging.getLogger("api.queue")

JOB_KEY_PREFIX = "smart_upload:job"

JOB_STATUS_WAITING = "waiting"
JOB_STATUS_DELAYED = "delayed"
JOB_STATUS_ACTIVE = "active"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"
JOB_STATUS_DEAD_LETTERED = "dead_lettered"

LIVE_JOB_STATUSES = (JOB_STATUS_WAITING, JOB_STATUS_DELAYED, JOB_STATUS_ACTIVE)


class QueueOperationError(RuntimeError):
    pass


class JobNotFoundError(KeyError):
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso() -> str:
    return datetime.utcnow().isoformat()


@dataclass
class Job:
    id: str
    name: str
    queue: str
    payload: dict = field(default_factory=dict)
    attempts_made: int = 0
    max_attempts: int = 1
    backoff_type: str = BACKOFF_EXPONENTIAL
    backoff_delay_ms: int = 0
    status: str = JOB_STATUS_WAITING
    failed_reason: str = ""
    progress: int = 0
    step: str = ""
    message: str = ""
    request_id: str = ""
    created_at: str = ""
    updated_at: str = ""
    finished_at: str = ""

    @classmethod
    def from_hash(cls, data: dict) -> "Job":
        try:
            payload = json.loads(data.get("payload") or "{}")
        except ValueError:
            payload = {}
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            queue=data.get("queue", ""),
            payload=payload if isinstance(payload, dict) else {},
            attempts_made=int(data.get("attempts_made") or 0),
            max_attempts=int(data.get("max_attempts") or 1),
            backoff_type=data.get("backoff_type") or BACKOFF_EXPONENTIAL,
            backoff_delay_ms=int(data.get("backoff_delay_ms") or 0),
            status=data.get("status") or JOB_STATUS_WAITING,
            failed_reason=data.get("failed_reason") or "",
            progress=int(data.get("progress") or 0),
            step=data.get("step") or "",
            message=data.get("message") or "",
            request_id=data.get("request_id") or "",
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
            finished_at=data.get("finished_at") or "",
        )

    def to_hash(self) -> dict:
        out = asdict(self)
        out["payload"] = json.dumps(self.payload, ensure_ascii=False)
        return {k: ("" if v is None else v) for k, v in out.items()}

    def next_backoff_ms(self) -> int:
        if self.backoff_type == BACKOFF_EXPONENTIAL:
            return int(self.backoff_delay_ms * (2 ** max(0, self.attempts_made - 1)))
        return int(self.backoff_delay_ms)


class QueueManager:
    """Named durable queues on Redis.

    Per queue: a waiting list (push left, claim right), an active list plus a lease zset,
    a delayed zset scored by ready time, and completed/failed history lists. Jobs that
    exhaust their attempts move to the dead-letter list and stay there until retried.
    """

    def __init__(self, r, definitions: Optional[dict] = None, prefix: str = QUEUE_PREFIX, dlq_name: str = DLQ_NAME):
        self.r = r
        self.definitions: dict[str, JobDefinition] = dict(definitions or DEFAULT_DEFINITIONS)
        self.prefix = prefix
        self.dlq_name = dlq_name
        self.concurrency = queue_concurrency(self.definitions)
        self.queues = sorted(self.concurrency)

    # ------------------------------------------------------------------
    # keys
    # ------------------------------------------------------------------
    def _k(self, queue: str, part: str) -> str:
        return f"{self.prefix}:{queue}:{part}"

    @property
    def dlq_key(self) -> str:
        return f"{self.prefix}:{self.dlq_name}"

    @staticmethod
    def job_key(job_id: str) -> str:
        return f"{JOB_KEY_PREFIX}:{job_id}"

    def _check_queue(self, queue: str) -> None:
        if queue != self.dlq_name and queue not in self.concurrency:
            raise QueueOperationError(f"Unknown queue '{queue}'")

    # ------------------------------------------------------------------
    # producing
    # ------------------------------------------------------------------
    def add(self, name: str, payload: dict, job_id: Optional[str] = None) -> Job:
        definition = self.definitions.get(name)
        if definition is None:
            raise QueueOperationError(f"Unknown job name '{name}'")

        if job_id:
            existing = self.get_job(job_id)
            if existing and existing.status in LIVE_JOB_STATUSES:
                logger.info("queue_add_deduplicated job_id=%s name=%s status=%s", job_id, name, existing.status)
                return existing

        now = _iso()
        job = Job(
            id=job_id or uuid.uuid4().hex,
            name=name,
            queue=definition.queue,
            payload=dict(payload or {}),
            attempts_made=0,
            max_attempts=definition.max_attempts,
            backoff_type=definition.backoff_type,
            backoff_delay_ms=definition.backoff_delay_ms,
            status=JOB_STATUS_WAITING,
            request_id=get_request_id() or "",
            created_at=now,
            updated_at=now,
        )

        pipe = self.r.pipeline()
        pipe.delete(self.job_key(job.id))
        pipe.hset(self.job_key(job.id), mapping=job.to_hash())
        pipe.lpush(self._k(job.queue, "waiting"), job.id)
        pipe.execute()

        incr("queue_jobs_added_total", queue=job.queue, name=name)
        logger.info("queue_job_added job_id=%s name=%s queue=%s", job.id, name, job.queue)
        return job

    # ------------------------------------------------------------------
    # consuming
    # ------------------------------------------------------------------
    def promote_delayed(self, queue: str, now_ms: Optional[int] = None) -> int:
        now_ms = _now_ms() if now_ms is None else now_ms
        due = self.r.zrangebyscore(self._k(queue, "delayed"), 0, now_ms)
        promoted = 0
        for job_id in due:
            # only the caller that wins the ZREM re-queues the job
            if self.r.zrem(self._k(queue, "delayed"), job_id):
                pipe = self.r.pipeline()
                pipe.hset(self.job_key(job_id), mapping={"status": JOB_STATUS_WAITING, "updated_at": _iso()})
                pipe.lpush(self._k(queue, "waiting"), job_id)
                pipe.execute()
                promoted += 1
        return promoted

    def claim(self, queue: str, now_ms: Optional[int] = None) -> Optional[Job]:
        self._check_queue(queue)
        self.promote_delayed(queue, now_ms=now_ms)
        job_id = self.r.lmove(self._k(queue, "waiting"), self._k(queue, "active"), "RIGHT", "LEFT")
        if not job_id:
            return None

        pipe = self.r.pipeline()
        pipe.zadd(self._k(queue, "leases"), {job_id: _now_ms() if now_ms is None else now_ms})
        pipe.hset(self.job_key(job_id), mapping={"status": JOB_STATUS_ACTIVE, "updated_at": _iso()})
        pipe.hgetall(self.job_key(job_id))
        data = pipe.execute()[-1]
        return Job.from_hash(data)

    def _release_active(self, pipe, job: Job) -> None:
        pipe.lrem(self._k(job.queue, "active"), 1, job.id)
        pipe.zrem(self._k(job.queue, "leases"), job.id)

    def complete(self, job: Job, result: Any = None) -> None:
        now = _iso()
        pipe = self.r.pipeline()
        self._release_active(pipe, job)
        pipe.hset(
            self.job_key(job.id),
            mapping={
                "status": JOB_STATUS_COMPLETED,
                "progress": 100,
                "result": json.dumps(result, ensure_ascii=False, default=str),
                "updated_at": now,
                "finished_at": now,
            },
        )
        pipe.lpush(self._k(job.queue, "completed"), job.id)
        pipe.ltrim(self._k(job.queue, "completed"), 0, COMPLETED_HISTORY_LIMIT - 1)
        pipe.execute()
        incr("queue_jobs_completed_total", queue=job.queue, name=job.name)

    def fail(self, job: Job, reason: str, now_ms: Optional[int] = None) -> bool:
        """Record a failed attempt. Returns True when the job is final and was dead-lettered."""
        now_ms = _now_ms() if now_ms is None else now_ms
        attempts = int(self.r.hincrby(self.job_key(job.id), "attempts_made", 1))
        job.attempts_made = attempts
        job.failed_reason = reason
        now = _iso()

        pipe = self.r.pipeline()
        self._release_active(pipe, job)

        if attempts < job.max_attempts:
            delay = job.next_backoff_ms()
            pipe.zadd(self._k(job.queue, "delayed"), {job.id: now_ms + delay})
            pipe.hset(
                self.job_key(job.id),
                mapping={"status": JOB_STATUS_DELAYED, "failed_reason": reason, "updated_at": now},
            )
            pipe.execute()
            job.status = JOB_STATUS_DELAYED
            incr("queue_jobs_retried_total", queue=job.queue, name=job.name)
            logger.warning(
                "queue_job_retry_scheduled job_id=%s name=%s attempt=%s max_attempts=%s delay_ms=%s reason=%s",
                job.id,
                job.name,
                attempts,
                job.max_attempts,
                delay,
                reason,
            )
            return False

        entry = {
            "id": uuid.uuid4().hex,
            "original_job_id": job.id,
            "original_queue": job.queue,
            "original_name": job.name,
            "original_data": job.payload,
            "failed_reason": reason,
            "failed_at": now,
            "attempts_made": attempts,
        }
        pipe.hset(
            self.job_key(job.id),
            mapping={
                "status": JOB_STATUS_DEAD_LETTERED,
                "failed_reason": reason,
                "updated_at": now,
                "finished_at": now,
            },
        )
        pipe.lpush(self._k(job.queue, "failed"), job.id)
        pipe.ltrim(self._k(job.queue, "failed"), 0, COMPLETED_HISTORY_LIMIT - 1)
        pipe.lpush(self.dlq_key, json.dumps(entry, ensure_ascii=False))
        pipe.execute()
        job.status = JOB_STATUS_DEAD_LETTERED
        incr("queue_jobs_dead_lettered_total", queue=job.queue, name=job.name)
        logger.error(
            "queue_job_dead_lettered job_id=%s name=%s attempts=%s reason=%s",
            job.id,
            job.name,
            attempts,
            reason,
        )
        return True

    def update_progress(self, job_id: str, percent: int, step: str = "", message: str = "") -> None:
        self.r.hset(
            self.job_key(job_id),
            mapping={
                "progress": max(0, min(100, int(percent))),
                "step": step,
                "message": message,
                "updated_at": _iso(),
            },
        )

    def requeue_stalled(self, queue: str, lease_sec: int, now_ms: Optional[int] = None) -> int:
        now_ms = _now_ms() if now_ms is None else now_ms
        stalled = self.r.zrangebyscore(self._k(queue, "leases"), 0, now_ms - lease_sec * 1000)
        requeued = 0
        for job_id in stalled:
            if not self.r.zrem(self._k(queue, "leases"), job_id):
                continue
            pipe = self.r.pipeline()
            pipe.lrem(self._k(queue, "active"), 1, job_id)
            pipe.hset(self.job_key(job_id), mapping={"status": JOB_STATUS_WAITING, "updated_at": _iso()})
            pipe.lpush(self._k(queue, "waiting"), job_id)
            pipe.execute()
            requeued += 1
            logger.warning("queue_job_stalled_requeued job_id=%s queue=%s", job_id, queue)
        return requeued

    # ------------------------------------------------------------------
    # introspection
    # ------------------------------------------------------------------
    def get_job(self, job_id: str) -> Optional[Job]:
        data = self.r.hgetall(self.job_key(job_id))
        if not data:
            return None
        return Job.from_hash(data)

    def get_job_status(self, job_id: str) -> Optional[dict]:
        job = self.get_job(job_id)
        if job is None:
            return None
        return {
            "id": job.id,
            "name": job.name,
            "queue": job.queue,
            "status": job.status,
            "progress": job.progress,
            "step": job.step or None,
            "message": job.message or None,
            "attempts_made": job.attempts_made,
            "max_attempts": job.max_attempts,
            "failed_reason": job.failed_reason or None,
            "created_at": job.created_at or None,
            "updated_at": job.updated_at or None,
            "finished_at": job.finished_at or None,
        }

    def is_live(self, job_id: str | None) -> bool:
        if not job_id:
            return False
        status = self.r.hget(self.job_key(job_id), "status")
        return status in LIVE_JOB_STATUSES

    def get_queue_stats(self, queue: str) -> dict:
        self._check_queue(queue)
        pipe = self.r.pipeline(transaction=False)
        pipe.llen(self._k(queue, "waiting"))
        pipe.llen(self._k(queue, "active"))
        pipe.llen(self._k(queue, "completed"))
        pipe.llen(self._k(queue, "failed"))
        pipe.zcard(self._k(queue, "delayed"))
        waiting, active, completed, failed, delayed = pipe.execute()
        return {
            "queue": queue,
            "waiting": int(waiting or 0),
            "active": int(active or 0),
            "completed": int(completed or 0),
            "failed": int(failed or 0),
            "delayed": int(delayed or 0),
        }

    def get_all_queue_stats(self) -> list[dict]:
        return [self.get_queue_stats(q) for q in self.queues]

    def dead_letter_depth(self) -> int:
        return int(self.r.llen(self.dlq_key) or 0)

    # ------------------------------------------------------------------
    # dead letter
    # ------------------------------------------------------------------
    def list_dead_letter(self, limit: int = 50, offset: int = 0) -> list[dict]:
        rows = self.r.lrange(self.dlq_key, offset, offset + max(0, limit - 1))
        out = []
        for raw in rows:
            try:
                out.append(json.loads(raw))
            except ValueError:
                logger.error("dlq_entry_unreadable raw=%s", raw[:200])
        return out

    def _find_dead_letter(self, dlq_job_id: str) -> tuple[Optional[str], Optional[dict]]:
        for raw in self.r.lrange(self.dlq_key, 0, -1):
            try:
                entry = json.loads(raw)
            except ValueError:
                continue
            if entry.get("id") == dlq_job_id:
                return raw, entry
        return None, None

    def retry_dead_letter(self, dlq_job_id: str) -> Job:
        raw, entry = self._find_dead_letter(dlq_job_id)
        if entry is None:
            raise JobNotFoundError(dlq_job_id)

        # LREM first so two concurrent retries cannot both re-inject the entry
        if not self.r.lrem(self.dlq_key, 1, raw):
            raise JobNotFoundError(dlq_job_id)

        try:
            job = self.add(entry["original_name"], entry.get("original_data") or {})
        except Exception:
            self.r.rpush(self.dlq_key, raw)
            raise

        self.r.hset(self.job_key(job.id), mapping={"retry_of_job_id": entry.get("original_job_id", "")})
        incr("queue_dlq_retried_total", queue=job.queue, name=job.name)
        logger.info(
            "dlq_job_retried dlq_job_id=%s original_job_id=%s new_job_id=%s queue=%s",
            dlq_job_id,
            entry.get("original_job_id"),
            job.id,
            job.queue,
        )
        return job

    def clear_queue(self, queue: str) -> int:
        if queue == self.dlq_name:
            raise QueueOperationError(
                "Clearing the dead-letter queue is not allowed; retry entries individually"
            )
        self._check_queue(queue)
        keys = [self._k(queue, part) for part in ("waiting", "completed", "failed")]
        delayed_key = self._k(queue, "delayed")
        pipe = self.r.pipeline()
        for key in keys:
            pipe.llen(key)
        pipe.zcard(delayed_key)
        counts = pipe.execute()
        keys.append(delayed_key)
        self.r.delete(*keys)
        removed = sum(int(c or 0) for c in counts)
        logger.warning("queue_cleared queue=%s removed=%s", queue, removed)
        return removed
