# User value: This file runs the background stages so uploads keep moving without anyone watching the API.
# worker.py
import logging
import os
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), ".env"))

from config import SERVICE_NAME, WORKER_CLIENT_NAME, WORKER_POLL_INTERVAL_SEC, WORKER_STALLED_LEASE_SEC
from services import review as review_service
from services.ai.registry import ProviderRegistry
from services.job_definitions import JOB_AUTO_COMMIT, JOB_BULK_APPROVE, JOB_CLEANUP, JOB_PROCESS, JOB_SECOND_PASS
from services.pipeline import SmartUploadPipeline
from services.queue import Job, QueueManager, QueueOperationError
from services.redis_client import create_redis
from services.sessions import SessionStore
from services.settings import SettingsService
from services.storage import create_storage
from utils.json_logging import configure_json_logging
from utils.metrics import incr, observe_ms
from utils.request_id import request_id_scope

logger = logging.getLogger("worker.main")

STALLED_SWEEP_INTERVAL_SEC = 30


class Worker:
    """Polls every queue and runs claimed jobs on a per-queue thread pool.

    A queue never has more jobs in flight than its configured concurrency.
    """

    def __init__(
        self,
        queue_manager: QueueManager,
        pipeline: SmartUploadPipeline,
        *,
        poll_interval: float = WORKER_POLL_INTERVAL_SEC,
        lease_sec: int = WORKER_STALLED_LEASE_SEC,
    ):
        self.queue_manager = queue_manager
        self.pipeline = pipeline
        self.poll_interval = poll_interval
        self.lease_sec = lease_sec
        self.stop_event = threading.Event()
        self._lock = threading.Lock()
        self._in_flight = {queue: 0 for queue in queue_manager.queues}
        self._executors: dict[str, ThreadPoolExecutor] = {}
        self._last_sweep = 0.0
        self.handlers = {
            JOB_PROCESS: self._run_process,
            JOB_SECOND_PASS: self._run_second_pass,
            JOB_AUTO_COMMIT: self._run_auto_commit,
            JOB_CLEANUP: self._run_cleanup,
            JOB_BULK_APPROVE: self._run_bulk_approve,
        }

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------
    def _run_process(self, job: Job):
        return self.pipeline.run_first_pass(job.payload["session_id"], job.id)

    def _run_second_pass(self, job: Job):
        return self.pipeline.run_second_pass(job.payload["session_id"], job.id)

    def _run_auto_commit(self, job: Job):
        return self.pipeline.run_auto_commit(job.payload["session_id"], job.id)

    def _run_cleanup(self, job: Job):
        return self.pipeline.run_cleanup(job.payload.get("session_id", ""), job.payload.get("keys") or [], job.id)

    def _run_bulk_approve(self, job: Job):
        return review_service.bulk_approve(
            self.pipeline.store,
            self.pipeline.storage,
            job.payload.get("session_ids") or [],
            reviewer=job.payload.get("reviewer") or "",
        )

    def handle(self, job: Job):
        handler = self.handlers.get(job.name)
        if handler is None:
            raise QueueOperationError(f"No handler for job name '{job.name}'")
        return handler(job)

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------
    def process_job(self, job: Job) -> bool:
        """Run one claimed job and settle it on the queue. Returns True on success."""
        with request_id_scope(job.request_id):
            started = time.monotonic()
            logger.info("worker_job_started job_id=%s name=%s attempt=%s", job.id, job.name, job.attempts_made + 1)
            try:
                result = self.handle(job)
            except Exception as exc:
                logger.exception("worker_job_failed job_id=%s name=%s error=%s", job.id, job.name, exc)
                final = self.queue_manager.fail(job, f"{exc.__class__.__name__}: {exc}")
                incr("worker_jobs_failed_total", name=job.name, final=final)
                session_id = job.payload.get("session_id")
                if final and session_id:
                    try:
                        self.pipeline.handle_final_failure(job.name, session_id, exc)
                    except Exception as record_exc:
                        logger.error(
                            "worker_final_failure_record_failed job_id=%s session_id=%s error=%s",
                            job.id,
                            session_id,
                            record_exc,
                        )
                return False
            finally:
                observe_ms("worker_job_ms", (time.monotonic() - started) * 1000, name=job.name)

            try:
                self.queue_manager.complete(job, result)
            except Exception as exc:
                # the job keeps its lease; the stalled sweep hands it out again
                logger.exception("worker_job_complete_failed job_id=%s name=%s error=%s", job.id, job.name, exc)
                incr("worker_jobs_complete_failed_total", name=job.name)
                return False
            incr("worker_jobs_completed_total", name=job.name)
            logger.info("worker_job_completed job_id=%s name=%s", job.id, job.name)
            return True

    def _executor(self, queue: str) -> ThreadPoolExecutor:
        if queue not in self._executors:
            self._executors[queue] = ThreadPoolExecutor(
                max_workers=self.queue_manager.concurrency[queue],
                thread_name_prefix=f"worker-{queue}",
            )
        return self._executors[queue]

    def _release(self, queue: str) -> None:
        with self._lock:
            self._in_flight[queue] -= 1

    def _submit(self, queue: str, job: Job) -> None:
        with self._lock:
            self._in_flight[queue] += 1
        future = self._executor(queue).submit(self.process_job, job)
        future.add_done_callback(lambda _f: self._release(queue))

    def _has_capacity(self, queue: str) -> bool:
        with self._lock:
            return self._in_flight[queue] < self.queue_manager.concurrency[queue]

    def sweep_stalled(self) -> int:
        requeued = 0
        for queue in self.queue_manager.queues:
            requeued += self.queue_manager.requeue_stalled(queue, self.lease_sec)
        self._last_sweep = time.monotonic()
        return requeued

    def poll_once(self) -> int:
        """Claim as many jobs as there is capacity for. Returns how many were started."""
        if time.monotonic() - self._last_sweep >= STALLED_SWEEP_INTERVAL_SEC:
            self.sweep_stalled()
        started = 0
        for queue in self.queue_manager.queues:
            while self._has_capacity(queue) and not self.stop_event.is_set():
                job = self.queue_manager.claim(queue)
                if job is None:
                    break
                self._submit(queue, job)
                started += 1
        return started

    def run(self) -> None:
        logger.info("worker_started queues=%s concurrency=%s", self.queue_manager.queues, self.queue_manager.concurrency)
        try:
            while not self.stop_event.is_set():
                try:
                    started = self.poll_once()
                except Exception as exc:
                    logger.error("worker_poll_failed error=%s", exc)
                    started = 0
                if not started:
                    self.stop_event.wait(self.poll_interval)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        for executor in self._executors.values():
            executor.shutdown(wait=True)
        self._executors.clear()
        logger.info("worker_stopped")

    def request_stop(self, signum=None, frame=None) -> None:
        logger.info("worker_stop_requested signal=%s", signum)
        self.stop_event.set()


def build_worker() -> Worker:
    r = create_redis(client_name=WORKER_CLIENT_NAME)
    queue_manager = QueueManager(r)
    settings_service = SettingsService(r)
    pipeline = SmartUploadPipeline(
        store=SessionStore(r),
        storage=create_storage(),
        registry=ProviderRegistry(settings_service),
        settings_service=settings_service,
        queue_manager=queue_manager,
    )
    return Worker(queue_manager, pipeline)


def main() -> None:
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    configure_json_logging(service=f"{SERVICE_NAME}-worker", level=level)

    from startup_env import validate_startup_env

    validate_startup_env(role="worker")
    worker = build_worker()
    signal.signal(signal.SIGINT, worker.request_stop)
    signal.signal(signal.SIGTERM, worker.request_stop)
    worker.run()


if __name__ == "__main__":
    main()
