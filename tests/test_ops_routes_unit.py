# User value: This test keeps the operator views honest: job progress, queue load, dead letters and settings.
import unittest
from unittest.mock import patch

from fastapi import HTTPException

from routes.dlq import list_dead_letter_jobs, retry_dead_letter_job
from routes.jobs import get_job_status
from routes.queue_health import queue_health
from routes.settings import get_settings, update_settings
from schemas.requests import SettingsUpdateRequest
from services.ai.registry import ProviderRegistry
from services.job_definitions import JOB_CLEANUP
from services.queue import QueueManager
from services.settings import SettingsService
from support import fake_redis

ADMIN = {"email": "admin@example.com"}


class OpsRoutesUnitTests(unittest.TestCase):
    def setUp(self):
        self.r = fake_redis()
        self.queue = QueueManager(self.r)
        self.settings = SettingsService(self.r)
        self.registry = ProviderRegistry(self.settings)

    def _dead_letter_one(self):
        job = self.queue.add(JOB_CLEANUP, {"session_id": "s1", "keys": []})
        self.queue.fail(self.queue.claim(job.queue), "boom")
        return job

    def test_job_status_and_missing_job(self):
        job = self.queue.add(JOB_CLEANUP, {"session_id": "s1", "keys": []})
        out = get_job_status(job.id, user=ADMIN, queue_manager=self.queue)
        self.assertEqual(out["status"], "waiting")

        with self.assertRaises(HTTPException) as ctx:
            get_job_status("nope", user=ADMIN, queue_manager=self.queue)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_dead_letter_list_and_retry(self):
        self._dead_letter_one()
        listing = list_dead_letter_jobs(limit=50, offset=0, user=ADMIN, queue_manager=self.queue)
        self.assertEqual(listing["total"], 1)

        dlq_id = listing["jobs"][0]["id"]
        out = retry_dead_letter_job(dlq_id, user=ADMIN, queue_manager=self.queue)
        self.assertEqual(out["status"], "waiting")
        self.assertEqual(self.queue.dead_letter_depth(), 0)

        with self.assertRaises(HTTPException) as ctx:
            retry_dead_letter_job(dlq_id, user=ADMIN, queue_manager=self.queue)
        self.assertEqual(ctx.exception.status_code, 404)

    @patch("routes.queue_health._worker_clients", return_value=2)
    def test_queue_health(self, _clients):
        self._dead_letter_one()
        out = queue_health(user=ADMIN, queue_manager=self.queue)
        self.assertEqual(out["dead_letter_depth"], 1)
        self.assertEqual(out["worker_clients"], 2)
        self.assertEqual({q["queue"] for q in out["queues"]}, set(self.queue.queues))

    def test_settings_routes(self):
        view = get_settings(user=ADMIN, settings_service=self.settings, registry=self.registry)
        self.assertIn("auto_approve_threshold", view["settings"])
        self.assertTrue(all("api_key" in p for p in view["providers"]))

        with self.assertRaises(HTTPException) as ctx:
            update_settings(
                SettingsUpdateRequest(auto_approve_threshold=10, skip_parse_threshold=20),
                user=ADMIN,
                settings_service=self.settings,
                registry=self.registry,
            )
        self.assertEqual(ctx.exception.status_code, 400)


if __name__ == "__main__":
    unittest.main()
