# User value: This test makes sure a score is never verified twice at once and a failed dispatch never leaves it stuck.
import unittest
from unittest.mock import patch

from fastapi import HTTPException

from routes.smart_upload import enqueue_second_pass
from schemas.requests import SecondPassRequest
from schemas.session_contract import SecondPassStatus, SessionErrorCode
from services.queue import QueueManager
from services.sessions import SessionStore, session_key
from services.storage import MemoryStorage
from support import REVIEWER, create_session, fake_redis, seed_parsed_session


class SecondPassEnqueueUnitTests(unittest.TestCase):
    def setUp(self):
        self.r = fake_redis()
        self.store = SessionStore(self.r)
        self.storage = MemoryStorage()
        self.queue = QueueManager(self.r)
        self.user = {"email": REVIEWER}

    def _enqueue(self, session_id="sess-1"):
        return enqueue_second_pass(
            body=SecondPassRequest(session_id=session_id),
            user=self.user,
            store=self.store,
            queue_manager=self.queue,
        )

    def test_first_request_queues_second_is_rejected(self):
        seed_parsed_session(self.store, self.storage)

        out = self._enqueue()
        self.assertEqual(out.status, SecondPassStatus.QUEUED.value)
        self.assertTrue(self.queue.is_live(out.job_id))

        with self.assertRaises(HTTPException) as ctx:
            self._enqueue()
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.detail["error_code"], "SECOND_PASS_NOT_ELIGIBLE")
        self.assertEqual(self.store.require("sess-1")["second_pass_job_id"], out.job_id)

    def test_running_and_verified_sessions_are_not_requeued(self):
        seed_parsed_session(self.store, self.storage)
        self.store.mark_second_pass_running("sess-1", "job-running")
        with self.assertRaises(HTTPException) as ctx:
            self._enqueue()
        self.assertEqual(ctx.exception.status_code, 400)
        session = self.store.require("sess-1")
        self.assertEqual(session["second_pass_status"], SecondPassStatus.RUNNING.value)
        self.assertEqual(session["second_pass_job_id"], "job-running")

        self.store.mark_second_pass_verified(
            "sess-1",
            result={},
            extracted_metadata=session["extracted_metadata"],
            confidence_score=90,
            final_confidence=90,
            routing_decision="manual_review",
        )
        with self.assertRaises(HTTPException):
            self._enqueue()
        self.assertEqual(self.store.require("sess-1")["second_pass_status"], SecondPassStatus.VERIFIED.value)

    def test_session_still_awaiting_first_pass_is_rejected(self):
        create_session(self.store, self.storage)
        with self.assertRaises(HTTPException) as ctx:
            self._enqueue()
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIsNone(self.store.require("sess-1")["second_pass_status"])

    def test_unknown_session_is_404(self):
        with self.assertRaises(HTTPException) as ctx:
            self._enqueue("missing")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_dispatch_failure_rolls_back_to_failed(self):
        seed_parsed_session(self.store, self.storage)
        with patch.object(self.queue, "add", side_effect=RuntimeError("redis queue down")):
            with self.assertRaises(HTTPException) as ctx:
                self._enqueue()
        self.assertEqual(ctx.exception.status_code, 500)

        session = self.store.require("sess-1")
        self.assertEqual(session["second_pass_status"], SecondPassStatus.FAILED.value)
        self.assertEqual(session["error_code"], SessionErrorCode.QUEUE_FAILED.value)

        out = self._enqueue()
        self.assertEqual(out.status, SecondPassStatus.QUEUED.value)

    def test_stale_claim_without_live_job_can_be_reclaimed(self):
        seed_parsed_session(self.store, self.storage)
        first = self._enqueue()
        # the job vanished and the claim is older than the grace window
        self.r.delete(self.queue.job_key(first.job_id))
        self.r.hset(session_key("sess-1"), "second_pass_queued_ts", "0")

        second = self._enqueue()
        self.assertNotEqual(second.job_id, first.job_id)


if __name__ == "__main__":
    unittest.main()
