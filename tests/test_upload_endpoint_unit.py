# User value: This test makes sure an upload is accepted once, queued for parsing, and never duplicated by a retrying client.
import asyncio
import io
import os
import unittest
from unittest.mock import patch

from fastapi import HTTPException, UploadFile
from starlette.datastructures import Headers

import startup_env
from routes.smart_upload import get_session, safe_file_name, upload
from schemas.session_contract import DuplicatePolicy, ParseStatus, SessionErrorCode
from services.queue import QueueManager
from services.sessions import SessionStore
from services.settings import SettingsService
from services.storage import MemoryStorage
from support import UPLOADER, fake_redis, make_pdf


def _file(data: bytes, filename="American Patrol.pdf", content_type="application/pdf") -> UploadFile:
    return UploadFile(file=io.BytesIO(data), filename=filename, headers=Headers({"content-type": content_type}))


class UploadEndpointUnitTests(unittest.TestCase):
    def setUp(self):
        self.r = fake_redis()
        self.store = SessionStore(self.r)
        self.queue = QueueManager(self.r)
        self.storage = MemoryStorage()
        self.settings = SettingsService(self.r)

    def _upload(self, upload_file, idempotency_key=None):
        return asyncio.run(
            upload(
                file=upload_file,
                idempotency_key=idempotency_key,
                user={"email": UPLOADER},
                store=self.store,
                queue_manager=self.queue,
                storage=self.storage,
                settings_service=self.settings,
            )
        )

    @patch("routes.smart_upload.is_queue_orchestration_enabled", return_value=True)
    def test_upload_creates_session_and_queues_first_pass(self, _flag):
        out = self._upload(_file(make_pdf(3)))

        self.assertEqual(out.status, ParseStatus.AWAITING_PARSE.value)
        self.assertEqual(out.job_id, f"{out.session_id}-first-pass")
        session = self.store.require(out.session_id)
        self.assertEqual(session["total_pages"], 3)
        self.assertEqual(session["uploaded_by"], UPLOADER)
        self.assertEqual(session["first_pass_job_id"], out.job_id)
        self.assertTrue(self.storage.exists(session["storage_key"]))
        self.assertTrue(session["storage_key"].endswith("/original/American_Patrol.pdf"))
        self.assertTrue(self.queue.is_live(out.job_id))

    @patch("routes.smart_upload.is_queue_orchestration_enabled", return_value=True)
    def test_idempotency_key_reuses_session(self, _flag):
        first = self._upload(_file(make_pdf(2)), idempotency_key="abc-123")
        second = self._upload(_file(make_pdf(2)), idempotency_key="abc-123")

        self.assertEqual(first.session_id, second.session_id)
        self.assertTrue(second.reused)
        self.assertEqual(self.store.review_counts()["pending"], 1)

    def test_rejects_wrong_type_and_broken_pdf(self):
        with self.assertRaises(HTTPException) as ctx:
            self._upload(_file(b"hello", filename="notes.txt", content_type="text/plain"))
        self.assertEqual(ctx.exception.detail["error_code"], "INVALID_FILE_TYPE")

        with self.assertRaises(HTTPException) as ctx:
            self._upload(_file(b"%PDF-1.4 garbage"))
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.detail["error_code"], SessionErrorCode.PDF_INVALID.value)

    @patch("routes.smart_upload.SMART_UPLOAD_MAX_FILE_SIZE_MB", 0)
    def test_rejects_oversized_upload_before_reading_it(self):
        upload_file = _file(make_pdf(1))
        with patch.object(upload_file, "read", side_effect=AssertionError("body read before size check")):
            with self.assertRaises(HTTPException) as ctx:
                self._upload(upload_file)
        self.assertEqual(ctx.exception.status_code, 413)
        self.assertEqual(ctx.exception.detail["error_code"], SessionErrorCode.FILE_TOO_LARGE.value)

    @patch("routes.smart_upload.is_queue_orchestration_enabled", return_value=True)
    def test_identical_file_is_skipped_until_its_session_is_rejected(self, _flag):
        data = make_pdf(2)
        first = self._upload(_file(data))
        second = self._upload(_file(data, filename="copy.pdf"))

        self.assertEqual(second.session_id, first.session_id)
        self.assertTrue(second.reused)
        self.assertEqual(second.duplicate_policy, DuplicatePolicy.SKIP_DUPLICATE.value)
        self.assertEqual(self.store.review_counts()["pending"], 1)
        self.assertEqual(len(self.store.require(first.session_id)["source_sha256"]), 64)

        self.store.mark_rejected(first.session_id, reviewer="librarian@example.com", reason="wrong scan")
        third = self._upload(_file(data))

        self.assertNotEqual(third.session_id, first.session_id)
        self.assertFalse(third.reused)
        self.assertIsNone(third.duplicate_policy)

    @patch("routes.smart_upload.is_queue_orchestration_enabled", return_value=True)
    def test_enqueue_failure_marks_session_failed(self, _flag):
        with patch.object(self.queue, "add", side_effect=RuntimeError("queue down")):
            with self.assertRaises(HTTPException) as ctx:
                self._upload(_file(make_pdf(1)))
        self.assertEqual(ctx.exception.status_code, 503)
        sessions, total = self.store.list_by_review_status("PENDING_REVIEW", 0, 10)
        self.assertEqual(total, 1)
        self.assertEqual(sessions[0]["parse_status"], ParseStatus.FAILED.value)
        self.assertEqual(sessions[0]["error_code"], SessionErrorCode.QUEUE_FAILED.value)

    @patch("routes.smart_upload.is_queue_orchestration_enabled", return_value=True)
    def test_get_session_includes_job_progress(self, _flag):
        out = self._upload(_file(make_pdf(1)))
        session = get_session(out.session_id, user={"email": UPLOADER}, store=self.store, queue_manager=self.queue)
        self.assertEqual(session["jobs"]["first_pass"]["status"], "waiting")
        self.assertIsNone(session["jobs"]["second_pass"])
        self.assertIsNone(session["last_failure"])

        with self.assertRaises(HTTPException) as ctx:
            get_session("missing", user={"email": UPLOADER}, store=self.store, queue_manager=self.queue)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_safe_file_name(self):
        self.assertEqual(safe_file_name("../../etc/My Score (v2).PDF"), "My_Score_v2.pdf")
        self.assertEqual(safe_file_name(""), "upload.pdf")


class StartupEnvUnitTests(unittest.TestCase):
    BASE = {
        "GOOGLE_CLIENT_ID": "client-1",
        "REDIS_URL": "redis://localhost:6379/0",
        "CORS_ALLOW_ORIGINS": "https://library.example.com",
        "STORAGE_BACKEND": "memory",
        "LLM_OPENAI_API_KEY": "sk-test",
    }

    def test_valid_api_env(self):
        with patch.dict(os.environ, self.BASE, clear=True):
            startup_env.validate_startup_env()

    def test_wildcard_cors_and_bad_redis_are_refused(self):
        env = dict(self.BASE, CORS_ALLOW_ORIGINS="*", REDIS_URL="localhost:6379")
        with patch.dict(os.environ, env, clear=True):
            with self.assertRaises(RuntimeError) as ctx:
                startup_env.validate_startup_env()
        self.assertIn("CORS_ALLOW_ORIGINS", str(ctx.exception))
        self.assertIn("REDIS_URL", str(ctx.exception))

    def test_worker_does_not_need_google_client_or_cors(self):
        env = {k: v for k, v in self.BASE.items() if k not in ("GOOGLE_CLIENT_ID", "CORS_ALLOW_ORIGINS")}
        with patch.dict(os.environ, env, clear=True):
            startup_env.validate_startup_env(role=startup_env.ROLE_WORKER)

    def test_gcs_backend_needs_bucket(self):
        env = dict(self.BASE, STORAGE_BACKEND="gcs")
        with patch.dict(os.environ, env, clear=True):
            with self.assertRaises(RuntimeError):
                startup_env.validate_startup_env()


if __name__ == "__main__":
    unittest.main()
