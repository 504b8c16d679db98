# User value: This test makes sure approving twice never duplicates a piece and bulk actions report exactly what they skipped.
import base64
import threading
import unittest
from unittest.mock import patch

from fastapi import HTTPException

from routes.review import approve_session, part_preview, reject_session
from schemas.requests import ApproveRequest, OverrideMetadata, RejectRequest
from schemas.session_contract import DuplicatePolicy, ReviewStatus
from services import commit as commit_module
from services import review as review_service
from services.commit import (
    PIECES_INDEX,
    CommitError,
    DuplicateWorkError,
    commit_session,
    piece_key,
    piece_versions_key,
    session_piece_key,
)
from services.duplicates import compute_work_fingerprint, work_index_key
from services.job_definitions import JOB_CLEANUP
from services.queue import QueueManager
from services.sessions import SessionStore, SessionTransitionError
from services.storage import MemoryStorage
from support import REVIEWER, create_session, fake_redis, seed_parsed_session


class CommitUnitTests(unittest.TestCase):
    def setUp(self):
        self.r = fake_redis()
        self.store = SessionStore(self.r)
        self.storage = MemoryStorage()

    def test_commit_is_idempotent(self):
        seed_parsed_session(self.store, self.storage)

        first = commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)
        second = commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)

        self.assertFalse(first.was_idempotent)
        self.assertTrue(second.was_idempotent)
        self.assertEqual(first.piece_id, second.piece_id)
        self.assertEqual(second.parts_committed, 2)
        self.assertEqual(len(self.r.keys("library:part:*")), 2)
        self.assertEqual(self.r.hget(piece_key(first.piece_id), "title"), "American Patrol")
        self.assertEqual(self.store.require("sess-1")["review_status"], ReviewStatus.APPROVED.value)

    def test_override_title_wins_and_composer_is_shared(self):
        seed_parsed_session(self.store, self.storage, "sess-1")
        seed_parsed_session(self.store, self.storage, "sess-2")

        a = commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER, override_metadata={"title": "Patrol"})
        b = commit_session(self.store, self.storage, "sess-2", reviewer=REVIEWER)

        self.assertEqual(a.title, "Patrol")
        self.assertEqual(
            self.r.hget(piece_key(a.piece_id), "composer_id"),
            self.r.hget(piece_key(b.piece_id), "composer_id"),
        )

    def test_rejected_session_cannot_be_committed(self):
        seed_parsed_session(self.store, self.storage)
        self.store.mark_rejected("sess-1", reviewer=REVIEWER, reason="wrong piece")
        with self.assertRaises(CommitError):
            commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)

    def test_reject_landing_before_approval_leaves_no_piece(self):
        seed_parsed_session(self.store, self.storage)
        approve = self.store.mark_approved

        def reject_first(session_id, **kwargs):
            self.store.mark_rejected(session_id, reviewer="other@example.com", reason="duplicate")
            return approve(session_id, **kwargs)

        with patch.object(self.store, "mark_approved", side_effect=reject_first):
            with self.assertRaises(CommitError):
                commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)

        self.assertEqual(self.store.require("sess-1")["review_status"], ReviewStatus.REJECTED.value)
        self.assertEqual(self.r.zcard(PIECES_INDEX), 0)
        self.assertEqual(self.r.keys("library:part:*"), [])
        self.assertIsNone(self.r.get(session_piece_key("sess-1")))
        with self.assertRaises(CommitError):
            commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)

    def test_reject_during_library_writes_is_refused(self):
        seed_parsed_session(self.store, self.storage)
        upsert = commit_module._upsert_named
        refused = []

        def reject_midway(r, kind, name):
            try:
                self.store.mark_rejected("sess-1", reviewer="other@example.com")
            except SessionTransitionError as exc:
                refused.append(exc)
            return upsert(r, kind, name)

        with patch("services.commit._upsert_named", side_effect=reject_midway):
            result = commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)

        self.assertFalse(result.was_idempotent)
        self.assertTrue(refused)
        self.assertEqual(self.store.require("sess-1")["review_status"], ReviewStatus.APPROVED.value)
        self.assertEqual(self.r.zcard(PIECES_INDEX), 1)

    def test_failed_library_write_releases_claim(self):
        seed_parsed_session(self.store, self.storage)
        with patch("services.commit._upsert_named", side_effect=RuntimeError("redis hiccup")):
            with self.assertRaises(RuntimeError):
                commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)
        self.assertIsNone(self.r.get(session_piece_key("sess-1")))

        result = commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)
        self.assertFalse(result.was_idempotent)
        self.assertEqual(result.parts_committed, 2)

    def test_same_work_needs_a_duplicate_policy(self):
        seed_parsed_session(self.store, self.storage, "sess-1")
        seed_parsed_session(self.store, self.storage, "sess-2")
        seed_parsed_session(self.store, self.storage, "sess-3")
        first = commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)

        with self.assertRaises(DuplicateWorkError) as ctx:
            commit_session(self.store, self.storage, "sess-2", reviewer=REVIEWER)
        self.assertEqual(ctx.exception.check.policy, DuplicatePolicy.EXCEPTION_REVIEW)
        self.assertEqual(ctx.exception.check.matching_piece_id, first.piece_id)
        self.assertEqual(self.store.require("sess-2")["review_status"], ReviewStatus.PENDING_REVIEW.value)
        self.assertIsNone(self.r.get(session_piece_key("sess-2")))

        version = commit_session(
            self.store, self.storage, "sess-2", reviewer=REVIEWER, duplicate_policy=DuplicatePolicy.VERSION_UPDATE.value
        )
        separate = commit_session(
            self.store, self.storage, "sess-3", reviewer=REVIEWER, duplicate_policy=DuplicatePolicy.NEW_PIECE.value
        )

        self.assertEqual(version.version_of, first.piece_id)
        self.assertEqual(self.r.zrange(piece_versions_key(first.piece_id), 0, -1), [version.piece_id])
        self.assertIsNone(separate.version_of)
        self.assertEqual(self.r.zcard(PIECES_INDEX), 3)
        fingerprint = compute_work_fingerprint("American Patrol", "F. W. Meacham")
        self.assertEqual(self.r.get(work_index_key(fingerprint)), first.piece_id)
        self.assertEqual(self.r.hget(piece_key(version.piece_id), "work_fingerprint"), fingerprint)

    def test_session_without_parts_needs_override_title(self):
        seed_parsed_session(self.store, self.storage, parts=0)
        with self.assertRaises(CommitError):
            commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)

        result = commit_session(
            self.store, self.storage, "sess-1", reviewer=REVIEWER, override_metadata={"title": "Full Score"}
        )
        self.assertEqual(result.parts_committed, 0)


class ReviewUnitTests(unittest.TestCase):
    def setUp(self):
        self.r = fake_redis()
        self.store = SessionStore(self.r)
        self.storage = MemoryStorage()
        self.queue = QueueManager(self.r)
        self.user = {"email": REVIEWER}

    def test_bulk_approve_reports_skips(self):
        seed_parsed_session(self.store, self.storage, "sess-1")
        seed_parsed_session(self.store, self.storage, "sess-2", title="The Washington Post")
        seed_parsed_session(self.store, self.storage, "sess-3", title=None)

        out = review_service.bulk_approve(
            self.store, self.storage, ["sess-1", "sess-2", "sess-3", "sess-1"], reviewer=REVIEWER
        )

        self.assertEqual(out["approved"], 2)
        self.assertEqual(out["skipped"], 1)
        self.assertEqual(out["approved_ids"], ["sess-1", "sess-2"])
        self.assertEqual(
            out["skipped_details"], [{"session_id": "sess-3", "reason": review_service.SKIP_NO_TITLE}]
        )

    def test_bulk_approve_skips_a_second_copy_of_the_same_work(self):
        seed_parsed_session(self.store, self.storage, "sess-1")
        seed_parsed_session(self.store, self.storage, "sess-2")

        out = review_service.bulk_approve(self.store, self.storage, ["sess-1", "sess-2"], reviewer=REVIEWER)

        self.assertEqual(out["approved_ids"], ["sess-1"])
        self.assertEqual(
            out["skipped_details"],
            [{"session_id": "sess-2", "reason": 'Possible duplicate of "American Patrol" (work fingerprint match)'}],
        )

    def test_bulk_approve_reports_missing_and_already_committed(self):
        seed_parsed_session(self.store, self.storage, "sess-1")
        commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)

        out = review_service.bulk_approve(self.store, self.storage, ["sess-1", "nope"], reviewer=REVIEWER)

        reasons = {d["session_id"]: d["reason"] for d in out["skipped_details"]}
        self.assertEqual(out["approved"], 0)
        self.assertEqual(reasons["sess-1"], review_service.SKIP_IDEMPOTENT)
        self.assertEqual(reasons["nope"], review_service.SKIP_NOT_FOUND)

    def test_list_sessions_paginates_and_counts(self):
        for idx in range(3):
            seed_parsed_session(self.store, self.storage, f"sess-{idx}")
        commit_session(self.store, self.storage, "sess-0", reviewer=REVIEWER)

        out = review_service.list_sessions(self.store, status="PENDING_REVIEW", page=1, limit=1)

        self.assertEqual(len(out["sessions"]), 1)
        self.assertEqual(out["pagination"], {"page": 1, "limit": 1, "total": 2, "total_pages": 2})
        self.assertEqual(out["counts"], {"pending": 2, "approved": 1, "rejected": 0})

    def test_reject_queues_cleanup_of_part_files(self):
        seed_parsed_session(self.store, self.storage)

        out = reject_session(
            "sess-1", body=RejectRequest(reason="duplicate"), user=self.user, store=self.store, queue_manager=self.queue
        )

        self.assertEqual(out["review_status"], ReviewStatus.REJECTED.value)
        job = self.queue.get_job(out["cleanup_job_id"])
        self.assertEqual(job.name, JOB_CLEANUP)
        self.assertEqual(len(job.payload["keys"]), 2)
        session = self.store.require("sess-1")
        self.assertEqual(session["rejection_reason"], "duplicate")

    def test_approve_route_maps_errors(self):
        with self.assertRaises(HTTPException) as ctx:
            approve_session("missing", body=None, user=self.user, store=self.store, storage=self.storage)
        self.assertEqual(ctx.exception.status_code, 404)

        seed_parsed_session(self.store, self.storage)
        self.store.mark_rejected("sess-1", reviewer=REVIEWER)
        with self.assertRaises(HTTPException) as ctx:
            approve_session("sess-1", body=None, user=self.user, store=self.store, storage=self.storage)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.detail["error_code"], "COMMIT_REJECTED")

    def test_approve_route_reports_duplicate_work_as_conflict(self):
        seed_parsed_session(self.store, self.storage, "sess-1")
        seed_parsed_session(self.store, self.storage, "sess-2")
        approve_session("sess-1", body=None, user=self.user, store=self.store, storage=self.storage)

        with self.assertRaises(HTTPException) as ctx:
            approve_session("sess-2", body=None, user=self.user, store=self.store, storage=self.storage)
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.detail["error_code"], "DUPLICATE_WORK")

        body = ApproveRequest(duplicate_policy="VERSION_UPDATE")
        out = approve_session("sess-2", body=body, user=self.user, store=self.store, storage=self.storage)
        self.assertIsNotNone(out.version_of)

    def test_approve_route_applies_override(self):
        seed_parsed_session(self.store, self.storage)
        body = ApproveRequest(override_metadata=OverrideMetadata(title="Patrol Revisited"))

        out = approve_session("sess-1", body=body, user=self.user, store=self.store, storage=self.storage)

        self.assertTrue(out.success)
        self.assertEqual(out.title, "Patrol Revisited")
        self.assertEqual(out.parts_committed, 2)

    def test_part_preview_errors_and_render(self):
        session = seed_parsed_session(self.store, self.storage)
        key = session["parsed_parts"][0]["storage_key"]

        with self.assertRaises(HTTPException) as ctx:
            part_preview("sess-1", part_storage_key="not/in/session.pdf", page=0, user=self.user, store=self.store, storage=self.storage)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.detail["error_code"], "PART_NOT_FOUND")

        with self.assertRaises(HTTPException) as ctx:
            part_preview("sess-1", part_storage_key=key, page=-1, user=self.user, store=self.store, storage=self.storage)
        self.assertEqual(ctx.exception.status_code, 400)

        with self.assertRaises(HTTPException) as ctx:
            part_preview("sess-1", part_storage_key=key, page=7, user=self.user, store=self.store, storage=self.storage)
        self.assertEqual(ctx.exception.status_code, 400)

        out = part_preview("sess-1", part_storage_key=key, page=0, user=self.user, store=self.store, storage=self.storage)
        self.assertEqual(out["total_pages"], 2)
        self.assertTrue(base64.b64decode(out["image_base64"]).startswith(b"\x89PNG"))

    def test_slow_preview_render_times_out(self):
        session = seed_parsed_session(self.store, self.storage)
        key = session["parsed_parts"][0]["storage_key"]
        release = threading.Event()

        def stuck_render(*args, **kwargs):
            release.wait(5)
            return b"", 0

        with patch("services.review.SMART_UPLOAD_PDF_TIMEOUT_MS", 50), patch(
            "services.review.render_page", side_effect=stuck_render
        ):
            with self.assertRaises(HTTPException) as ctx:
                part_preview("sess-1", part_storage_key=key, page=0, user=self.user, store=self.store, storage=self.storage)
        release.set()

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(ctx.exception.detail["error_code"], "RENDER_FAILED")

    def test_awaiting_session_has_no_parts_to_preview(self):
        create_session(self.store, self.storage)
        with self.assertRaises(review_service.PartNotFoundError):
            review_service.render_part_preview(self.store, self.storage, "sess-1", "x.pdf", 0)


if __name__ == "__main__":
    unittest.main()
