# User value: This test makes sure the same score is recognised when it comes back, and one upload cannot spend past its model budget.
import unittest

from schemas.session_contract import DuplicatePolicy
from services.budgets import SessionBudget, estimate_input_tokens
from services.commit import commit_session
from services.duplicates import (
    check_source_duplicate,
    check_work_duplicate,
    compute_sha256,
    compute_work_fingerprint,
    remember_source,
)
from services.sessions import SessionStore
from services.storage import MemoryStorage
from support import REVIEWER, create_session, fake_redis, seed_parsed_session


class DuplicateDetectionUnitTests(unittest.TestCase):
    def setUp(self):
        self.r = fake_redis()
        self.store = SessionStore(self.r)
        self.storage = MemoryStorage()

    def test_work_fingerprint_ignores_case_punctuation_and_spacing(self):
        fingerprint = compute_work_fingerprint("American Patrol!", "F. W. Meacham")
        self.assertEqual(fingerprint, compute_work_fingerprint("  american   patrol ", "F W Meacham"))
        self.assertNotEqual(fingerprint, compute_work_fingerprint("American Patrol", "J. P. Sousa"))
        self.assertEqual(len(fingerprint), 16)

    def test_source_match_is_skipped_until_rejected(self):
        create_session(self.store, self.storage, "sess-1")
        sha256 = compute_sha256(b"%PDF-1.4 score bytes")
        self.assertEqual(check_source_duplicate(self.store, sha256).policy, DuplicatePolicy.NEW_PIECE)

        remember_source(self.r, sha256, "sess-1")
        check = check_source_duplicate(self.store, sha256)
        self.assertEqual(check.policy, DuplicatePolicy.SKIP_DUPLICATE)
        self.assertEqual(check.matching_session_id, "sess-1")
        self.assertEqual(check.reason, "Exact source file match: session sess-1")

        self.store.mark_rejected("sess-1", reviewer=REVIEWER, reason="bad scan")
        self.assertFalse(check_source_duplicate(self.store, sha256).is_duplicate)

    def test_work_match_points_at_the_committed_piece(self):
        seed_parsed_session(self.store, self.storage)
        piece = commit_session(self.store, self.storage, "sess-1", reviewer=REVIEWER)

        check = check_work_duplicate(self.r, "AMERICAN PATROL", "f. w. meacham")

        self.assertEqual(check.policy, DuplicatePolicy.EXCEPTION_REVIEW)
        self.assertEqual(check.matching_piece_id, piece.piece_id)
        self.assertTrue(check.to_dict()["is_duplicate"])
        self.assertFalse(check_work_duplicate(self.r, "American Patrol", "J. P. Sousa").is_duplicate)
        self.assertFalse(check_work_duplicate(self.r, "", None).is_duplicate)


class SessionBudgetUnitTests(unittest.TestCase):
    def setUp(self):
        self.r = fake_redis()

    def test_call_limit(self):
        budget = SessionBudget(self.r, "sess-1", max_llm_calls=2, max_input_tokens=0)
        self.assertTrue(budget.check().allowed)

        budget.record(100)
        budget.record(100)

        verdict = budget.check()
        self.assertFalse(verdict.allowed)
        self.assertEqual(verdict.reason, "LLM call budget exhausted: 2/2 calls used")
        self.assertEqual(budget.snapshot()["input_tokens"], 200)

    def test_token_limit_and_zero_means_unlimited(self):
        budget = SessionBudget(self.r, "sess-1", max_llm_calls=0, max_input_tokens=1000)
        budget.record(999)
        self.assertTrue(budget.check().allowed)

        budget.record(1)
        verdict = budget.check()
        self.assertFalse(verdict.allowed)
        self.assertEqual(verdict.reason, "Input token budget exhausted: 1000/1000 tokens used")

        unlimited = SessionBudget(self.r, "sess-1", max_llm_calls=0, max_input_tokens=0)
        self.assertTrue(unlimited.check().allowed)

    def test_spend_is_kept_per_session(self):
        SessionBudget(self.r, "sess-1", max_llm_calls=1, max_input_tokens=0).record(10)
        self.assertTrue(SessionBudget(self.r, "sess-2", max_llm_calls=1, max_input_tokens=0).check().allowed)

    def test_estimate_counts_text_and_images(self):
        self.assertEqual(estimate_input_tokens("a" * 8, "b" * 4, images=[object(), object()]), 3 + 2000)
        self.assertEqual(estimate_input_tokens("", ""), 0)


if __name__ == "__main__":
    unittest.main()
