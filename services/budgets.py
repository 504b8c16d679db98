# User value: This file caps how many model calls one upload may spend, so a stubborn scan cannot run up the bill.
import logging
import math
from dataclasses import dataclass

logger = logging.getLogger("worker.budgets")

BUDGET_KEY_PREFIX = "smart_upload:budget"
BUDGET_TTL_SEC = 7 * 24 * 3600
# prompt text is charged at ~4 chars per token, each page image at a flat rate
CHARS_PER_TOKEN = 4
IMAGE_TOKEN_ESTIMATE = 1000


@dataclass
class BudgetCheck:
    allowed: bool
    reason: str = ""


def budget_key(session_id: str) -> str:
    return f"{BUDGET_KEY_PREFIX}:{session_id}"


def estimate_input_tokens(prompt: str, system_prompt: str = "", images=None) -> int:
    chars = len(prompt or "") + len(system_prompt or "")
    return int(math.ceil(chars / CHARS_PER_TOKEN)) + IMAGE_TOKEN_ESTIMATE * len(images or [])


class SessionBudget:
    """LLM spend for one session, shared by every pass and retry. A limit of 0 means unlimited."""

    def __init__(self, r, session_id: str, *, max_llm_calls: int, max_input_tokens: int):
        self.r = r
        self.session_id = session_id
        self.max_llm_calls = max(0, int(max_llm_calls))
        self.max_input_tokens = max(0, int(max_input_tokens))

    def snapshot(self) -> dict:
        calls, tokens = self.r.hmget(budget_key(self.session_id), ["llm_calls", "input_tokens"])
        return {
            "llm_calls": int(calls or 0),
            "input_tokens": int(tokens or 0),
            "max_llm_calls": self.max_llm_calls,
            "max_input_tokens": self.max_input_tokens,
        }

    def check(self) -> BudgetCheck:
        used = self.snapshot()
        if self.max_llm_calls and used["llm_calls"] >= self.max_llm_calls:
            return BudgetCheck(
                False, f"LLM call budget exhausted: {used['llm_calls']}/{self.max_llm_calls} calls used"
            )
        if self.max_input_tokens and used["input_tokens"] >= self.max_input_tokens:
            return BudgetCheck(
                False, f"Input token budget exhausted: {used['input_tokens']}/{self.max_input_tokens} tokens used"
            )
        return BudgetCheck(True)

    def record(self, input_tokens: int) -> None:
        key = budget_key(self.session_id)
        pipe = self.r.pipeline()
        pipe.hincrby(key, "llm_calls", 1)
        pipe.hincrby(key, "input_tokens", max(0, int(input_tokens)))
        pipe.expire(key, BUDGET_TTL_SEC)
        calls, tokens, _ = pipe.execute()
        logger.info(
            "budget_recorded session_id=%s llm_calls=%s input_tokens=%s",
            self.session_id,
            calls,
            tokens,
        )
