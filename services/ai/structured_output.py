# User value: This file recovers usable JSON from chatty or slightly broken model replies so fewer uploads need a human.
import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

logger = logging.getLogger("api.ai.structured_output")

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json|JSON|javascript|js)?[ \t]*\r?\n?(.*?)```", re.DOTALL)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SECRET_RE = re.compile(
    r"(sk-[A-Za-z0-9_\-]{8,}|AIza[0-9A-Za-z_\-]{20,}|(?i:bearer)\s+[A-Za-z0-9._\-]{12,}|"
    r"(?i:api[_-]?key)[\"']?\s*[:=]\s*[\"']?[A-Za-z0-9._\-]{8,})"
)

RETRYABLE_MARKERS = (
    "rate limit",
    "rate_limit",
    "429",
    "502",
    "503",
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "connection reset",
)

RETRY_MAX_DELAY_SEC = 60.0

_LITERALS = {"true": "true", "false": "false", "null": "null", "True": "true", "False": "false", "None": "null"}


def _balanced_span(text: str, opener: str, closer: str) -> Optional[str]:
    start = text.find(opener)
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    # unterminated: hand the tail to repair_json
    return text[start:]


def extract_json_from_markdown(text: str | None) -> Optional[str]:
    """Pull the most plausible JSON payload out of free-form model text."""
    if not text or not text.strip():
        return None

    fenced = _FENCE_RE.search(text)
    if fenced:
        body = fenced.group(1).strip()
        if body:
            return body

    stripped = text.strip()
    if stripped[:1] in "{[":
        opener, closer = ("{", "}") if stripped[0] == "{" else ("[", "]")
        return _balanced_span(stripped, opener, closer)

    obj = _balanced_span(text, "{", "}")
    if obj:
        return obj
    arr = _balanced_span(text, "[", "]")
    if arr:
        return arr
    return None


def _is_valid_json(raw: str) -> bool:
    try:
        json.loads(raw)
        return True
    except (TypeError, ValueError):
        return False


def repair_json(raw: str) -> str:
    """Best-effort fix of common model JSON mistakes. Valid JSON is returned untouched."""
    if raw is None:
        return ""
    if _is_valid_json(raw):
        return raw

    text = _CONTROL_CHARS_RE.sub("", raw).strip()
    out: list[str] = []
    stack: list[str] = []
    i = 0
    n = len(text)

    def last_significant() -> str:
        for ch in reversed(out):
            if not ch.isspace():
                return ch[-1]
        return ""

    while i < n:
        ch = text[i]

        if ch == '"' or ch == "'":
            quote = ch
            buf = ['"']
            i += 1
            while i < n:
                c = text[i]
                if c == "\\" and i + 1 < n:
                    nxt = text[i + 1]
                    if quote == "'" and nxt == "'":
                        buf.append("'")
                    else:
                        buf.append(c + nxt)
                    i += 2
                    continue
                if c == quote:
                    i += 1
                    break
                if c == '"' and quote == "'":
                    buf.append('\\"')
                elif c == "\n":
                    buf.append("\\n")
                else:
                    buf.append(c)
                i += 1
            # an unterminated string is closed at end of input
            buf.append('"')
            out.append("".join(buf))
            continue

        if ch in "{[":
            stack.append("}" if ch == "{" else "]")
            out.append(ch)
            i += 1
            continue

        if ch in "}]":
            if stack and stack[-1] == ch:
                stack.pop()
            out.append(ch)
            i += 1
            continue

        if ch == ",":
            j = i + 1
            while j < n and text[j].isspace():
                j += 1
            if j >= n or text[j] in "}]":
                # trailing comma
                i += 1
                continue
            out.append(ch)
            i += 1
            continue

        if ch.isalpha() or ch == "_":
            j = i
            while j < n and (text[j].isalnum() or text[j] == "_"):
                j += 1
            word = text[i:j]
            k = j
            while k < n and text[k].isspace():
                k += 1
            is_key = k < n and text[k] == ":" and last_significant() in ("{", ",", "")
            if is_key:
                out.append(f'"{word}"')
            else:
                out.append(_LITERALS.get(word, word))
            i = j
            continue

        out.append(ch)
        i += 1

    repaired = "".join(out).rstrip()
    while repaired.endswith(","):
        repaired = repaired[:-1].rstrip()
    while stack:
        repaired += stack.pop()
    return repaired


def _try_parse(raw: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(raw)
    except (TypeError, ValueError):
        return False, None


def parse_and_validate_json(raw: str | None, schema: Optional[Type[BaseModel]] = None):
    """extract -> parse -> repair -> parse -> validate. Returns None on any failure."""
    if raw is None:
        return None

    # already-valid JSON wins, even when a string value contains fences or braces
    ok, value = _try_parse(raw)
    candidate = raw
    if not ok:
        candidate = extract_json_from_markdown(raw) or raw
        ok, value = _try_parse(candidate)
    if not ok:
        ok, value = _try_parse(repair_json(candidate))
    if not ok:
        logger.info("structured_output_unparseable preview=%s", safe_preview(candidate, 200))
        return None

    if schema is None:
        return value

    try:
        return schema.model_validate(value)
    except ValidationError as exc:
        logger.info("structured_output_schema_invalid schema=%s errors=%s", schema.__name__, exc.error_count())
        return None


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, ConnectionResetError, ConnectionAbortedError)):
        return True
    status = getattr(exc, "status_code", None) or getattr(exc, "code", None)
    if status in (429, 502, 503):
        return True
    message = f"{exc.__class__.__name__} {exc}".lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


def with_retry(
    fn: Callable[[], T],
    max_retries: int = 3,
    base_delay_ms: int = 1000,
    *,
    sleep: Callable[[float], None] = time.sleep,
    context: str = "",
) -> T:
    """Call fn, retrying transient failures with exponential backoff plus jitter.

    Delay before retry n (0-based) is base * 2**n plus up to base of jitter.
    Non-retryable errors and the last failure are re-raised as-is.
    """

    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "ai_call_retry context=%s attempt=%s max_retries=%s delay_ms=%.0f error=%s",
            context,
            state.attempt_number,
            max_retries,
            (state.next_action.sleep if state.next_action else 0) * 1000.0,
            exc.__class__.__name__ if exc else None,
        )

    base_sec = base_delay_ms / 1000.0
    retrying = Retrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential_jitter(initial=base_sec, max=RETRY_MAX_DELAY_SEC, jitter=base_sec),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    return retrying(fn)


def with_timeout(fn: Callable[[], T], timeout_ms: int) -> T:
    """Run fn on a worker thread and give up after timeout_ms.

    The underlying call is not cancelled; its result is discarded.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="with-timeout")
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout_ms / 1000.0)
    except FutureTimeoutError:
        raise TimeoutError(f"Operation timed out after {timeout_ms}ms") from None
    finally:
        executor.shutdown(wait=False)


def safe_preview(text: str | None, limit: int = 500) -> str:
    if not text:
        return ""
    redacted = _SECRET_RE.sub("[REDACTED]", str(text))
    if len(redacted) > limit:
        return redacted[:limit] + "...[truncated]"
    return redacted
