# User value: This file turns an uploaded score into named parts and decides whether a human needs to look at it.
import logging
import time
from pathlib import PurePosixPath
from typing import Optional

from config import (
    SMART_UPLOAD_PDF_TIMEOUT_MS,
    SMART_UPLOAD_STORAGE_PREFIX,
    SMART_UPLOAD_TEXT_PAGES,
    SMART_UPLOAD_VISION_PAGES,
)
from schemas.session_contract import ReviewStatus, RoutingDecision, SecondPassStatus, SessionErrorCode
from services.ai.base import ImageInput, ProviderUnavailableError, classify_provider_error
from services.ai.structured_output import with_timeout
from services.budgets import SessionBudget, estimate_input_tokens
from services.commit import commit_session
from services.duplicates import DuplicateCheck, check_work_duplicate
from services.feature_flags import is_auto_second_pass_enabled, is_autonomous_commit_enabled
from services.job_definitions import JOB_AUTO_COMMIT, JOB_CLEANUP, JOB_PROCESS, JOB_SECOND_PASS
from services.part_naming import (
    build_part_display_name,
    build_part_filename,
    build_part_storage_slug,
    normalize_instrument_label,
)
from services.pdf_tools import PdfProcessingError, count_pages, extract_page_text, render_pages, split_pdf
from services.prompts import (
    FIRST_PASS_SYSTEM_PROMPT,
    VERIFICATION_SYSTEM_PROMPT,
    FirstPassExtraction,
    VerificationResult,
    build_first_pass_prompt,
    build_verification_prompt,
)
from services.quality_gates import evaluate_quality_gates, is_forbidden_label
from services.sessions import SecondPassIneligibleError, request_second_pass
from services.storage import StorageError
from utils.metrics import incr, observe_ms
from utils.stage_logging import COMPLETED, FAILED, SKIPPED, STARTED, log_stage

logger = logging.getLogger("worker.pipeline")

AUTO_REVIEWER = "system:auto"


class PipelineError(RuntimeError):
    """A stage failure with a session error code.

    Retryable errors go back to the queue; the rest fail the session on the spot.
    """

    def __init__(self, code: SessionErrorCode, message: str, retryable: bool = True):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


def decide_routing(confidence: int, parse_ok: bool, thresholds, quality_gate_failed: bool = False) -> RoutingDecision:
    if parse_ok and confidence >= thresholds.auto_approve_threshold and not quality_gate_failed:
        return RoutingDecision.AUTO_APPROVE
    if not parse_ok or confidence < thresholds.skip_parse_threshold:
        return RoutingDecision.NO_PARSE_SECOND_PASS
    return RoutingDecision.MANUAL_REVIEW


def cutting_plan(instructions: list, total_pages: int) -> list[dict]:
    """Keep instructions whose 1-indexed inclusive ranges fit the document."""
    plan = []
    for item in instructions or []:
        data = item.model_dump() if hasattr(item, "model_dump") else dict(item)
        page_range = data.get("page_range") or []
        if len(page_range) != 2:
            continue
        start, end = int(page_range[0]), int(page_range[1])
        if start < 1 or end < start or end > total_pages:
            logger.warning("cutting_instruction_dropped range=%s-%s total_pages=%s", start, end, total_pages)
            continue
        data["page_range"] = [start, end]
        plan.append(data)
    return plan


def _norm_text(value) -> str:
    if value is None or is_forbidden_label(value):
        return ""
    return " ".join(str(value).lower().split())


def _instrument_set(metadata: dict) -> set[str]:
    labels = [p.get("instrument") for p in (metadata.get("parts") or [])]
    labels += [c.get("instrument") for c in (metadata.get("cutting_instructions") or [])]
    return {normalize_instrument_label(label).instrument.lower() for label in labels if not is_forbidden_label(label)}


def detect_disagreements(first: dict, second: dict) -> list[dict]:
    out = []
    for field in ("title", "composer"):
        a, b = _norm_text(first.get(field)), _norm_text(second.get(field))
        if a and b and a != b:
            out.append({"field": field, "first_pass": first.get(field), "second_pass": second.get(field)})
    a_parts, b_parts = _instrument_set(first), _instrument_set(second)
    if a_parts and b_parts and a_parts != b_parts:
        out.append({"field": "instruments", "first_pass": sorted(a_parts), "second_pass": sorted(b_parts)})
    return out


class SmartUploadPipeline:
    """Stage logic run by the worker. Every dependency is passed in."""

    def __init__(self, *, store, storage, registry, settings_service, queue_manager):
        self.store = store
        self.storage = storage
        self.registry = registry
        self.settings_service = settings_service
        self.queue_manager = queue_manager

    # ------------------------------------------------------------------
    # shared steps
    # ------------------------------------------------------------------
    def _download(self, key: str) -> bytes:
        try:
            return self.storage.download(key)
        except StorageError as exc:
            raise PipelineError(SessionErrorCode.STORAGE_DOWNLOAD_FAILED, f"Download failed for {key}: {exc}") from exc

    def _pdf(self, fn, what: str):
        try:
            return with_timeout(fn, SMART_UPLOAD_PDF_TIMEOUT_MS)
        except PdfProcessingError as exc:
            retryable = exc.code not in (SessionErrorCode.PDF_INVALID, SessionErrorCode.PDF_ENCRYPTED)
            raise PipelineError(exc.code, str(exc), retryable=retryable) from exc
        except TimeoutError as exc:
            raise PipelineError(SessionErrorCode.RENDER_FAILED, f"{what} timed out: {exc}") from exc

    def _read_document(self, data: bytes) -> tuple[int, list[str], list[ImageInput]]:
        total_pages = self._pdf(lambda: count_pages(data), "page count")
        texts = self._pdf(lambda: extract_page_text(data, max_pages=SMART_UPLOAD_TEXT_PAGES), "text extraction")
        pngs = self._pdf(lambda: render_pages(data, SMART_UPLOAD_VISION_PAGES), "page rendering")
        images = [ImageInput(data=png, label=f"Original Page {idx + 1}") for idx, png in enumerate(pngs)]
        return total_pages, texts, images

    def _budget(self, session_id: str, settings) -> SessionBudget:
        return SessionBudget(
            self.store.r,
            session_id,
            max_llm_calls=settings.budget_max_llm_calls,
            max_input_tokens=settings.budget_max_input_tokens,
        )

    def _check_duplicate(self, session_id: str, metadata: dict) -> DuplicateCheck:
        return check_work_duplicate(
            self.store.r, metadata.get("title"), metadata.get("composer"), session_id=session_id
        )

    def _ask(self, budget: SessionBudget, task: str, prompt: str, schema, system_prompt: str, images):
        verdict = budget.check()
        if not verdict.allowed:
            incr("ai_budget_exhausted_total", task=task)
            raise PipelineError(
                SessionErrorCode.BUDGET_EXHAUSTED,
                f"Smart Upload budget exhausted: {verdict.reason}",
                retryable=False,
            )
        try:
            provider = self.registry.get_provider(task)
        except ProviderUnavailableError as exc:
            raise PipelineError(SessionErrorCode.PROVIDER_UNAVAILABLE, str(exc)) from exc
        started = time.monotonic()
        try:
            result = provider.generate_structured_output(prompt, schema, system_prompt=system_prompt, images=images)
        except ProviderUnavailableError as exc:
            raise PipelineError(SessionErrorCode.PROVIDER_UNAVAILABLE, str(exc)) from exc
        except Exception as exc:
            code = classify_provider_error(exc)
            raise PipelineError(code, f"{provider.name} call failed: {exc}") from exc
        finally:
            budget.record(estimate_input_tokens(prompt, system_prompt, images))
            observe_ms("ai_call_ms", (time.monotonic() - started) * 1000, task=task)
        return result

    def _materialize_parts(self, session: dict, data: bytes, plan: list[dict], title: str) -> tuple[list, list]:
        ranges = [(c["page_range"][0] - 1, c["page_range"][1] - 1) for c in plan]
        splits = self._pdf(lambda: split_pdf(data, ranges), "split")
        session_id = session["session_id"]
        parts, temp_files = [], []
        for idx, (instruction, split) in enumerate(zip(plan, splits)):
            raw_label = instruction.get("instrument") or instruction.get("part_name")
            normalized = normalize_instrument_label(raw_label)
            display = build_part_display_name(title, normalized.instrument)
            key = f"{SMART_UPLOAD_STORAGE_PREFIX}/{session_id}/parts/{idx:02d}_{build_part_storage_slug(display)}.pdf"
            try:
                self.storage.upload(key, split.data, content_type="application/pdf", metadata={"session_id": session_id})
            except StorageError as exc:
                raise PipelineError(SessionErrorCode.STORAGE_UPLOAD_FAILED, f"Upload failed for {key}: {exc}") from exc
            temp_files.append(key)
            parts.append(
                {
                    "instrument": normalized.instrument,
                    "part_name": instruction.get("part_name") or display,
                    "section": normalized.section,
                    "transposition": normalized.transposition,
                    "chair": normalized.chair,
                    "part_type": normalized.part_type,
                    "page_start": split.page_start + 1,
                    "page_end": split.page_end + 1,
                    "page_count": split.page_count,
                    "storage_key": key,
                    "file_name": build_part_filename(display),
                    "file_size": len(split.data),
                }
            )
        return parts, temp_files

    def _queue_auto_commit(self, session_id: str) -> Optional[str]:
        job = self.queue_manager.add(JOB_AUTO_COMMIT, {"session_id": session_id}, job_id=f"{session_id}-auto-commit")
        self.store.set_job_ref(session_id, "auto_commit_job_id", job.id)
        return job.id

    # ------------------------------------------------------------------
    # first pass
    # ------------------------------------------------------------------
    def run_first_pass(self, session_id: str, job_id: str = "") -> dict:
        session = self.store.require(session_id)
        if not self.store.mark_parsing(session_id, job_id):
            log_stage(session_id=session_id, stage="first_pass", event=SKIPPED, job_id=job_id, reason="not_parseable")
            return {"session_id": session_id, "status": "skipped", "parse_status": session.get("parse_status")}

        log_stage(session_id=session_id, stage="first_pass", event=STARTED, job_id=job_id)
        started = time.monotonic()
        try:
            return self._first_pass(session, job_id)
        except PipelineError as exc:
            if exc.retryable:
                raise
            self.store.mark_parse_failed(session_id, exc.code, str(exc))
            incr("first_pass_failed_total", code=exc.code.value)
            log_stage(session_id=session_id, stage="first_pass", event=FAILED, job_id=job_id, error=str(exc), code=exc.code)
            return {"session_id": session_id, "status": "failed", "error_code": exc.code.value}
        finally:
            observe_ms("first_pass_ms", (time.monotonic() - started) * 1000)

    def _first_pass(self, session: dict, job_id: str) -> dict:
        session_id = session["session_id"]
        settings = self.settings_service.load()
        data = self._download(session["storage_key"])
        total_pages, texts, images = self._read_document(data)
        if job_id:
            self.queue_manager.update_progress(job_id, 25, "classify", f"{total_pages} pages read")

        prompt = build_first_pass_prompt(
            file_name=session.get("file_name") or "",
            total_pages=total_pages,
            page_texts=texts,
            sampled_pages=len(images),
        )
        budget = self._budget(session_id, settings)
        result = self._ask(budget, "first_pass", prompt, FirstPassExtraction, FIRST_PASS_SYSTEM_PROMPT, images)

        metadata, plan, confidence = {}, [], 0
        error_code, error_message = None, ""
        if result.ok:
            metadata = result.data.model_dump()
            plan = cutting_plan(result.data.cutting_instructions, total_pages)
            metadata["cutting_instructions"] = plan
            confidence = int(round(result.data.confidence_score))
            if not plan:
                error_code, error_message = SessionErrorCode.MODEL_SCHEMA_INVALID, "No valid cutting instructions"
        else:
            error_code, error_message = SessionErrorCode.MODEL_SCHEMA_INVALID, result.error or "Unparseable model output"
        parse_ok = bool(plan)

        parts, temp_files = [], []
        if parse_ok:
            if job_id:
                self.queue_manager.update_progress(job_id, 60, "split", f"{len(plan)} parts")
            title = metadata.get("title") or PurePosixPath(session.get("file_name") or "").stem
            parts, temp_files = self._materialize_parts(session, data, plan, title)

        segmentation = metadata.get("segmentation_confidence")
        gates = evaluate_quality_gates(
            parsed_parts=parts,
            metadata=metadata,
            total_pages=total_pages,
            max_pages_per_part=settings.max_pages_per_part,
            extraction_confidence=confidence,
            segmentation_confidence=int(round(segmentation)) if segmentation is not None else None,
            segmentation_confidence_threshold=settings.segmentation_confidence_threshold,
        )
        duplicate = self._check_duplicate(session_id, metadata)
        routing = decide_routing(
            gates.final_confidence, parse_ok, settings, quality_gate_failed=gates.failed or duplicate.is_duplicate
        )
        reasons = list(gates.reasons) if parse_ok else []
        if duplicate.is_duplicate:
            reasons.append(duplicate.reason)
        if routing == RoutingDecision.AUTO_APPROVE and not is_autonomous_commit_enabled():
            routing = RoutingDecision.MANUAL_REVIEW
            reasons.append("Autonomous commit is disabled")

        auto = routing == RoutingDecision.AUTO_APPROVE
        self.store.mark_parsed(
            session_id,
            extracted_metadata=metadata,
            confidence_score=confidence,
            final_confidence=gates.final_confidence,
            routing_decision=routing.value,
            parsed_parts=parts,
            cutting_instructions=plan,
            temp_files=temp_files,
            quality_gate_reasons=reasons,
            auto_approved=auto,
            review_status=ReviewStatus.APPROVED if auto else ReviewStatus.PENDING_REVIEW,
            total_pages=total_pages,
            error_code=error_code,
            error_message=error_message,
            duplicate_check=duplicate.to_dict(),
        )

        follow_up = None
        if auto:
            follow_up = self._queue_auto_commit(session_id)
        elif routing == RoutingDecision.NO_PARSE_SECOND_PASS and is_auto_second_pass_enabled():
            try:
                follow_up = request_second_pass(self.store, self.queue_manager, session_id, requested_by=AUTO_REVIEWER)
            except SecondPassIneligibleError as exc:
                logger.info("auto_second_pass_skipped session_id=%s reason=%s", session_id, exc)

        incr("first_pass_completed_total", routing=routing.value)
        log_stage(
            session_id=session_id,
            stage="first_pass",
            event=COMPLETED,
            job_id=job_id,
            routing=routing,
            confidence=gates.final_confidence,
            parts=len(parts),
            quality_gate_reasons=reasons,
        )
        return {
            "session_id": session_id,
            "status": "parsed",
            "routing_decision": routing.value,
            "final_confidence": gates.final_confidence,
            "parts": len(parts),
            "follow_up_job_id": follow_up,
        }

    # ------------------------------------------------------------------
    # second pass
    # ------------------------------------------------------------------
    def run_second_pass(self, session_id: str, job_id: str = "") -> dict:
        if not self.store.mark_second_pass_running(session_id, job_id):
            current = self.store.require(session_id)
            redelivered = (
                current.get("second_pass_status") == SecondPassStatus.RUNNING.value
                and current.get("second_pass_job_id") == job_id
            )
            if not redelivered:
                log_stage(session_id=session_id, stage="second_pass", event=SKIPPED, job_id=job_id,
                          second_pass_status=current.get("second_pass_status"))
                return {"session_id": session_id, "status": "skipped"}

        log_stage(session_id=session_id, stage="second_pass", event=STARTED, job_id=job_id)
        started = time.monotonic()
        try:
            return self._second_pass(self.store.require(session_id), job_id)
        except PipelineError as exc:
            if exc.retryable:
                raise
            self.store.mark_second_pass_failed(session_id, exc.code, str(exc))
            incr("second_pass_failed_total", code=exc.code.value)
            log_stage(session_id=session_id, stage="second_pass", event=FAILED, job_id=job_id, error=str(exc), code=exc.code)
            return {"session_id": session_id, "status": "failed", "error_code": exc.code.value}
        finally:
            observe_ms("second_pass_ms", (time.monotonic() - started) * 1000)

    def _second_pass(self, session: dict, job_id: str) -> dict:
        session_id = session["session_id"]
        settings = self.settings_service.load()
        data = self._download(session["storage_key"])
        total_pages, texts, images = self._read_document(data)
        first = session.get("extracted_metadata") or {}

        prompt = build_verification_prompt(total_pages=total_pages, metadata=first, page_texts=texts)
        budget = self._budget(session_id, settings)
        result = self._ask(budget, "verification", prompt, VerificationResult, VERIFICATION_SYSTEM_PROMPT, images)
        if not result.ok:
            raise PipelineError(
                SessionErrorCode.MODEL_SCHEMA_INVALID,
                result.error or "Verification output unparseable",
                retryable=False,
            )

        verified = result.data.model_dump()
        disagreements = detect_disagreements(first, verified)
        merged = dict(first)
        for key, value in verified.items():
            if key in ("verification_confidence", "corrections"):
                continue
            if value not in (None, "", []):
                merged[key] = value

        confidence = int(round(result.data.verification_confidence or result.data.confidence_score))
        extra = {}
        parts = session.get("parsed_parts") or []
        plan = cutting_plan(verified.get("cutting_instructions"), total_pages)
        merged["cutting_instructions"] = plan or first.get("cutting_instructions") or []
        if not parts and plan:
            title = merged.get("title") or PurePosixPath(session.get("file_name") or "").stem
            parts, temp_files = self._materialize_parts(session, data, plan, title)
            extra.update(
                parsed_parts=parts,
                cutting_instructions=plan,
                temp_files=(session.get("temp_files") or []) + temp_files,
                total_pages=total_pages,
            )

        segmentation = merged.get("segmentation_confidence")
        gates = evaluate_quality_gates(
            parsed_parts=parts,
            metadata=merged,
            total_pages=total_pages,
            max_pages_per_part=settings.max_pages_per_part,
            extraction_confidence=confidence,
            segmentation_confidence=int(round(segmentation)) if segmentation is not None else None,
            segmentation_confidence_threshold=settings.segmentation_confidence_threshold,
        )
        reasons = list(gates.reasons)
        if disagreements:
            reasons.append(f"First and second pass disagree on: {', '.join(d['field'] for d in disagreements)}")
        duplicate = self._check_duplicate(session_id, merged)
        if duplicate.is_duplicate:
            reasons.append(duplicate.reason)

        auto = (
            not reasons
            and gates.final_confidence >= settings.autonomous_approval_threshold
            and is_autonomous_commit_enabled()
            and session.get("review_status") == ReviewStatus.PENDING_REVIEW.value
        )
        routing = RoutingDecision.AUTO_APPROVE if auto else RoutingDecision.MANUAL_REVIEW
        extra["quality_gate_reasons"] = reasons
        extra["duplicate_check"] = duplicate.to_dict()
        if auto:
            extra.update(review_status=ReviewStatus.APPROVED, auto_approved=True)

        self.store.mark_second_pass_verified(
            session_id,
            result={**verified, "disagreements": disagreements},
            extracted_metadata=merged,
            confidence_score=confidence,
            final_confidence=gates.final_confidence,
            routing_decision=routing.value,
            extra=extra,
        )
        follow_up = self._queue_auto_commit(session_id) if auto else None

        incr("second_pass_completed_total", routing=routing.value)
        log_stage(
            session_id=session_id,
            stage="second_pass",
            event=COMPLETED,
            job_id=job_id,
            routing=routing,
            confidence=gates.final_confidence,
            disagreements=len(disagreements),
        )
        return {
            "session_id": session_id,
            "status": "verified",
            "routing_decision": routing.value,
            "final_confidence": gates.final_confidence,
            "disagreements": disagreements,
            "follow_up_job_id": follow_up,
        }

    # ------------------------------------------------------------------
    # follow-ups
    # ------------------------------------------------------------------
    def run_auto_commit(self, session_id: str, job_id: str = "") -> dict:
        result = commit_session(self.store, self.storage, session_id, reviewer=AUTO_REVIEWER, auto=True)
        return result.to_dict()

    def run_cleanup(self, session_id: str, keys: list[str], job_id: str = "") -> dict:
        deleted = 0
        for key in keys or []:
            try:
                if self.storage.delete(key):
                    deleted += 1
            except StorageError as exc:
                logger.warning("cleanup_delete_failed session_id=%s key=%s error=%s", session_id, key, exc)
        log_stage(session_id=session_id, stage="cleanup", event=COMPLETED, job_id=job_id, deleted=deleted)
        return {"session_id": session_id, "deleted": deleted}

    def handle_final_failure(self, job_name: str, session_id: str, exc: BaseException) -> None:
        """Record why a job gave up so the session never stalls silently."""
        code = exc.code if isinstance(exc, PipelineError) else SessionErrorCode.INTERNAL_ERROR
        message = f"{job_name} failed after retries: {exc}"
        if job_name == JOB_PROCESS:
            self.store.mark_parse_failed(session_id, code, message)
        elif job_name == JOB_SECOND_PASS:
            self.store.mark_second_pass_failed(session_id, code, message)
        elif job_name == JOB_AUTO_COMMIT:
            self.store.set_fields(
                session_id,
                {"error_code": SessionErrorCode.COMMIT_FAILED, "error_message": message},
            )
        elif job_name == JOB_CLEANUP:
            logger.warning("cleanup_gave_up session_id=%s error=%s", session_id, exc)
        log_stage(session_id=session_id, stage=job_name, event=FAILED, error=message, code=code)
