# User value: This file blocks auto-approval for splits a human should look at, and says exactly why.
from dataclasses import dataclass, field
from typing import Optional

from services.part_naming import (
    PART_TYPE_CONDENSED_SCORE,
    PART_TYPE_CONDUCTOR_SCORE,
    PART_TYPE_FULL_SCORE,
    SECTION_SCORE,
)

FORBIDDEN_LABELS = {"null", "none", "n/a", "na", "unknown", "undefined", ""}

_SCORE_SECTIONS = {
    SECTION_SCORE,
    SECTION_SCORE.lower(),
    PART_TYPE_FULL_SCORE,
    PART_TYPE_CONDUCTOR_SCORE,
    PART_TYPE_CONDENSED_SCORE,
}

DEFAULT_SEGMENTATION_CONFIDENCE_THRESHOLD = 70
MULTI_PART_MIN_PAGES = 10


@dataclass
class QualityGateResult:
    failed: bool
    reasons: list[str] = field(default_factory=list)
    final_confidence: int = 0


def is_forbidden_label(value) -> bool:
    if value is None:
        return True
    return str(value).strip().lower() in FORBIDDEN_LABELS


def _is_score(part: dict) -> bool:
    return part.get("section") in _SCORE_SECTIONS or part.get("part_type") in _SCORE_SECTIONS


def evaluate_quality_gates(
    *,
    parsed_parts: list[dict],
    metadata: dict,
    total_pages: int,
    max_pages_per_part: int,
    extraction_confidence: int,
    segmentation_confidence: Optional[int] = None,
    segmentation_confidence_threshold: int = DEFAULT_SEGMENTATION_CONFIDENCE_THRESHOLD,
) -> QualityGateResult:
    """Single source of auto-commit eligibility for both passes.

    final_confidence is min(extraction, segmentation), or the extraction confidence
    alone when no segmentation confidence was reported.
    """
    reasons = []

    if not parsed_parts:
        reasons.append("No parts were produced from the document")

    for part in parsed_parts:
        if is_forbidden_label(part.get("instrument")) or is_forbidden_label(part.get("part_name")):
            reasons.append(
                f'Part with null/unknown label: instrument="{part.get("instrument")}" '
                f'part_name="{part.get("part_name")}"'
            )
            break

    for part in parsed_parts:
        page_count = int(part.get("page_count") or 0)
        if not _is_score(part) and page_count > max_pages_per_part:
            reasons.append(
                f'Non-score part "{part.get("part_name")}" has {page_count} pages (max {max_pages_per_part})'
            )
            break

    cuts = len(metadata.get("cutting_instructions") or [])
    if metadata.get("is_multi_part") and total_pages > MULTI_PART_MIN_PAGES and cuts < 2:
        reasons.append(
            f"is_multi_part=true with {total_pages} pages but only {cuts} cutting instruction(s)"
        )

    if segmentation_confidence is not None and segmentation_confidence < segmentation_confidence_threshold:
        reasons.append(
            f"segmentation_confidence {segmentation_confidence} < threshold {segmentation_confidence_threshold}"
        )

    final_confidence = int(extraction_confidence or 0)
    if segmentation_confidence is not None:
        final_confidence = min(final_confidence, int(segmentation_confidence))

    return QualityGateResult(failed=bool(reasons), reasons=reasons, final_confidence=final_confidence)
