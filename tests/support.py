# Shared builders for the unit tests: blank PDFs, a scripted AI provider, seeded sessions.
import io
import json

import fakeredis
from pypdf import PdfWriter

from schemas.session_contract import ReviewStatus
from services.ai.base import AIProvider
from services.sessions import SessionStore
from services.storage import MemoryStorage

UPLOADER = "musician@example.com"
REVIEWER = "librarian@example.com"


def make_pdf(pages: int = 4) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


class ScriptedProvider(AIProvider):
    """Returns queued replies in order; the last one repeats."""

    name = "openai"

    def __init__(self, replies=None, **kwargs):
        super().__init__(api_key=kwargs.pop("api_key", "sk-test-key"), max_retries=0, **kwargs)
        self.replies = [r if isinstance(r, str) else json.dumps(r) for r in (replies or [])]
        self.prompts = []

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def with_params(self, params):
        self.params = params
        return self

    def _complete(self, prompt, system_prompt, images, json_mode):
        self.prompts.append(prompt)
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


def extraction(confidence=95, segmentation=95, title="American Patrol", composer="F. W. Meacham", **overrides):
    data = {
        "title": title,
        "composer": composer,
        "arranger": None,
        "publisher": "Carl Fischer",
        "file_type": "PART",
        "is_multi_part": True,
        "parts": [{"instrument": "Clarinet 1"}, {"instrument": "Trumpet"}],
        "cutting_instructions": [
            {"part_name": "Clarinet 1", "instrument": "Clarinet 1", "page_range": [1, 2]},
            {"part_name": "Trumpet", "instrument": "Trumpet", "page_range": [3, 4]},
        ],
        "total_page_count": 4,
        "confidence_score": confidence,
        "segmentation_confidence": segmentation,
        "notes": None,
    }
    data.update(overrides)
    return data


def create_session(store: SessionStore, storage: MemoryStorage, session_id: str = "sess-1", pages: int = 4) -> dict:
    key = f"smart-upload/{session_id}/original/score.pdf"
    storage.upload(key, make_pdf(pages))
    return store.create(
        session_id=session_id,
        storage_key=key,
        file_name="American Patrol.pdf",
        file_size=1024,
        mime_type="application/pdf",
        uploaded_by=UPLOADER,
        total_pages=pages,
    )


def seed_parsed_session(
    store: SessionStore,
    storage: MemoryStorage,
    session_id: str = "sess-1",
    title="American Patrol",
    parts: int = 2,
    confidence: int = 80,
) -> dict:
    """A session that finished its first pass and waits for a reviewer."""
    create_session(store, storage, session_id)
    parsed_parts, temp_files = [], []
    for idx in range(parts):
        key = f"smart-upload/{session_id}/parts/{idx:02d}_part.pdf"
        storage.upload(key, make_pdf(2))
        temp_files.append(key)
        parsed_parts.append(
            {
                "instrument": "1st Bb Clarinet" if idx == 0 else "Trumpet",
                "part_name": f"Part {idx + 1}",
                "section": "Woodwinds" if idx == 0 else "Brass",
                "page_start": idx * 2 + 1,
                "page_end": idx * 2 + 2,
                "page_count": 2,
                "storage_key": key,
                "file_name": f"part_{idx}.pdf",
            }
        )
    store.mark_parsing(session_id, "job-1")
    store.mark_parsed(
        session_id,
        extracted_metadata={"title": title, "composer": "F. W. Meacham", "cutting_instructions": []},
        confidence_score=confidence,
        final_confidence=confidence,
        routing_decision="manual_review",
        parsed_parts=parsed_parts,
        cutting_instructions=[],
        temp_files=temp_files,
        quality_gate_reasons=[],
        auto_approved=False,
        review_status=ReviewStatus.PENDING_REVIEW,
    )
    return store.require(session_id)
