# User value: This file lets admins pick models and thresholds per pipeline task and see who changed what.
import json
import logging
import os
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from config import LLM_PROVIDER
from schemas.requests import SettingsUpdateRequest
from services.ai.base import ModelParams

logger = logging.getLogger("api.settings")

SETTINGS_KEY = "smart_upload:settings"
SETTINGS_AUDIT_KEY = "smart_upload:settings:audit"
SETTINGS_AUDIT_MAX = 500

TASKS = ("first_pass", "verification", "adjudication")

_DEFAULT_MODELS = {
    "openai": "gpt-4o",
    "anthropic": "claude-3-5-sonnet-20241022",
    "gemini": "gemini-2.0-flash",
    "openrouter": "openai/gpt-4o",
    "custom": "",
}


class SettingsValidationError(ValueError):
    pass


class TaskModelConfig(BaseModel):
    provider: str = LLM_PROVIDER
    model: str = ""
    temperature: Optional[float] = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=4096, ge=1, le=32000)
    top_p: Optional[float] = Field(default=None, gt=0.0, le=1.0)

    def resolved_model(self) -> str:
        return self.model or _DEFAULT_MODELS.get(self.provider, "")

    def to_params(self) -> ModelParams:
        return ModelParams(
            model=self.resolved_model(),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
        )


def _task_default(task: str) -> TaskModelConfig:
    provider = os.getenv(f"LLM_{task.upper()}_PROVIDER", LLM_PROVIDER).strip().lower()
    model = os.getenv(f"LLM_{task.upper()}_MODEL", "").strip()
    # verification runs colder than the first pass
    temperature = 0.0 if task != "first_pass" else 0.1
    return TaskModelConfig(provider=provider, model=model, temperature=temperature)


class SmartUploadSettings(BaseModel):
    enabled: bool = True
    auto_approve_threshold: int = Field(default=int(os.getenv("SMART_UPLOAD_AUTO_APPROVE_THRESHOLD", "90")), ge=0, le=100)
    skip_parse_threshold: int = Field(default=int(os.getenv("SMART_UPLOAD_SKIP_PARSE_THRESHOLD", "60")), ge=0, le=100)
    autonomous_approval_threshold: int = Field(default=95, ge=0, le=100)
    segmentation_confidence_threshold: int = Field(default=70, ge=0, le=100)
    max_pages_per_part: int = Field(default=12, ge=1, le=500)
    budget_max_llm_calls: int = Field(default=int(os.getenv("SMART_UPLOAD_BUDGET_MAX_LLM_CALLS", "5")), ge=0)
    budget_max_input_tokens: int = Field(default=int(os.getenv("SMART_UPLOAD_BUDGET_MAX_INPUT_TOKENS", "500000")), ge=0)
    first_pass: TaskModelConfig = Field(default_factory=lambda: _task_default("first_pass"))
    verification: TaskModelConfig = Field(default_factory=lambda: _task_default("verification"))
    adjudication: TaskModelConfig = Field(default_factory=lambda: _task_default("adjudication"))

    def task(self, name: str) -> TaskModelConfig:
        if name not in TASKS:
            raise KeyError(f"Unknown AI task: {name}")
        return getattr(self, name)


def _validate(settings: SmartUploadSettings) -> None:
    if settings.skip_parse_threshold > settings.auto_approve_threshold:
        raise SettingsValidationError(
            "skip_parse_threshold must be less than or equal to auto_approve_threshold"
        )


def _diff(old: dict, new: dict, prefix: str = "") -> dict:
    changes = {}
    for key in sorted(set(old) | set(new)):
        path = f"{prefix}{key}"
        before, after = old.get(key), new.get(key)
        if isinstance(before, dict) and isinstance(after, dict):
            changes.update(_diff(before, after, prefix=f"{path}."))
        elif before != after:
            changes[path] = {"old": before, "new": after}
    return changes


class SettingsService:
    def __init__(self, r):
        self.r = r

    def load(self) -> SmartUploadSettings:
        raw = self.r.get(SETTINGS_KEY)
        if not raw:
            return SmartUploadSettings()
        try:
            return SmartUploadSettings.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            logger.error("settings_load_invalid falling_back_to_defaults error=%s", exc)
            return SmartUploadSettings()

    def task_params(self, task: str) -> tuple[str, ModelParams]:
        config = self.load().task(task)
        return config.provider, config.to_params()

    def update(self, patch: SettingsUpdateRequest, *, actor: str) -> SmartUploadSettings:
        current = self.load()
        before = current.model_dump()
        merged = dict(before)
        for key, value in patch.model_dump(exclude_unset=True).items():
            if key in TASKS and isinstance(value, dict):
                merged[key] = {**before[key], **{k: v for k, v in value.items() if v is not None}}
            elif value is not None:
                merged[key] = value

        try:
            updated = SmartUploadSettings.model_validate(merged)
        except ValidationError as exc:
            raise SettingsValidationError(str(exc)) from exc
        _validate(updated)

        after = updated.model_dump()
        changes = _diff(before, after)
        if not changes:
            return updated

        entry = {
            "ts": datetime.utcnow().isoformat(),
            "actor": actor,
            "changes": changes,
        }
        pipe = self.r.pipeline()
        pipe.set(SETTINGS_KEY, json.dumps(after, ensure_ascii=False))
        pipe.lpush(SETTINGS_AUDIT_KEY, json.dumps(entry, ensure_ascii=False))
        pipe.ltrim(SETTINGS_AUDIT_KEY, 0, SETTINGS_AUDIT_MAX - 1)
        pipe.execute()

        logger.info("settings_updated actor=%s fields=%s", actor, sorted(changes))
        return updated

    def audit_log(self, limit: int = 50) -> list[dict]:
        rows = self.r.lrange(SETTINGS_AUDIT_KEY, 0, max(0, limit - 1))
        return [json.loads(row) for row in rows]
