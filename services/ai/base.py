# User value: This file gives every AI backend the same shape so the pipeline never cares which one is configured.
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Type

from pydantic import BaseModel

from config import SMART_UPLOAD_LLM_MAX_RETRIES, SMART_UPLOAD_LLM_TIMEOUT_MS
from schemas.session_contract import SessionErrorCode
from services.ai.structured_output import parse_and_validate_json, safe_preview, with_retry, with_timeout

logger = logging.getLogger("api.ai")


class ProviderUnavailableError(RuntimeError):
    """Neither the selected provider nor any fallback is configured."""


class ProviderCallError(RuntimeError):
    def __init__(self, code: SessionErrorCode, message: str):
        super().__init__(message)
        self.code = code


@dataclass
class ModelParams:
    model: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None


@dataclass
class StructuredOutputResult:
    data: Any = None
    error: Optional[str] = None
    raw_response: Optional[str] = None
    error_code: Optional[SessionErrorCode] = None

    @property
    def ok(self) -> bool:
        return self.data is not None


@dataclass
class ImageInput:
    data: bytes
    mime_type: str = "image/png"
    label: str = ""


def classify_provider_error(exc: BaseException) -> SessionErrorCode:
    if isinstance(exc, ProviderCallError):
        return exc.code
    status = getattr(exc, "status_code", None)
    text = f"{exc.__class__.__name__} {exc}".lower()
    if isinstance(exc, TimeoutError) or "timeout" in text or "timed out" in text:
        return SessionErrorCode.MODEL_TIMEOUT
    if status == 429 or "rate limit" in text or "ratelimit" in text or "429" in text:
        return SessionErrorCode.MODEL_RATE_LIMITED
    if status in (401, 403) or "authentication" in text or "permission" in text or "api key" in text:
        return SessionErrorCode.MODEL_AUTH_FAILED
    if (isinstance(status, int) and status >= 500) or "server error" in text or "overloaded" in text:
        return SessionErrorCode.MODEL_SERVER_ERROR
    if "connect" in text or "connection" in text or "unreachable" in text:
        return SessionErrorCode.MODEL_ENDPOINT_UNREACHABLE
    return SessionErrorCode.INTERNAL_ERROR


class AIProvider(ABC):
    """Uniform contract over the chat backends.

    Subclasses implement `is_configured` (no network) and `_complete`, which performs
    one raw request. Timeout and transient-error retry are applied here so every
    backend behaves the same under load.
    """

    name = "base"
    supports_json_mode = False

    def __init__(
        self,
        *,
        api_key: str = "",
        base_url: str = "",
        params: Optional[ModelParams] = None,
        timeout_ms: int = SMART_UPLOAD_LLM_TIMEOUT_MS,
        max_retries: int = SMART_UPLOAD_LLM_MAX_RETRIES,
    ):
        self.api_key = (api_key or "").strip()
        self.base_url = (base_url or "").strip()
        self.params = params or ModelParams(model="")
        self.timeout_ms = timeout_ms
        self.max_retries = max_retries
        self._client = None

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    def _complete(
        self,
        prompt: str,
        system_prompt: Optional[str],
        images: Sequence[ImageInput],
        json_mode: bool,
    ) -> str:
        ...

    def with_params(self, params: ModelParams) -> "AIProvider":
        clone = self.__class__(
            api_key=self.api_key,
            base_url=self.base_url,
            params=params,
            timeout_ms=self.timeout_ms,
            max_retries=self.max_retries,
        )
        clone._client = self._client
        return clone

    def describe(self) -> dict:
        return {
            "provider": self.name,
            "model": self.params.model,
            "configured": self.is_configured(),
            "base_url": self.base_url or None,
        }

    def chat_completion(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        images: Sequence[ImageInput] = (),
        json_mode: bool = False,
    ) -> str:
        if not self.is_configured():
            raise ProviderUnavailableError(f"AI provider '{self.name}' is not configured")

        def call() -> str:
            return with_timeout(
                lambda: self._complete(prompt, system_prompt, images, json_mode),
                self.timeout_ms,
            )

        text = with_retry(call, max_retries=self.max_retries, context=f"{self.name}:{self.params.model}")
        if not text or not str(text).strip():
            raise ProviderCallError(SessionErrorCode.MODEL_EMPTY_RESPONSE, f"{self.name} returned an empty response")
        return str(text)

    def generate_structured_output(
        self,
        prompt: str,
        schema: Type[BaseModel],
        system_prompt: Optional[str] = None,
        images: Sequence[ImageInput] = (),
    ) -> StructuredOutputResult:
        """Ask for JSON and validate it. Transport failures raise; bad JSON is returned as an error."""
        raw = self.chat_completion(
            prompt,
            system_prompt=system_prompt,
            images=images,
            json_mode=self.supports_json_mode,
        )
        data = parse_and_validate_json(raw, schema)
        if data is None:
            logger.warning(
                "structured_output_failed provider=%s model=%s schema=%s preview=%s",
                self.name,
                self.params.model,
                schema.__name__,
                safe_preview(raw, 300),
            )
            return StructuredOutputResult(
                data=None,
                error=f"Model output did not match {schema.__name__}",
                raw_response=raw,
                error_code=SessionErrorCode.MODEL_SCHEMA_INVALID,
            )
        return StructuredOutputResult(data=data, error=None, raw_response=raw)
