import logging
import os
from typing import List

logger = logging.getLogger("api.startup")

ROLE_API = "api"
ROLE_WORKER = "worker"

AI_KEY_VARS = (
    "LLM_OPENAI_API_KEY",
    "LLM_ANTHROPIC_API_KEY",
    "LLM_GEMINI_API_KEY",
    "LLM_OPENROUTER_API_KEY",
    "LLM_CUSTOM_API_KEY",
)


def _is_blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def _validate_redis_url(value: str | None, key: str, errors: List[str]) -> None:
    if _is_blank(value):
        errors.append(f"{key} is required")
        return
    if not (value.startswith("redis://") or value.startswith("rediss://")):
        errors.append(f"{key} must start with redis:// or rediss://")


def _validate_cors_allow_origins(value: str | None, errors: List[str]) -> None:
    if _is_blank(value):
        errors.append("CORS_ALLOW_ORIGINS is required")
        return

    origins = [x.strip() for x in str(value).split(",") if x.strip()]
    if not origins:
        errors.append("CORS_ALLOW_ORIGINS must contain at least one origin")
        return

    for origin in origins:
        if origin == "*":
            errors.append("CORS_ALLOW_ORIGINS must not contain '*' in strict allowlist mode")
            continue
        if not (origin.startswith("http://") or origin.startswith("https://")):
            errors.append(f"CORS origin must start with http:// or https://: {origin}")


def _validate_storage(errors: List[str], warnings: List[str]) -> None:
    backend = (os.getenv("STORAGE_BACKEND") or "gcs").strip().lower()
    if backend == "memory":
        warnings.append("STORAGE_BACKEND=memory; uploads are lost on restart and not shared between processes")
        return
    if backend != "gcs":
        errors.append(f"STORAGE_BACKEND must be gcs or memory, got {backend}")
        return
    if _is_blank(os.getenv("GCS_BUCKET_NAME")):
        errors.append("GCS_BUCKET_NAME is required")
    if _is_blank(os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON")):
        warnings.append(
            "GOOGLE_APPLICATION_CREDENTIALS_JSON is not set; relying on ambient ADC credentials"
        )


def validate_startup_env(role: str = ROLE_API) -> None:
    errors: List[str] = []
    warnings: List[str] = []

    if role == ROLE_API:
        if _is_blank(os.getenv("GOOGLE_CLIENT_ID")):
            errors.append("GOOGLE_CLIENT_ID is required")
        _validate_cors_allow_origins(os.getenv("CORS_ALLOW_ORIGINS"), errors)

    _validate_redis_url(os.getenv("REDIS_URL"), "REDIS_URL", errors)
    _validate_storage(errors, warnings)

    if not any(not _is_blank(os.getenv(key)) for key in AI_KEY_VARS):
        warnings.append("No LLM provider API key is set; first and second passes will fail until one is configured")

    if errors:
        for err in errors:
            logger.error("startup_env_invalid role=%s %s", role, err)
        raise RuntimeError("Startup env validation failed: " + "; ".join(errors))

    for warning in warnings:
        logger.warning("startup_env_warning role=%s %s", role, warning)

    logger.info("startup_env_validated role=%s", role)
