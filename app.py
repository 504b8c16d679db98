# User value: This file serves the smart upload API so musicians and librarians get scores into the library with one upload.
# app.py
import os
import logging
import time

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env before importing modules that read os.getenv at import time.
load_dotenv(os.path.join(os.path.dirname(__file__), ".env"))

from config import SERVICE_NAME
from utils.json_logging import configure_json_logging
from utils.metrics import incr, observe_ms


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    configure_json_logging(service=SERVICE_NAME, level=level)


configure_logging()
logger = logging.getLogger("api.error")
from startup_env import validate_startup_env
from utils.request_id import REQUEST_ID_HEADER, get_request_id, normalize_request_id, set_request_id

validate_startup_env()

from routes.dlq import router as dlq_router
from routes.health import router as health_router
from routes.jobs import router as jobs_router
from routes.queue_health import router as queue_health_router
from routes.review import router as review_router
from routes.settings import router as settings_router
from routes.smart_upload import router as smart_upload_router
from services.storage import StorageError

app = FastAPI(title="Smart Upload API")


def _parse_csv_env(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return list(dict.fromkeys(x.strip() for x in raw.split(",") if x.strip()))


@app.middleware("http")
# User value: every response carries a request id that support can trace through the worker logs.
async def request_id_middleware(request: Request, call_next):
    request_id = normalize_request_id(request.headers.get(REQUEST_ID_HEADER))
    set_request_id(request_id)
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = int(getattr(response, "status_code", 500))
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    finally:
        duration_ms = (time.perf_counter() - started) * 1000.0
        route = request.scope.get("route")
        path = getattr(route, "path", None) or request.url.path
        status_class = f"{status_code // 100}xx"
        incr("api_http_requests_total", method=request.method.upper(), path=path, status_class=status_class)
        observe_ms("api_http_request_latency_ms", duration_ms, method=request.method.upper(), path=path)
        set_request_id(None)


def _extract_error_message(detail) -> str:
    if isinstance(detail, dict):
        return str(detail.get("error_message") or detail.get("message") or detail.get("detail") or detail)
    if isinstance(detail, list):
        return "; ".join(str(x) for x in detail)
    return str(detail)


_DEFAULT_ERROR_CODES = {
    400: "INVALID_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "RESOURCE_NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "STATE_CONFLICT",
    413: "FILE_TOO_LARGE",
    503: "SERVICE_UNAVAILABLE",
}


def _to_error_code(status_code: int, detail) -> str:
    if isinstance(detail, dict) and detail.get("error_code"):
        return str(detail.get("error_code")).strip().upper()
    return _DEFAULT_ERROR_CODES.get(status_code, f"HTTP_{status_code}")


def _error_response(
    request: Request,
    status_code: int,
    detail,
    *,
    error_code: str | None = None,
    error_message: str | None = None,
) -> JSONResponse:
    body = {
        "error_code": error_code or _to_error_code(status_code, detail),
        "error_message": error_message or _extract_error_message(detail),
        "detail": detail,
        "path": request.url.path,
        "request_id": get_request_id() or normalize_request_id(request.headers.get(REQUEST_ID_HEADER)),
    }
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_encoder(exc.errors())
    logger.warning("request_failed_validation status=400 path=%s errors=%s", request.url.path, len(errors))
    return _error_response(
        request,
        400,
        errors,
        error_code="VALIDATION_ERROR",
        error_message="Request validation failed",
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    response = _error_response(request, exc.status_code, exc.detail)
    logger.warning(
        "request_failed status=%s path=%s error_message=%s",
        exc.status_code,
        request.url.path,
        _extract_error_message(exc.detail),
    )
    return response


@app.exception_handler(RedisError)
# User value: a Redis blip shows up as "try again shortly" instead of a crash page.
async def redis_exception_handler(request: Request, exc: RedisError):
    logger.error("request_failed_redis path=%s error=%s: %s", request.url.path, exc.__class__.__name__, exc)
    return _error_response(
        request,
        503,
        "Redis unavailable",
        error_code="INFRA_REDIS",
        error_message="Session store temporarily unavailable",
    )


@app.exception_handler(StorageError)
async def storage_exception_handler(request: Request, exc: StorageError):
    logger.error("request_failed_storage path=%s error=%s", request.url.path, exc)
    return _error_response(
        request,
        503,
        "Object storage unavailable",
        error_code="INFRA_STORAGE",
        error_message="File storage temporarily unavailable",
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "request_failed_unhandled path=%s error=%s: %s",
        request.url.path,
        exc.__class__.__name__,
        exc,
    )
    return _error_response(
        request,
        500,
        "Unhandled server exception",
        error_code="INTERNAL_SERVER_ERROR",
        error_message="Internal server error",
    )


CORS_ALLOW_ORIGINS = _parse_csv_env("CORS_ALLOW_ORIGINS")
CORS_ALLOW_ORIGIN_REGEX = (os.getenv("CORS_ALLOW_ORIGIN_REGEX") or "").strip() or None
logger.info(
    "cors_configured allow_origins=%s allow_origin_regex=%s",
    CORS_ALLOW_ORIGINS,
    CORS_ALLOW_ORIGIN_REGEX or "",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_origin_regex=CORS_ALLOW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)

app.include_router(health_router)
app.include_router(smart_upload_router)
app.include_router(review_router)
app.include_router(jobs_router)
app.include_router(queue_health_router)
app.include_router(dlq_router)
app.include_router(settings_router)
