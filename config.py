import os
from dotenv import load_dotenv

load_dotenv()

SERVICE_NAME = "smart-upload-api"

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
GCS_BUCKET_NAME = os.environ.get("GCS_BUCKET_NAME", "").strip()

# Queue key namespace; each named queue lives under "<prefix>:<queue>".
QUEUE_PREFIX = os.environ.get("QUEUE_PREFIX", "smart_upload:queue")
FIRST_PASS_QUEUE = os.environ.get("FIRST_PASS_QUEUE", "first_pass")
SECOND_PASS_QUEUE = os.environ.get("SECOND_PASS_QUEUE", "second_pass")
CLEANUP_QUEUE = os.environ.get("CLEANUP_QUEUE", "cleanup")
DLQ_NAME = os.environ.get("DLQ_NAME", "dead_letter")
COMPLETED_HISTORY_LIMIT = int(os.environ.get("COMPLETED_HISTORY_LIMIT", "1000"))

WORKER_POLL_INTERVAL_SEC = float(os.environ.get("WORKER_POLL_INTERVAL_SEC", "1.0"))
WORKER_STALLED_LEASE_SEC = int(os.environ.get("WORKER_STALLED_LEASE_SEC", "900"))
WORKER_CLIENT_NAME = "smart-upload-worker"

SMART_UPLOAD_SERVICE_TOKEN = os.environ.get("SMART_UPLOAD_SERVICE_TOKEN", "").strip()
SMART_UPLOAD_MAX_FILE_SIZE_MB = int(os.environ.get("SMART_UPLOAD_MAX_FILE_SIZE_MB", "50"))
SMART_UPLOAD_STORAGE_PREFIX = os.environ.get("SMART_UPLOAD_STORAGE_PREFIX", "smart-upload")
IDEMPOTENCY_TTL_SEC = int(os.environ.get("IDEMPOTENCY_TTL_SEC", "900"))

SMART_UPLOAD_LLM_TIMEOUT_MS = int(os.environ.get("SMART_UPLOAD_LLM_TIMEOUT_MS", "120000"))
SMART_UPLOAD_PDF_TIMEOUT_MS = int(os.environ.get("SMART_UPLOAD_PDF_TIMEOUT_MS", "60000"))
SMART_UPLOAD_LLM_MAX_RETRIES = int(os.environ.get("SMART_UPLOAD_LLM_MAX_RETRIES", "3"))
SMART_UPLOAD_MAX_PROMPT_CHARS = int(os.environ.get("SMART_UPLOAD_MAX_PROMPT_CHARS", "20000"))
SMART_UPLOAD_PREVIEW_SCALE = float(os.environ.get("SMART_UPLOAD_PREVIEW_SCALE", "1.5"))
# pages sent to the model as images, and pages whose text layer is read
SMART_UPLOAD_VISION_PAGES = int(os.environ.get("SMART_UPLOAD_VISION_PAGES", "8"))
SMART_UPLOAD_TEXT_PAGES = int(os.environ.get("SMART_UPLOAD_TEXT_PAGES", "40"))

LLM_OPENAI_API_KEY = os.environ.get("LLM_OPENAI_API_KEY", "")
LLM_ANTHROPIC_API_KEY = os.environ.get("LLM_ANTHROPIC_API_KEY", "")
LLM_GEMINI_API_KEY = os.environ.get("LLM_GEMINI_API_KEY", "")
LLM_OPENROUTER_API_KEY = os.environ.get("LLM_OPENROUTER_API_KEY", "")
LLM_OPENROUTER_BASE_URL = os.environ.get("LLM_OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
LLM_CUSTOM_API_KEY = os.environ.get("LLM_CUSTOM_API_KEY", "")
LLM_CUSTOM_BASE_URL = os.environ.get("LLM_CUSTOM_BASE_URL", "")
LLM_PROVIDER = os.environ.get("LLM_PROVIDER", "openai").strip().lower()
PROVIDER_FALLBACK_ORDER = [
    p.strip().lower()
    for p in os.environ.get("PROVIDER_FALLBACK_ORDER", "openai,anthropic,gemini,openrouter,custom").split(",")
    if p.strip()
]
