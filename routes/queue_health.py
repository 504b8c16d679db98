# User value: This route gives operators clear visibility into queue load and the dead-letter backlog.
import logging

from fastapi import APIRouter, Depends

from config import WORKER_CLIENT_NAME
from services.auth import verify_google_token
from services.deps import get_queue_manager
from services.feature_flags import is_queue_orchestration_enabled
from services.queue import QueueManager

router = APIRouter()
logger = logging.getLogger("api.queue_health")


def _worker_clients(r) -> int:
    clients = r.client_list() or []
    return sum(1 for c in clients if str(c.get("name") or "").startswith(WORKER_CLIENT_NAME))


@router.get("/queue/health")
# User value: shows queue pressure while users wait for their upload to be parsed.
def queue_health(
    user=Depends(verify_google_token),
    queue_manager: QueueManager = Depends(get_queue_manager),
):
    return {
        "enabled": is_queue_orchestration_enabled(),
        "queues": queue_manager.get_all_queue_stats(),
        "concurrency": queue_manager.concurrency,
        "dead_letter_depth": queue_manager.dead_letter_depth(),
        "worker_clients": _worker_clients(queue_manager.r),
    }
