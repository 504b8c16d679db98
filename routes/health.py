from fastapi import APIRouter, Depends

from services.redis_client import get_redis, ping_redis

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health(r=Depends(get_redis)):
    redis_status = ping_redis(r)
    return {
        "status": "OK" if redis_status.get("ok") else "DEGRADED",
        "redis": "connected" if redis_status.get("ok") else "unavailable",
    }
