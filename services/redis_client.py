import logging
import time

import redis

from config import REDIS_URL

# ---------------------------------------------------------
# LOGGING
# ---------------------------------------------------------
logger = logging.getLogger("api.redis")

_client = None


# ---------------------------------------------------------
# LAZY CLIENT
# ---------------------------------------------------------
def create_redis(url: str | None = None, client_name: str | None = None) -> redis.Redis:
    target = url or REDIS_URL
    logger.info("[REDIS] Initializing Redis client client_name=%s", client_name or "")
    client = redis.Redis.from_url(
        target,
        decode_responses=True,
        socket_keepalive=True,
        socket_connect_timeout=2,
        retry_on_timeout=True,
    )
    if client_name:
        try:
            client.client_setname(client_name)
        except redis.RedisError as exc:
            logger.info("[REDIS] client_setname failed name=%s error=%s", client_name, exc)
    return client


def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = create_redis(client_name="smart-upload-api")
    return _client


# ---------------------------------------------------------
# CONNECTION DIAGNOSTICS
# ---------------------------------------------------------
def ping_redis(client: redis.Redis) -> dict:
    try:
        t0 = time.time()
        pong = client.ping()
        ms = int((time.time() - t0) * 1000)
        logger.info("[REDIS] ping ok=%s latency=%sms", pong, ms)
        return {"ok": bool(pong), "latency_ms": ms}
    except redis.RedisError as e:
        logger.error("[REDIS] ping failed: %s", e)
        return {"ok": False, "error": e.__class__.__name__}
