import logging
import time

import redis.asyncio as redis

# ---------------------------------------------------------
# LOGGING
# ---------------------------------------------------------
logger = logging.getLogger("api.redis")


# ---------------------------------------------------------
# REDIS INIT
# ---------------------------------------------------------
def build_redis_client(redis_url: str) -> redis.Redis:
    if not redis_url:
        raise RuntimeError("REDIS_URL not set")

    logger.info("[REDIS] Initializing Redis client REDIS_URL=%s", redis_url)
    return redis.from_url(
        redis_url,
        decode_responses=True,
        socket_keepalive=True,
        socket_connect_timeout=2,
        retry_on_timeout=True,
    )


# ---------------------------------------------------------
# CONNECTION DIAGNOSTICS
# ---------------------------------------------------------
async def log_connection_diagnostics(client: redis.Redis) -> bool:
    try:
        t0 = time.time()
        pong = await client.ping()
        ms = int((time.time() - t0) * 1000)
        logger.info("[REDIS] Connected OK ping=%s latency=%sms", pong, ms)
    except Exception as e:
        logger.error("[REDIS] Initial ping failed: %s", e)
        return False

    try:
        cid = await client.client_id()
        logger.info("[REDIS] client_id=%s", cid)
    except Exception:
        logger.info("[REDIS] client_id not available")
    return True
