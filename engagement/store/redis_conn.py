from redis import Redis
from engagement.settings import settings


def get_redis() -> Redis:
    return Redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SEC,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SEC,
    )
