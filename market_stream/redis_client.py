# market_stream/redis_client.py
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from market_stream.config import Settings, settings

logger = logging.getLogger(__name__)


def create_redis_client(config: Settings = settings) -> redis.Redis:
    """
    Redis 클라이언트 생성

    연결은 첫 명령 시점에 맺어지므로 Redis가 내려가 있어도 서버는 시작됩니다.
    (이 경우 ThresholdCache는 fail open으로 동작)
    """
    return redis.from_url(
        config.redis_url,
        decode_responses=True,
        socket_connect_timeout=config.redis_socket_timeout,
        socket_timeout=config.redis_socket_timeout,
    )


async def check_redis_connection(client: redis.Redis) -> bool:
    """Redis 연결 테스트 (PING)"""
    try:
        await client.ping()
        return True
    except (RedisError, OSError) as e:
        logger.warning(f"⚠️ Redis 연결 테스트 실패: {e}")
        return False


async def close_redis_client(client: redis.Redis):
    try:
        await client.aclose()
        logger.info("✅ Redis 연결 종료")
    except (RedisError, OSError) as e:
        logger.warning(f"⚠️ Redis 연결 종료 중 오류: {e}")
