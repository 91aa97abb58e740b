# market_stream/dependencies.py
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from starlette.requests import HTTPConnection

from market_stream.config import Settings
from market_stream.services.request_cache import RequestCache
from market_stream.websocket.handlers import WebSocketHandlers
from market_stream.websocket.manager import SubscriptionHub
from market_stream.websocket.threshold_cache import ThresholdCache
from market_stream.websocket.upstream_feed import UpstreamFeedAdapter


@dataclass
class Services:
    """애플리케이션 수명 동안 공유되는 구성 요소"""
    config: Settings
    redis_client: Any
    threshold_cache: ThresholdCache
    hub: SubscriptionHub
    handlers: WebSocketHandlers
    upstream_feed: UpstreamFeedAdapter
    request_cache: RequestCache


def get_services(connection: HTTPConnection) -> Services:
    """
    lifespan에서 만든 Services를 반환하는 의존성 함수

    HTTP 요청과 WebSocket 연결 모두에서 사용할 수 있습니다.

    Raises:
        HTTPException: 서버가 아직 초기화되지 않은 경우 (503)
    """
    services = getattr(connection.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="서비스가 아직 초기화되지 않았습니다."
        )
    return services


def get_threshold_cache(connection: HTTPConnection) -> ThresholdCache:
    return get_services(connection).threshold_cache


def get_request_cache(connection: HTTPConnection) -> RequestCache:
    return get_services(connection).request_cache
