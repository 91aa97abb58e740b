# market_stream/websocket/__init__.py
"""
WebSocket 실시간 시세 배포 모듈

주요 컴포넌트:
- SubscriptionHub: 다운스트림 연결과 채널 구독 관리
- UpstreamFeedAdapter: 거래소 스트림 수집 및 정규화
- ThresholdCache: 유의미한 변화만 통과시키는 임계값 캐시
- WebSocketHandlers: 클라이언트 메시지 처리

지원하는 채널:
- price:{SYMBOL} - 체결가
- ticker:{SYMBOL} - 24시간 티커
- depth:{SYMBOL} - 호가창
- kline:{SYMBOL}:{interval} - 캔들
- price / ticker / depth / kline - 해당 종류 전체 심볼
"""

from .manager import SubscriptionHub
from .threshold_cache import ThresholdCache
from .upstream_feed import UpstreamFeedAdapter
from .handlers import WebSocketHandlers

__all__ = [
    "SubscriptionHub",
    "ThresholdCache",
    "UpstreamFeedAdapter",
    "WebSocketHandlers"
]
