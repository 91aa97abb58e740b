# market_stream/websocket/upstream_feed.py
import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from itertools import count
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import websockets

from market_stream.exceptions import MalformedMessage, UpstreamDisconnected
from market_stream.schemas.websocket_schema import (
    DataKind, MarketEnvelope, ThresholdConfig,
    create_broadcast_message, create_error_message, now_ms, parse_channel_key
)
from market_stream.websocket.manager import SubscriptionHub
from market_stream.websocket.threshold_cache import ThresholdCache

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[None]]


class FeedState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"


# =========================
# 메시지 정규화
# =========================

def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _event_time(data: Dict[str, Any], *fields: str) -> int:
    for field in fields:
        if data.get(field) is not None:
            return int(data[field])
    return now_ms()


def _price_levels(levels: Iterable) -> List[List[float]]:
    return [[float(price), float(quantity)] for price, quantity in (levels or [])]


def _normalize_ticker(data: Dict[str, Any]) -> MarketEnvelope:
    return MarketEnvelope(
        symbol=data["s"],
        kind=DataKind.TICKER,
        timestamp=_event_time(data, "E"),
        payload={
            "price": _to_float(data.get("c")),
            "priceChange": _to_float(data.get("p")),
            "priceChangePercent": _to_float(data.get("P")),
            "open": _to_float(data.get("o")),
            "high": _to_float(data.get("h")),
            "low": _to_float(data.get("l")),
            "volume": _to_float(data.get("v")),
            "quoteVolume": _to_float(data.get("q")),
        }
    )


def _normalize_trade(data: Dict[str, Any]) -> MarketEnvelope:
    return MarketEnvelope(
        symbol=data["s"],
        kind=DataKind.PRICE,
        timestamp=_event_time(data, "T", "E"),
        payload={
            "price": _to_float(data.get("p")),
            "quantity": _to_float(data.get("q")),
            "tradeId": data.get("t") or data.get("a"),
            "isBuyerMaker": data.get("m"),
        }
    )


def _normalize_depth(data: Dict[str, Any], symbol: str) -> MarketEnvelope:
    return MarketEnvelope(
        symbol=symbol,
        kind=DataKind.DEPTH,
        timestamp=_event_time(data, "E"),
        payload={
            "bids": _price_levels(data.get("b", data.get("bids"))),
            "asks": _price_levels(data.get("a", data.get("asks"))),
            "lastUpdateId": data.get("u", data.get("lastUpdateId")),
        }
    )


def _normalize_kline(data: Dict[str, Any]) -> MarketEnvelope:
    kline = data["k"]
    return MarketEnvelope(
        symbol=data["s"],
        kind=DataKind.KLINE,
        interval=kline["i"],
        timestamp=_event_time(data, "E"),
        payload={
            "openTime": kline.get("t"),
            "closeTime": kline.get("T"),
            "open": _to_float(kline.get("o")),
            "high": _to_float(kline.get("h")),
            "low": _to_float(kline.get("l")),
            "close": _to_float(kline.get("c")),
            "volume": _to_float(kline.get("v")),
            "isClosed": kline.get("x", False),
        }
    )


def normalize_message(message: Dict[str, Any]) -> Optional[MarketEnvelope]:
    """
    Binance 원본 메시지를 정규화된 envelope로 변환

    combined stream 형식(`{"stream": ..., "data": ...}`)과 단일 스트림 형식을
    모두 처리합니다. 알 수 없는 이벤트는 None을 반환합니다.
    """
    stream = message.get("stream", "")
    data = message.get("data", message)
    if not isinstance(data, dict):
        return None

    event = data.get("e")
    try:
        if event == "24hrTicker":
            return _normalize_ticker(data)
        if event in ("trade", "aggTrade"):
            return _normalize_trade(data)
        if event == "kline":
            return _normalize_kline(data)
        if event == "depthUpdate":
            return _normalize_depth(data, data["s"])
        # partial depth 스트림은 이벤트 타입이 없고 심볼은 스트림 이름에만 있음
        if event is None and "lastUpdateId" in data and "@" in stream:
            return _normalize_depth(data, stream.split("@")[0].upper())
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"⚠️ 업스트림 메시지 정규화 실패 ({event}): {e}")
        return None

    return None


def stream_for_channel(channel_key: str, depth_level: str = "20") -> Optional[str]:
    """채널 키를 Binance 스트림 이름으로 변환 (심볼 없는 채널은 None)"""
    channel = parse_channel_key(channel_key)
    if channel.symbol is None:
        return None

    symbol = channel.symbol.lower()
    if channel.kind == DataKind.PRICE:
        return f"{symbol}@trade"
    if channel.kind == DataKind.TICKER:
        return f"{symbol}@ticker"
    if channel.kind == DataKind.DEPTH:
        return f"{symbol}@depth{depth_level}@100ms" if depth_level else f"{symbol}@depth"
    return f"{symbol}@kline_{channel.interval}"


def default_streams(symbols: Iterable[str], kline_intervals: Iterable[str]) -> List[str]:
    """기본 구독 스트림 목록 (심볼마다 ticker, trade, kline 간격별)"""
    streams = []
    for symbol in symbols:
        symbol = symbol.lower()
        streams.append(f"{symbol}@ticker")
        streams.append(f"{symbol}@trade")
        streams.extend(f"{symbol}@kline_{interval}" for interval in kline_intervals)
    return streams


def chunk_streams(streams: List[str], size: int) -> List[List[str]]:
    size = max(1, size)
    return [streams[i:i + size] for i in range(0, len(streams), size)]


# =========================
# 업스트림 연결
# =========================

class FeedConnection:
    """
    Binance combined stream 연결 하나

    연결이 끊기면 고정 간격으로 무한히 재연결하며, 재연결 시 현재 스트림
    집합 전체로 URL을 다시 만들기 때문에 런타임에 추가된 스트림도 복구됩니다.
    """

    def __init__(self, adapter: "UpstreamFeedAdapter", index: int, streams: Iterable[str]):
        self.adapter = adapter
        self.index = index
        self.streams: Set[str] = set(streams)
        self.state = FeedState.CLOSED
        self.websocket = None
        self.task: Optional[asyncio.Task] = None
        self.reconnects = 0
        self.messages_received = 0
        self.last_message_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return f"feed-{self.index}"

    async def run(self):
        """연결 → 수신 → 끊김 → 대기 → 재연결 루프"""
        try:
            # 스트림이 모두 제거된 연결은 빈 URL로 재연결하지 않고 종료
            while self.adapter.running and self.streams:
                self.state = FeedState.CONNECTING if self.reconnects == 0 else FeedState.RECONNECTING
                try:
                    url = self.adapter.build_url(self.streams)
                    self.websocket = await self.adapter.connect(url)
                    self.state = FeedState.OPEN
                    logger.info(f"🔗 업스트림 연결 성공: {self.name} ({len(self.streams)}개 스트림)")

                    async for raw in self.websocket:
                        self.messages_received += 1
                        self.last_message_at = datetime.utcnow()
                        await self.adapter.handle_raw(raw)

                    raise UpstreamDisconnected(f"업스트림 스트림 종료: {self.name}")

                except asyncio.CancelledError:
                    raise

                except Exception as e:
                    self.adapter.stats["upstream_errors"] += 1
                    logger.error(f"❌ 업스트림 연결 오류: {self.name} - {e}")
                    await self.adapter.notify_disconnect(self.streams, e)

                finally:
                    await self._close_websocket()

                if not self.adapter.running or not self.streams:
                    break

                self.state = FeedState.RECONNECTING
                self.reconnects += 1
                self.adapter.stats["reconnects"] += 1
                logger.info(
                    f"🔄 업스트림 재연결 대기: {self.name} "
                    f"({self.adapter.reconnect_delay}초 후, {self.reconnects}번째)"
                )
                await self.adapter.sleep(self.adapter.reconnect_delay)

        except asyncio.CancelledError:
            logger.info(f"🛑 업스트림 스트리밍 중단됨: {self.name}")
            raise

        finally:
            self.state = FeedState.CLOSED
            logger.info(f"🏁 업스트림 스트리밍 종료: {self.name}")

    async def stop(self):
        """연결 태스크 중단 (자기 자신의 태스크면 루프가 스스로 종료됨)"""
        task = self.task
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.task = None

    async def send_method(self, method: str, streams: List[str]) -> bool:
        """열린 연결에 Binance 라이브 SUBSCRIBE / UNSUBSCRIBE 전송"""
        if self.state != FeedState.OPEN or self.websocket is None:
            return False
        request = {"method": method, "params": streams, "id": self.adapter.next_request_id()}
        try:
            await self.websocket.send(json.dumps(request))
        except Exception as e:
            # 연결 루프가 끊김을 감지하고 전체 스트림으로 재연결함
            logger.warning(f"⚠️ 업스트림 {method} 전송 실패: {self.name} - {e}")
            return False
        logger.info(f"📡 업스트림 {method}: {self.name} {streams}")
        return True

    async def _close_websocket(self):
        websocket, self.websocket = self.websocket, None
        if websocket is None:
            return
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"업스트림 소켓 종료 중 오류 (무시): {self.name} - {e}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "streams": sorted(self.streams),
            "reconnects": self.reconnects,
            "messages_received": self.messages_received,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
        }


class UpstreamFeedAdapter:
    """
    거래소 push 스트림 수집기

    Binance combined stream을 구독해 메시지를 정규화하고, ThresholdCache로
    유의미 여부를 판단한 뒤 SubscriptionHub로 브로드캐스트합니다.

    **처리 규칙:**
    - ticker / price / kline: 채널의 유효 임계값으로 evaluate()
    - depth: 항상 전달
    - 캐시 장애: 업데이트를 그대로 전달 (fail open)
    - 연결 끊김: 해당 스트림 채널 구독자에게 에러 envelope 전송 후 재연결
    """

    def __init__(
        self,
        hub: SubscriptionHub,
        cache: ThresholdCache,
        ws_url: str = "wss://stream.binance.com:9443/stream",
        streams: Optional[Iterable[str]] = None,
        reconnect_delay: float = 5.0,
        max_streams_per_connection: int = 50,
        depth_level: str = "20",
        fail_open: bool = True,
        connect: Optional[Connector] = None,
        sleep: Sleeper = asyncio.sleep
    ):
        """
        Args:
            hub: 브로드캐스트 대상 허브
            cache: 임계값 캐시
            ws_url: combined stream 엔드포인트
            streams: 시작 시 구독할 기본 스트림
            reconnect_delay: 재연결 간격 (초)
            max_streams_per_connection: 연결 하나당 최대 스트림 수
            depth_level: depth 채널에 사용할 partial depth 단계
            fail_open: 캐시 장애 시 업데이트를 전달할지 (False면 버림)
            connect: url → 웹소켓 연결 (테스트용)
            sleep: 대기 함수 (테스트용)
        """
        self.hub = hub
        self.cache = cache
        self.ws_url = ws_url
        self.reconnect_delay = reconnect_delay
        self.max_streams_per_connection = max_streams_per_connection
        self.depth_level = depth_level
        self.fail_open = fail_open
        self.connect = connect or self._default_connect
        self.sleep = sleep

        self.base_streams: List[str] = list(dict.fromkeys(streams or []))
        self.connections: List[FeedConnection] = [
            FeedConnection(self, index, chunk)
            for index, chunk in enumerate(chunk_streams(self.base_streams, max_streams_per_connection))
        ]
        self.running = False
        self._request_ids = count(1)

        self.stats = {
            "messages_processed": 0,
            "broadcasts": 0,
            "suppressed": 0,
            "ignored": 0,
            "fail_open": 0,
            "upstream_errors": 0,
            "reconnects": 0,
            "start_time": datetime.utcnow()
        }

        hub.add_channel_listener(on_added=self.on_channel_added, on_removed=self.on_channel_removed)
        logger.info(f"✅ UpstreamFeedAdapter 초기화 완료 (기본 스트림: {len(self.base_streams)}개)")

    @staticmethod
    async def _default_connect(url: str):
        return await websockets.connect(url, ping_interval=20, ping_timeout=20, close_timeout=5)

    def build_url(self, streams: Iterable[str]) -> str:
        return f"{self.ws_url}?streams={'/'.join(sorted(streams))}"

    def next_request_id(self) -> int:
        return next(self._request_ids)

    # =========================
    # 시작 / 중단
    # =========================

    async def start(self):
        """기본 스트림으로 업스트림 연결 시작"""
        if self.running:
            logger.warning("⚠️ 업스트림 피드가 이미 실행 중입니다")
            return

        self.running = True

        for connection in self.connections:
            self._start_connection(connection)

        logger.info(f"🚀 업스트림 피드 시작: 연결 {len(self.connections)}개")

    def _start_connection(self, connection: FeedConnection):
        if connection.streams and (connection.task is None or connection.task.done()):
            connection.task = asyncio.create_task(connection.run())

    def request_stop(self):
        """현재 대기/수신이 끝나면 루프가 종료되도록 표시"""
        self.running = False

    async def stop(self):
        """모든 업스트림 연결 중단"""
        self.request_stop()
        for connection in self.connections:
            await connection.stop()

        logger.info("🛑 업스트림 피드 중단 완료")

    # =========================
    # 동적 스트림 관리
    # =========================

    def tracked_streams(self) -> Set[str]:
        return set().union(*(connection.streams for connection in self.connections))

    async def add_stream(self, stream: str) -> bool:
        """
        스트림 추가

        여유가 있는 연결에는 라이브 SUBSCRIBE를 보내고, 없으면 새 연결을 만듭니다.

        Returns:
            bool: 새로 추가된 스트림이면 True
        """
        if stream in self.tracked_streams():
            return False

        connection = next(
            (c for c in self.connections if len(c.streams) < self.max_streams_per_connection),
            None
        )
        if connection is None:
            connection = FeedConnection(self, len(self.connections), [stream])
            self.connections.append(connection)
            if self.running:
                self._start_connection(connection)
        else:
            connection.streams.add(stream)
            if self.running:
                if connection.task is None or connection.task.done():
                    self._start_connection(connection)
                else:
                    await connection.send_method("SUBSCRIBE", [stream])

        logger.info(f"➕ 업스트림 스트림 추가: {stream} ({connection.name})")
        return True

    async def remove_stream(self, stream: str) -> bool:
        """런타임에 추가된 스트림 제거 (기본 스트림은 유지)"""
        if stream in self.base_streams:
            return False

        for connection in self.connections:
            if stream in connection.streams:
                connection.streams.discard(stream)
                await connection.send_method("UNSUBSCRIBE", [stream])
                logger.info(f"➖ 업스트림 스트림 제거: {stream} ({connection.name})")
                if not connection.streams:
                    await connection.stop()
                    logger.info(f"💤 스트림이 없는 업스트림 연결 중단: {connection.name}")
                return True
        return False

    async def on_channel_added(self, channel_key: str):
        stream = self._stream_for(channel_key)
        if stream:
            await self.add_stream(stream)

    async def on_channel_removed(self, channel_key: str):
        stream = self._stream_for(channel_key)
        if stream:
            await self.remove_stream(stream)

    def _stream_for(self, channel_key: str) -> Optional[str]:
        try:
            return stream_for_channel(channel_key, self.depth_level)
        except MalformedMessage as e:
            logger.warning(f"⚠️ 스트림으로 변환할 수 없는 채널: {channel_key} - {e.message}")
            return None

    # =========================
    # 메시지 처리
    # =========================

    async def handle_raw(self, raw: Any):
        """업스트림 원본 프레임 처리"""
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"⚠️ 업스트림 JSON 파싱 오류: {e}")
            self.stats["ignored"] += 1
            return

        if not isinstance(message, dict):
            self.stats["ignored"] += 1
            return

        # 라이브 SUBSCRIBE 응답
        if "result" in message and "id" in message:
            logger.debug(f"업스트림 요청 응답: {message}")
            return

        envelope = normalize_message(message)
        if envelope is None:
            data = message.get("data", message)
            event = data.get("e") if isinstance(data, dict) else None
            logger.debug(f"알 수 없는 업스트림 이벤트 무시: {event}")
            self.stats["ignored"] += 1
            return

        try:
            await self.process_envelope(envelope)
        except MalformedMessage as e:
            logger.warning(f"⚠️ 처리할 수 없는 업스트림 메시지: {e.message}")
            self.stats["ignored"] += 1
        except Exception as e:
            # 메시지 하나의 실패로 피드 연결 전체를 끊지 않음
            logger.error(f"❌ 업스트림 메시지 처리 오류 ({envelope.kind.value}:{envelope.symbol}): {e}", exc_info=True)
            self.stats["ignored"] += 1

    async def process_envelope(self, envelope: MarketEnvelope) -> int:
        """
        envelope의 유의미 여부를 판단하고 브로드캐스트

        Returns:
            int: 메시지를 받은 구독자 수 (억제되면 0)
        """
        self.stats["messages_processed"] += 1
        channel = envelope.channel.key
        kind_channel = envelope.channel.kind_key

        if envelope.kind == DataKind.DEPTH:
            significant = True
        else:
            key = self.cache.build_key(envelope.kind.value, envelope.symbol, interval=envelope.interval)
            thresholds = self._thresholds_for(channel, kind_channel)
            result = await self.cache.evaluate(key, envelope.payload, thresholds)
            significant = result.significant
            if result.error is not None:
                if self.fail_open:
                    self.stats["fail_open"] += 1
                    logger.warning(f"⚠️ 캐시 장애로 업데이트를 그대로 전달: {channel}")
                else:
                    significant = False
                    logger.warning(f"⚠️ 캐시 장애로 업데이트를 버림: {channel}")

        if not significant:
            self.stats["suppressed"] += 1
            return 0

        message = create_broadcast_message(envelope)
        delivered = await self.hub.broadcast(channel, message)
        if kind_channel != channel:
            delivered += await self.hub.broadcast(kind_channel, message)

        self.stats["broadcasts"] += 1
        return delivered

    def _thresholds_for(self, channel: str, kind_channel: str) -> ThresholdConfig:
        """심볼 채널과 전체 채널 구독자 중 가장 민감한 임계값"""
        global_config = self.cache.get_thresholds()
        configs = [
            self.hub.effective_thresholds(key, global_config)
            for key in (channel, kind_channel)
            if self.hub.subscribers(key)
        ]
        if not configs:
            return global_config
        return ThresholdConfig(
            percentage=min(c.percentage for c in configs),
            absolute=min(c.absolute for c in configs),
            time_window=min(c.time_window for c in configs),
        )

    async def notify_disconnect(self, streams: Iterable[str], error: BaseException):
        """끊긴 스트림의 채널 구독자에게 에러 envelope 전송 (구독자당 한 번)"""
        channels = set()
        for stream in streams:
            try:
                channel = parse_channel_key(stream)
            except MalformedMessage:
                continue
            channels.update((channel.key, channel.kind_key))

        recipients = set()
        for channel in channels:
            recipients |= self.hub.subscribers(channel)
        if not recipients:
            return

        error_message = create_error_message(
            error_code=UpstreamDisconnected.error_code,
            message="거래소 스트림 연결이 끊어졌습니다. 재연결 중입니다.",
            details={"channels": sorted(channels), "reason": str(error)}
        )
        for connection_id in recipients:
            await self.hub.send_to(connection_id, error_message)

    # =========================
    # 상태 조회
    # =========================

    def get_status(self) -> Dict[str, Any]:
        uptime = datetime.utcnow() - self.stats["start_time"]
        return {
            **{k: v for k, v in self.stats.items() if k != "start_time"},
            "running": self.running,
            "uptime_seconds": uptime.total_seconds(),
            "connections": [connection.get_status() for connection in self.connections],
        }
