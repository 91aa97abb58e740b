# market_stream/schemas/websocket_schema.py
import json
import re
import time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from market_stream.exceptions import MalformedMessage

class DataKind(str, Enum):
    """시세 데이터 종류 (채널 키의 kind 부분)"""
    PRICE = "price"
    TICKER = "ticker"
    DEPTH = "depth"
    KLINE = "kline"

class WebSocketMessageType(str, Enum):
    """WebSocket 메시지 타입 정의"""
    # 상태 메시지
    WELCOME = "welcome"
    ERROR = "error"
    PING = "ping"
    PONG = "pong"

    # 데이터 업데이트 메시지
    PRICE_UPDATE = "price_update"
    TICKER_UPDATE = "ticker_update"
    DEPTH_UPDATE = "depth_update"
    KLINE_UPDATE = "kline_update"

class RequestMethod(str, Enum):
    """클라이언트 → 허브 요청 메서드"""
    SUBSCRIBE = "SUBSCRIBE"
    UNSUBSCRIBE = "UNSUBSCRIBE"
    LIST_SUBSCRIPTIONS = "LIST_SUBSCRIPTIONS"

KIND_TO_MESSAGE_TYPE = {
    DataKind.PRICE: WebSocketMessageType.PRICE_UPDATE,
    DataKind.TICKER: WebSocketMessageType.TICKER_UPDATE,
    DataKind.DEPTH: WebSocketMessageType.DEPTH_UPDATE,
    DataKind.KLINE: WebSocketMessageType.KLINE_UPDATE,
}

MESSAGE_TYPE_TO_KIND = {message_type: kind for kind, message_type in KIND_TO_MESSAGE_TYPE.items()}

# trade 스트림은 price 채널로 발행됨
KIND_ALIASES = {"trade": DataKind.PRICE, "aggtrade": DataKind.PRICE}

# Binance가 지원하는 kline 간격
KLINE_INTERVALS = {
    "1s", "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w", "1M",
}

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9_\-]{1,30}$")

def now_ms() -> int:
    """현재 시각 (epoch ms)"""
    return int(time.time() * 1000)

# =========================
# 채널 키
# =========================

class ChannelKey(BaseModel):
    """
    브로드캐스트 토픽 식별자

    문자열 형식은 `kind[:SYMBOL[:interval]]` 이며 kind는 소문자,
    심볼은 대문자로 정규화됩니다. interval은 `1m`/`1M`을 구분하므로
    원문 그대로 유지합니다.
    """
    model_config = ConfigDict(frozen=True)

    kind: DataKind
    symbol: Optional[str] = None
    interval: Optional[str] = None

    @property
    def key(self) -> str:
        parts = [self.kind.value]
        if self.symbol:
            parts.append(self.symbol)
            if self.interval:
                parts.append(self.interval)
        return ":".join(parts)

    @property
    def kind_key(self) -> str:
        """심볼 없는 전체 채널 키 (예: ticker)"""
        return self.kind.value

    def __str__(self) -> str:
        return self.key

def _resolve_kind(raw_kind: str) -> DataKind:
    kind = raw_kind.strip().lower()
    if kind in KIND_ALIASES:
        return KIND_ALIASES[kind]
    try:
        return DataKind(kind)
    except ValueError:
        raise MalformedMessage(f"알 수 없는 채널 종류: {raw_kind}")

def _parse_binance_stream(raw: str) -> ChannelKey:
    """Binance 스트림 이름 (btcusdt@kline_1m, btcusdt@depth20@100ms) 을 채널 키로 변환"""
    symbol, _, stream = raw.partition("@")
    stream = stream.split("@")[0]

    if stream.startswith("kline_"):
        return build_channel_key(DataKind.KLINE, symbol, stream[len("kline_"):])
    if stream.startswith("depth"):
        return build_channel_key(DataKind.DEPTH, symbol)
    if stream in ("ticker", "miniTicker"):
        return build_channel_key(DataKind.TICKER, symbol)
    return build_channel_key(_resolve_kind(stream), symbol)

def build_channel_key(kind: Any, symbol: Optional[str] = None, interval: Optional[str] = None) -> ChannelKey:
    """
    채널 키 생성 및 검증

    Raises:
        MalformedMessage: 형식이 잘못된 경우
    """
    if not isinstance(kind, DataKind):
        kind = _resolve_kind(str(kind))

    if symbol is not None:
        symbol = symbol.strip().upper()
        if not SYMBOL_PATTERN.match(symbol):
            raise MalformedMessage(f"유효하지 않은 심볼: {symbol}")

    if interval is not None:
        interval = interval.strip()
        if kind != DataKind.KLINE:
            raise MalformedMessage(f"{kind.value} 채널은 interval을 지원하지 않습니다")
        if interval not in KLINE_INTERVALS:
            raise MalformedMessage(f"지원하지 않는 kline 간격: {interval}")
        if symbol is None:
            raise MalformedMessage("interval에는 심볼이 필요합니다")
    elif kind == DataKind.KLINE and symbol is not None:
        raise MalformedMessage("kline 채널에는 interval이 필요합니다 (예: kline:BTCUSDT:1m)")

    return ChannelKey(kind=kind, symbol=symbol, interval=interval)

def parse_channel_key(raw: Any) -> ChannelKey:
    """
    채널 키 문자열 파싱

    `ticker:BTCUSDT`, `kline:btcusdt:1m` 같은 정규 형식과
    `btcusdt@ticker` 같은 Binance 스트림 이름을 모두 허용합니다.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedMessage(f"채널 키는 비어있지 않은 문자열이어야 합니다: {raw!r}")

    raw = raw.strip()
    if "@" in raw:
        return _parse_binance_stream(raw)

    parts = raw.split(":")
    if len(parts) > 3 or any(not part.strip() for part in parts):
        raise MalformedMessage(f"유효하지 않은 채널 키: {raw}")

    kind = parts[0]
    symbol = parts[1] if len(parts) > 1 else None
    interval = parts[2] if len(parts) > 2 else None
    return build_channel_key(kind, symbol, interval)

def channel_key_for_message(message: Dict[str, Any]) -> Optional[str]:
    """브로드캐스트 메시지에서 채널 키 문자열 추출 (클라이언트 라우팅용)"""
    try:
        kind = MESSAGE_TYPE_TO_KIND[WebSocketMessageType(message.get("type"))]
    except (ValueError, KeyError):
        return None

    symbol = message.get("symbol")
    interval = message.get("interval") if kind == DataKind.KLINE else None
    try:
        return build_channel_key(kind, symbol, interval).key
    except MalformedMessage:
        return None

# =========================
# 임계값 모델
# =========================

class ThresholdConfig(BaseModel):
    """유의미한 변화 판단 임계값"""
    percentage: float = Field(0.5, ge=0, description="변화율 임계값 (%)")
    absolute: float = Field(10.0, ge=0, description="절대 변화량 임계값")
    time_window: float = Field(30.0, ge=0, description="강제 갱신 기준 남은 TTL (초)")

class ThresholdOverride(BaseModel):
    """구독별 임계값 요청 (지정하지 않은 필드는 전역 설정을 따름)"""
    model_config = ConfigDict(extra="forbid")

    percentage: Optional[float] = Field(None, ge=0)
    absolute: Optional[float] = Field(None, ge=0)
    time_window: Optional[float] = Field(None, ge=0)

# =========================
# 메시지 모델들
# =========================

class MarketEnvelope(BaseModel):
    """업스트림 메시지를 정규화한 내부 envelope"""
    symbol: str
    kind: DataKind
    payload: Dict[str, Any]
    timestamp: int = Field(default_factory=now_ms)
    interval: Optional[str] = None

    @property
    def channel(self) -> ChannelKey:
        return build_channel_key(self.kind, self.symbol, self.interval)

class BroadcastMessage(BaseModel):
    """허브 → 클라이언트 브로드캐스트 메시지"""
    type: WebSocketMessageType
    symbol: str
    interval: Optional[str] = None
    data: Dict[str, Any]
    timestamp: int = Field(default_factory=now_ms)

class SubscriptionRequest(BaseModel):
    """클라이언트 → 허브 구독 요청"""
    method: RequestMethod
    params: List[str] = Field(default_factory=list)
    id: Optional[int] = None
    all: bool = False
    thresholds: Optional[ThresholdOverride] = None

class AckMessage(BaseModel):
    """구독 요청 응답"""
    id: Optional[int] = None
    status: Literal["success", "error"]
    message: str
    result: Optional[List[str]] = None

class ErrorMessage(BaseModel):
    """에러 메시지"""
    type: WebSocketMessageType = WebSocketMessageType.ERROR
    id: Optional[int] = None
    status: Literal["error"] = "error"
    error_code: str
    message: str
    timestamp: int = Field(default_factory=now_ms)
    details: Optional[Dict[str, Any]] = None

class WelcomeMessage(BaseModel):
    """연결 직후 전송되는 메시지"""
    type: WebSocketMessageType = WebSocketMessageType.WELCOME
    client_id: str
    message: str = "WebSocket 연결 성공"
    timestamp: int = Field(default_factory=now_ms)
    heartbeat_interval: Optional[float] = None

class HeartbeatMessage(BaseModel):
    """ping / pong 메시지"""
    type: WebSocketMessageType
    timestamp: int = Field(default_factory=now_ms)

# =========================
# 헬퍼 함수들
# =========================

def create_error_message(
    error_code: str,
    message: str,
    request_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None
) -> ErrorMessage:
    """에러 메시지 생성 헬퍼"""
    return ErrorMessage(
        id=request_id,
        error_code=error_code,
        message=message,
        details=details or None
    )

def create_broadcast_message(envelope: MarketEnvelope) -> BroadcastMessage:
    """정규화된 envelope를 브로드캐스트 메시지로 변환"""
    return BroadcastMessage(
        type=KIND_TO_MESSAGE_TYPE[envelope.kind],
        symbol=envelope.symbol,
        interval=envelope.interval if envelope.kind == DataKind.KLINE else None,
        data=envelope.payload,
        timestamp=envelope.timestamp
    )

def create_heartbeat_message(message_type: WebSocketMessageType) -> HeartbeatMessage:
    """ping / pong 메시지 생성 헬퍼"""
    return HeartbeatMessage(type=message_type)

# =========================
# 유효성 검증 함수들
# =========================

def validate_symbol(symbol: str) -> bool:
    """심볼 유효성 검증"""
    if not symbol or not isinstance(symbol, str):
        return False
    return bool(SYMBOL_PATTERN.match(symbol.strip().upper()))

def validate_websocket_message(message_data: Any) -> Tuple[bool, Optional[Dict[str, Any]], Optional[str]]:
    """WebSocket 메시지 유효성 검증 (JSON 객체 여부)"""
    try:
        data = json.loads(message_data)
    except (json.JSONDecodeError, TypeError) as e:
        return False, None, f"JSON 파싱 오류: {str(e)}"

    if not isinstance(data, dict):
        return False, None, "메시지는 JSON 객체여야 합니다"

    return True, data, None

def parse_subscription_request(data: Dict[str, Any]) -> SubscriptionRequest:
    """
    구독 요청 envelope 검증

    Raises:
        MalformedMessage: 필수 필드가 없거나 형식이 맞지 않는 경우
    """
    request_id = data.get("id") if isinstance(data.get("id"), int) else None
    try:
        return SubscriptionRequest.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(loc) for loc in err["loc"]) for err in e.errors())
        raise MalformedMessage(f"요청 형식 오류: {fields}", request_id=request_id)
