# market_stream/utils/cache_keys.py
from typing import Any, Optional

def build_cache_key(prefix: str, kind: str, symbol: Optional[str] = None, **params: Any) -> str:
    """
    캐시 키를 생성하는 유틸리티 함수

    ThresholdCache와 RequestCache가 같은 네임스페이스 규칙을 사용합니다.
    형식: <prefix>:<kind>:<SYMBOL>[:<param>=<value>...]
    파라미터는 이름순으로 정렬되어 항상 같은 키가 만들어집니다.

    사용 예시:
        build_cache_key("market_stream", "kline", "btcusdt", interval="1m")
        # 결과: "market_stream:kline:BTCUSDT:interval=1m"
    """
    key_parts = [prefix, kind.lower()]
    if symbol:
        key_parts.append(symbol.upper())
    for name in sorted(params):
        value = params[name]
        if value is None:
            continue
        key_parts.append(f"{name}={value}")
    return ":".join(key_parts)

def cache_key_pattern(prefix: str, kind: Optional[str] = None) -> str:
    """prefix(와 kind) 아래 모든 키에 매칭되는 SCAN 패턴"""
    if kind:
        return f"{prefix}:{kind.lower()}:*"
    return f"{prefix}:*"
