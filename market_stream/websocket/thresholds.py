# market_stream/websocket/thresholds.py
"""
구독별 임계값 요청을 채널 단위 유효 임계값으로 합치는 reducer

구독/구독 해제 시점에만 다시 계산하고, evaluate() 경로에서는
계산된 결과를 전역 설정과 한 번 합치기만 합니다.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from market_stream.schemas.websocket_schema import ThresholdConfig, ThresholdOverride

FIELDS = ("percentage", "absolute", "time_window")


@dataclass(frozen=True)
class ChannelThreshold:
    """
    한 채널의 축약된 임계값

    필드별로 구독자들이 요청한 값 중 최소값을 보관하고, 값을 지정하지 않은
    구독자가 하나라도 있으면 `uses_global`에 필드명을 남깁니다.
    """
    percentage: Optional[float] = None
    absolute: Optional[float] = None
    time_window: Optional[float] = None
    uses_global: frozenset = frozenset(FIELDS)

    def resolve(self, global_config: ThresholdConfig) -> ThresholdConfig:
        values = {}
        for field in FIELDS:
            requested = getattr(self, field)
            default = getattr(global_config, field)
            if requested is None:
                values[field] = default
            elif field in self.uses_global:
                values[field] = min(requested, default)
            else:
                values[field] = requested
        return ThresholdConfig(**values)


DEFAULT_CHANNEL_THRESHOLD = ChannelThreshold()


def reduce_overrides(overrides: Iterable[Optional[ThresholdOverride]]) -> ChannelThreshold:
    """채널 구독자들의 요청을 가장 민감한(가장 작은) 값으로 축약"""
    minimums: Dict[str, Optional[float]] = {field: None for field in FIELDS}
    uses_global = set()
    any_subscriber = False

    for override in overrides:
        any_subscriber = True
        for field in FIELDS:
            value = getattr(override, field) if override is not None else None
            if value is None:
                uses_global.add(field)
            elif minimums[field] is None or value < minimums[field]:
                minimums[field] = value

    if not any_subscriber:
        return DEFAULT_CHANNEL_THRESHOLD

    return ChannelThreshold(uses_global=frozenset(uses_global), **minimums)
