# market_stream/websocket/threshold_cache.py
import asyncio
import json
import logging
import math
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from redis.exceptions import RedisError

from market_stream.exceptions import CacheUnavailable
from market_stream.schemas.websocket_schema import DataKind, ThresholdConfig, ThresholdOverride
from market_stream.utils.cache_keys import build_cache_key, cache_key_pattern

logger = logging.getLogger(__name__)

# payload에서 기준 가격으로 사용할 필드 우선순위
PRIMARY_FIELDS = ("price", "lastPrice", "close", "c", "p")


class Verdict(str, Enum):
    SIGNIFICANT = "significant"
    SUPPRESSED = "suppressed"


@dataclass
class EvaluationResult:
    """evaluate() 결과"""
    verdict: Verdict
    reason: str
    persisted: bool = False
    error: Optional[CacheUnavailable] = None

    @property
    def significant(self) -> bool:
        return self.verdict == Verdict.SIGNIFICANT


def extract_primary(value: Any) -> Optional[float]:
    """값의 대표 수치 (ticker는 마지막 체결가, kline은 종가)"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    if isinstance(value, dict):
        for field in PRIMARY_FIELDS:
            if field in value and value[field] is not None:
                return extract_primary(value[field])
    return None


class ThresholdCache:
    """
    임계값 기반 시세 캐시

    (kind, symbol) 키마다 마지막으로 *채택된* 값을 Redis에 TTL과 함께 보관하고,
    새 관측값이 전달할 만큼 유의미한지 판단합니다.

    **판단 규칙:**
    - 저장된 값이 없으면 저장하고 SIGNIFICANT
    - 변화율 또는 절대 변화량이 임계값 이상이면 저장하고 SIGNIFICANT
    - 남은 TTL이 time_window보다 작으면 강제 갱신 후 SIGNIFICANT
    - 그 외에는 저장된 값을 건드리지 않고 SUPPRESSED

    억제된 관측값은 기준값을 바꾸지 않으므로 작은 변화들은 마지막 관측값이 아니라
    마지막 채택값 기준으로 누적됩니다.
    """

    def __init__(
        self,
        redis_client,
        prefix: str = "market_stream",
        thresholds: Optional[ThresholdConfig] = None,
        entry_ttl: int = 60,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            redis_client: redis.asyncio 클라이언트 (decode_responses=True)
            prefix: 캐시 키 접두사
            thresholds: 전역 임계값
            entry_ttl: 채택된 값의 TTL (초)
            clock: 현재 시각 함수 (테스트용)
        """
        self.redis_client = redis_client
        self.prefix = prefix
        self.entry_ttl = entry_ttl
        self.clock = clock
        self._thresholds = thresholds or ThresholdConfig()

        # 키별 직렬화 락 {key: [lock, 사용 중인 작업 수]}
        self._locks: Dict[str, list] = {}

        self.stats = {
            "evaluations": 0,
            "significant": 0,
            "suppressed": 0,
            "forced_refresh": 0,
            "cache_errors": 0,
        }

        logger.info(f"✅ ThresholdCache 초기화 완료 (ttl={entry_ttl}s, {self._thresholds.model_dump()})")

    # =========================
    # 임계값 설정
    # =========================

    def get_thresholds(self) -> ThresholdConfig:
        return self._thresholds

    def set_thresholds(self, config: Union[ThresholdConfig, ThresholdOverride, Dict[str, Any]]) -> ThresholdConfig:
        """
        전역 임계값 교체

        지정한 필드만 현재 설정 위에 덮어씁니다. 이미 저장된 값에는 영향이 없고
        다음 evaluate() 호출부터 적용됩니다.
        """
        if isinstance(config, dict):
            updates = ThresholdOverride(**config).model_dump(exclude_none=True)
        elif isinstance(config, ThresholdOverride):
            updates = config.model_dump(exclude_none=True)
        else:
            updates = config.model_dump()

        self._thresholds = ThresholdConfig(**{**self._thresholds.model_dump(), **updates})
        logger.info(f"🔧 임계값 변경: {self._thresholds.model_dump()}")
        return self._thresholds

    # =========================
    # 키 관리
    # =========================

    def build_key(self, kind: str, symbol: Optional[str] = None, **params: Any) -> str:
        return build_cache_key(self.prefix, kind, symbol, **params)

    @asynccontextmanager
    async def _key_lock(self, key: str):
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(key, None)

    # =========================
    # 조회 / 판단
    # =========================

    async def get(self, key: str) -> Optional[Any]:
        """
        마지막으로 채택된 값 조회 (억제된 관측값은 반영되지 않음)

        Raises:
            CacheUnavailable: Redis에 접근할 수 없는 경우
        """
        entry = await self.get_entry(key)
        return entry["value"] if entry else None

    async def get_entry(self, key: str) -> Optional[Dict[str, Any]]:
        """값, 채택 시각, 만료 시각을 포함한 캐시 항목 조회"""
        try:
            raw = await self.redis_client.get(key)
            if raw is None:
                return None
            ttl = await self.redis_client.ttl(key)
        except (RedisError, OSError) as e:
            self.stats["cache_errors"] += 1
            raise CacheUnavailable(f"캐시 조회 실패: {key}", {"error": str(e)}) from e

        entry = self._decode(raw)
        if entry is None:
            return None

        expires_at = None
        if ttl is not None and ttl >= 0:
            expires_at = int((self.clock() + ttl) * 1000)

        return {
            "key": key,
            "value": entry["value"],
            "accepted_at": entry.get("accepted_at"),
            "expires_at": expires_at,
        }

    async def evaluate(
        self,
        key: str,
        new_value: Any,
        thresholds: Optional[ThresholdConfig] = None
    ) -> EvaluationResult:
        """
        새 관측값의 유의미 여부 판단

        Args:
            key: 캐시 키 (build_key로 생성)
            new_value: 숫자 또는 payload dict
            thresholds: 채널별 유효 임계값 (없으면 전역 설정)

        Returns:
            EvaluationResult: 캐시에 접근할 수 없으면 error가 채워지고
            verdict는 SIGNIFICANT, persisted는 False
        """
        config = thresholds or self._thresholds
        self.stats["evaluations"] += 1

        async with self._key_lock(key):
            try:
                result = await self._evaluate_locked(key, new_value, config)
            except (RedisError, OSError) as e:
                self.stats["cache_errors"] += 1
                logger.error(f"❌ 캐시 접근 실패, 업데이트를 그대로 전달합니다: {key} - {e}")
                return EvaluationResult(
                    verdict=Verdict.SIGNIFICANT,
                    reason="cache_unavailable",
                    persisted=False,
                    error=CacheUnavailable(f"캐시 접근 실패: {key}", {"error": str(e)})
                )

        if result.significant:
            self.stats["significant"] += 1
            if result.reason == "ttl":
                self.stats["forced_refresh"] += 1
        else:
            self.stats["suppressed"] += 1
        return result

    async def _evaluate_locked(self, key: str, new_value: Any, config: ThresholdConfig) -> EvaluationResult:
        raw = await self.redis_client.get(key)
        cached = self._decode(raw) if raw is not None else None

        # 첫 관측값은 항상 전달
        if cached is None:
            await self._store(key, new_value)
            return EvaluationResult(Verdict.SIGNIFICANT, "first", persisted=True)

        new_primary = extract_primary(new_value)
        cached_primary = extract_primary(cached["value"])
        if new_primary is None or cached_primary is None:
            logger.debug(f"⚠️ 비교할 수 없는 값, 그대로 채택: {key}")
            await self._store(key, new_value)
            return EvaluationResult(Verdict.SIGNIFICANT, "incomparable", persisted=True)

        absolute_change = abs(new_primary - cached_primary)
        if cached_primary == 0:
            percentage_change = math.inf if absolute_change > 0 else 0.0
        else:
            percentage_change = absolute_change / abs(cached_primary) * 100

        if percentage_change >= config.percentage:
            await self._store(key, new_value)
            return EvaluationResult(Verdict.SIGNIFICANT, "percentage", persisted=True)

        if absolute_change >= config.absolute:
            await self._store(key, new_value)
            return EvaluationResult(Verdict.SIGNIFICANT, "absolute", persisted=True)

        # 만료가 임박했거나 TTL이 없는 항목은 강제 갱신
        ttl = await self.redis_client.ttl(key)
        if ttl is None or ttl < 0 or ttl < config.time_window:
            await self._store(key, new_value)
            return EvaluationResult(Verdict.SIGNIFICANT, "ttl", persisted=True)

        return EvaluationResult(Verdict.SUPPRESSED, "below_threshold", persisted=False)

    async def _store(self, key: str, value: Any):
        entry = {
            "value": value,
            "accepted_at": int(self.clock() * 1000),
        }
        await self.redis_client.set(key, json.dumps(entry, default=str), ex=self.entry_ttl)

    @staticmethod
    def _decode(raw: Any) -> Optional[Dict[str, Any]]:
        try:
            entry = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"⚠️ 캐시 항목 파싱 실패: {raw!r}")
            return None
        if not isinstance(entry, dict) or "value" not in entry:
            return None
        return entry

    # =========================
    # 정리
    # =========================

    async def clear(self, kind: Optional[str] = None) -> int:
        """
        kind(없으면 전체)의 캐시 항목 삭제

        Returns:
            int: 삭제한 키 수
        """
        kinds = [kind] if kind else [data_kind.value for data_kind in DataKind]
        patterns = [cache_key_pattern(self.prefix, name) for name in kinds]
        pattern = ",".join(patterns)
        keys = []
        try:
            for match in patterns:
                keys.extend([key async for key in self.redis_client.scan_iter(match=match)])
            if keys:
                await self.redis_client.delete(*keys)
        except (RedisError, OSError) as e:
            self.stats["cache_errors"] += 1
            raise CacheUnavailable(f"캐시 삭제 실패: {pattern}", {"error": str(e)}) from e

        logger.info(f"🧹 캐시 정리 완료: {pattern} ({len(keys)}개)")
        return len(keys)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "thresholds": self._thresholds.model_dump(),
            "entry_ttl": self.entry_ttl,
            "locked_keys": len(self._locks),
        }
