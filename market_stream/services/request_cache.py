# market_stream/services/request_cache.py
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from redis.exceptions import RedisError

from market_stream.exceptions import CacheUnavailable, ExchangeAPIError
from market_stream.utils.cache_keys import build_cache_key, cache_key_pattern

logger = logging.getLogger(__name__)

# 종류별 기본 캐시 TTL (초)
DEFAULT_CACHE_TTL = {
    "ticker": 60,
    "klines": 300,
    "market": 1800,
    "exchange_info": 3600,
    "depth": 30,
    "trades": 30,
}

ENDPOINTS = {
    "ticker": "/api/v3/ticker/24hr",
    "klines": "/api/v3/klines",
    "depth": "/api/v3/depth",
    "trades": "/api/v3/trades",
    "exchange_info": "/api/v3/exchangeInfo",
}

NAMESPACE = "api"


@dataclass
class CachedResponse:
    data: Any
    source: str  # "cache" | "api"


class RequestCache:
    """
    거래소 REST 조회용 TTL 캐시

    같은 요청(엔드포인트 + 정렬된 파라미터)은 TTL 동안 Redis에서 응답합니다.
    캐시에 접근할 수 없으면 거래소를 직접 호출하고, 거래소 오류는 그대로 전파합니다.
    """

    def __init__(
        self,
        redis_client,
        base_url: str = "https://api.binance.com",
        prefix: str = "market_stream",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        cache_ttl: Optional[Dict[str, int]] = None
    ):
        self.redis_client = redis_client
        self.base_url = base_url.rstrip("/")
        self.prefix = prefix
        self.timeout = timeout
        self.session = session or requests.Session()
        self.cache_ttl = {**DEFAULT_CACHE_TTL, **(cache_ttl or {})}

        self.stats = {"hits": 0, "misses": 0, "api_errors": 0, "cache_errors": 0}

    def set_cache_ttl(self, ttl: Dict[str, int]) -> Dict[str, int]:
        """종류별 TTL 일부 교체"""
        unknown = set(ttl) - set(DEFAULT_CACHE_TTL)
        if unknown:
            raise ValueError(f"알 수 없는 캐시 종류: {', '.join(sorted(unknown))}")
        self.cache_ttl = {**self.cache_ttl, **ttl}
        logger.info(f"🔧 API 캐시 TTL 변경: {self.cache_ttl}")
        return self.cache_ttl

    def build_key(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        return build_cache_key(self.prefix, f"{NAMESPACE}:{endpoint}", None, **(params or {}))

    # =========================
    # 공통 조회
    # =========================

    async def fetch_with_cache(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        ttl: Optional[int] = None
    ) -> CachedResponse:
        """
        캐시 우선 조회

        Args:
            endpoint: ENDPOINTS의 이름 (ticker, klines, ...)
            params: 쿼리 파라미터
            ttl: 캐시 TTL (없으면 종류별 기본값)

        Raises:
            ExchangeAPIError: 캐시에 없고 거래소 호출이 실패한 경우
        """
        params = {k: v for k, v in (params or {}).items() if v is not None}
        key = self.build_key(endpoint, params)

        cache_available = True
        try:
            cached = await self._read(key)
        except CacheUnavailable as e:
            cache_available = False
            cached = None
            logger.warning(f"⚠️ 캐시 장애, 거래소를 직접 호출합니다: {key} - {e.details.get('error')}")

        if cached is not None:
            self.stats["hits"] += 1
            return CachedResponse(data=cached, source="cache")

        self.stats["misses"] += 1
        data = await asyncio.to_thread(self._request, ENDPOINTS[endpoint], params)

        if cache_available and data is not None:
            await self._write(key, data, ttl or self.cache_ttl.get(endpoint, 60))

        return CachedResponse(data=data, source="api")

    def _request(self, path: str, params: Dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            self.stats["api_errors"] += 1
            logger.error(f"❌ 거래소 요청 실패: {path} - {e}")
            raise ExchangeAPIError(f"거래소 요청 실패: {path}", details={"error": str(e)}) from e

        if response.status_code != 200:
            self.stats["api_errors"] += 1
            logger.error(f"❌ 거래소 API 오류: {path} {response.status_code}")
            raise ExchangeAPIError(
                f"거래소 API 오류: {response.status_code}",
                status_code=response.status_code,
                details={"path": path, "body": response.text[:200]}
            )

        return response.json()

    async def _read(self, key: str) -> Optional[Any]:
        try:
            raw = await self.redis_client.get(key)
        except (RedisError, OSError) as e:
            self.stats["cache_errors"] += 1
            raise CacheUnavailable(f"캐시 조회 실패: {key}", {"error": str(e)}) from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"⚠️ 캐시 항목 파싱 실패: {key}")
            return None

    async def _write(self, key: str, data: Any, ttl: int):
        try:
            await self.redis_client.set(key, json.dumps(data), ex=ttl)
        except (RedisError, OSError) as e:
            self.stats["cache_errors"] += 1
            logger.warning(f"⚠️ 캐시 저장 실패: {key} - {e}")

    # =========================
    # 조회 헬퍼
    # =========================

    async def get_ticker(self, symbol: str) -> CachedResponse:
        return await self.fetch_with_cache("ticker", {"symbol": symbol.upper()})

    async def get_klines(self, symbol: str, interval: str, limit: int = 500) -> CachedResponse:
        return await self.fetch_with_cache(
            "klines", {"symbol": symbol.upper(), "interval": interval, "limit": limit}
        )

    async def get_depth(self, symbol: str, limit: int = 100) -> CachedResponse:
        return await self.fetch_with_cache("depth", {"symbol": symbol.upper(), "limit": limit})

    async def get_trades(self, symbol: str, limit: int = 500) -> CachedResponse:
        return await self.fetch_with_cache("trades", {"symbol": symbol.upper(), "limit": limit})

    async def get_exchange_info(self) -> CachedResponse:
        return await self.fetch_with_cache("exchange_info")

    async def get_market(self, quote: str) -> CachedResponse:
        """
        quote 자산으로 거래되는 심볼 목록

        exchangeInfo를 필터링한 결과를 별도 키로 캐시합니다.
        """
        quote = quote.upper()
        key = self.build_key("market", {"quote": quote})

        cache_available = True
        try:
            cached = await self._read(key)
        except CacheUnavailable:
            cache_available = False
            cached = None
            logger.warning(f"⚠️ 캐시 장애, exchangeInfo에서 직접 계산합니다: {key}")

        if cached is not None:
            self.stats["hits"] += 1
            return CachedResponse(data=cached, source="cache")

        info = await self.get_exchange_info()
        symbols = [
            {
                "symbol": item["symbol"],
                "baseAsset": item["baseAsset"],
                "quoteAsset": item["quoteAsset"],
                "status": item.get("status"),
            }
            for item in (info.data or {}).get("symbols", [])
            if item.get("quoteAsset") == quote
        ]

        if cache_available:
            await self._write(key, symbols, self.cache_ttl["market"])
        return CachedResponse(data=symbols, source=info.source)

    # =========================
    # 정리
    # =========================

    async def clear(self) -> int:
        """api 네임스페이스 전체 삭제"""
        pattern = cache_key_pattern(self.prefix, NAMESPACE)
        try:
            keys = [key async for key in self.redis_client.scan_iter(match=pattern)]
            if keys:
                await self.redis_client.delete(*keys)
        except (RedisError, OSError) as e:
            self.stats["cache_errors"] += 1
            raise CacheUnavailable(f"캐시 삭제 실패: {pattern}", {"error": str(e)}) from e

        logger.info(f"🧹 API 캐시 정리 완료: {len(keys)}개")
        return len(keys)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "cache_ttl": self.cache_ttl}
