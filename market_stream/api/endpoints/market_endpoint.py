# market_stream/api/endpoints/market_endpoint.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Query

from market_stream.dependencies import get_request_cache, get_threshold_cache
from market_stream.exceptions import CacheUnavailable, ExchangeAPIError
from market_stream.schemas.websocket_schema import DataKind, KLINE_INTERVALS, validate_symbol
from market_stream.services.request_cache import CachedResponse, RequestCache
from market_stream.websocket.threshold_cache import ThresholdCache, extract_primary

logger = logging.getLogger(__name__)

router = APIRouter()


def _symbol(symbol: str) -> str:
    if not validate_symbol(symbol):
        raise HTTPException(status_code=400, detail=f"유효하지 않은 심볼: {symbol}")
    return symbol.upper()


def _exchange_error(e: ExchangeAPIError) -> HTTPException:
    """거래소 4xx는 요청 오류로, 그 외는 게이트웨이 오류로 변환"""
    if e.status_code is not None and 400 <= e.status_code < 500 and e.status_code != 429:
        return HTTPException(status_code=400, detail=e.message)
    return HTTPException(status_code=502, detail=e.message)


def _response(result: CachedResponse) -> dict:
    return {"data": result.data, "source": result.source}


@router.get("/ticker/{symbol}", summary="24시간 티커")
async def get_ticker(
    symbol: str = Path(..., description="심볼 (예: BTCUSDT)"),
    request_cache: RequestCache = Depends(get_request_cache)
):
    try:
        return _response(await request_cache.get_ticker(_symbol(symbol)))
    except ExchangeAPIError as e:
        raise _exchange_error(e)


@router.get("/klines/{symbol}", summary="캔들 데이터")
async def get_klines(
    symbol: str = Path(..., description="심볼 (예: BTCUSDT)"),
    interval: str = Query("1h", description="캔들 간격"),
    limit: int = Query(500, ge=1, le=1000, description="캔들 개수"),
    request_cache: RequestCache = Depends(get_request_cache)
):
    if interval not in KLINE_INTERVALS:
        raise HTTPException(status_code=400, detail=f"지원하지 않는 kline 간격: {interval}")
    try:
        return _response(await request_cache.get_klines(_symbol(symbol), interval, limit))
    except ExchangeAPIError as e:
        raise _exchange_error(e)


@router.get("/depth/{symbol}", summary="호가창")
async def get_depth(
    symbol: str = Path(..., description="심볼 (예: BTCUSDT)"),
    limit: int = Query(100, ge=1, le=5000, description="호가 단계 수"),
    request_cache: RequestCache = Depends(get_request_cache)
):
    try:
        return _response(await request_cache.get_depth(_symbol(symbol), limit))
    except ExchangeAPIError as e:
        raise _exchange_error(e)


@router.get("/trades/{symbol}", summary="최근 체결")
async def get_trades(
    symbol: str = Path(..., description="심볼 (예: BTCUSDT)"),
    limit: int = Query(500, ge=1, le=1000, description="체결 개수"),
    request_cache: RequestCache = Depends(get_request_cache)
):
    try:
        return _response(await request_cache.get_trades(_symbol(symbol), limit))
    except ExchangeAPIError as e:
        raise _exchange_error(e)


@router.get("/exchange-info", summary="거래소 정보")
async def get_exchange_info(request_cache: RequestCache = Depends(get_request_cache)):
    try:
        return _response(await request_cache.get_exchange_info())
    except ExchangeAPIError as e:
        raise _exchange_error(e)


@router.get("/markets/{quote}", summary="quote 자산별 심볼 목록")
async def get_market(
    quote: str = Path(..., description="quote 자산 (예: USDT)"),
    request_cache: RequestCache = Depends(get_request_cache)
):
    try:
        return _response(await request_cache.get_market(_symbol(quote)))
    except ExchangeAPIError as e:
        raise _exchange_error(e)


@router.get("/price/{symbol}", summary="마지막으로 채택된 가격")
async def get_price(
    symbol: str = Path(..., description="심볼 (예: BTCUSDT)"),
    threshold_cache: ThresholdCache = Depends(get_threshold_cache)
):
    """
    ThresholdCache에 마지막으로 채택된 가격

    체결(price) 값을 우선 사용하고, 없으면 티커 값을 사용합니다.
    임계값 미만으로 억제된 관측값은 반영되지 않습니다.
    """
    symbol = _symbol(symbol)
    try:
        for kind in (DataKind.PRICE, DataKind.TICKER):
            entry = await threshold_cache.get_entry(threshold_cache.build_key(kind.value, symbol))
            if entry is not None:
                return {
                    "symbol": symbol,
                    "price": extract_primary(entry["value"]),
                    "kind": kind.value,
                    "accepted_at": entry["accepted_at"],
                    "expires_at": entry["expires_at"],
                }
    except CacheUnavailable as e:
        logger.error(f"❌ 가격 캐시 조회 실패: {symbol} - {e}")
        raise HTTPException(status_code=503, detail="가격 캐시를 사용할 수 없습니다.")

    raise HTTPException(status_code=404, detail=f"{symbol}의 가격 정보가 없습니다.")
