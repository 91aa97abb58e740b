# market_stream/api/endpoints/admin_endpoint.py
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from market_stream.dependencies import Services, get_services, get_threshold_cache
from market_stream.exceptions import CacheUnavailable
from market_stream.schemas.websocket_schema import DataKind, ThresholdConfig, ThresholdOverride
from market_stream.websocket.threshold_cache import ThresholdCache

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/thresholds", response_model=ThresholdConfig, summary="전역 임계값 조회")
async def get_thresholds(threshold_cache: ThresholdCache = Depends(get_threshold_cache)):
    return threshold_cache.get_thresholds()


@router.put("/thresholds", response_model=ThresholdConfig, summary="전역 임계값 변경")
async def update_thresholds(
    thresholds: ThresholdOverride,
    threshold_cache: ThresholdCache = Depends(get_threshold_cache)
):
    """
    전역 임계값 변경

    지정한 필드만 바뀌며, 다음 평가부터 적용됩니다.
    """
    return threshold_cache.set_thresholds(thresholds)


@router.delete("/cache", summary="캐시 삭제")
async def clear_cache(
    kind: Optional[DataKind] = Query(None, description="삭제할 시세 종류 (없으면 전체)"),
    include_api: bool = Query(True, description="REST 응답 캐시도 삭제"),
    services: Services = Depends(get_services)
):
    try:
        deleted = await services.threshold_cache.clear(kind.value if kind else None)
        api_deleted = await services.request_cache.clear() if include_api and kind is None else 0
    except CacheUnavailable as e:
        logger.error(f"❌ 캐시 삭제 실패: {e}")
        raise HTTPException(status_code=503, detail="캐시를 사용할 수 없습니다.")

    return {"deleted": deleted, "api_deleted": api_deleted}


@router.get("/status", summary="허브 / 피드 상태")
async def get_status(services: Services = Depends(get_services)):
    return {
        "timestamp": datetime.utcnow().isoformat(),
        "hub": services.hub.get_status(),
        "upstream": services.upstream_feed.get_status(),
        "threshold_cache": services.threshold_cache.get_stats(),
        "request_cache": services.request_cache.get_stats(),
    }
