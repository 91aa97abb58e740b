# market_stream/api/api_v1.py
from fastapi import APIRouter

from market_stream.api.endpoints import admin_endpoint, market_endpoint, websocket_endpoint

# API v1 메인 라우터 생성
api_router = APIRouter()

# 라우터 설정 구성
ROUTER_CONFIGS = [
    {
        "router": websocket_endpoint.router,
        "prefix": "",
        "tags": ["WebSocket"],
        "description": "실시간 시세 WebSocket (/ws)"
    },
    {
        "router": market_endpoint.router,
        "prefix": "/market",
        "tags": ["market"],
        "description": "거래소 REST 조회 (캐시)"
    },
    {
        "router": admin_endpoint.router,
        "prefix": "/admin",
        "tags": ["admin"],
        "description": "임계값 / 캐시 / 상태 관리"
    },
]

# 라우터 등록
for config in ROUTER_CONFIGS:
    api_router.include_router(
        config["router"],
        prefix=config["prefix"],
        tags=config["tags"]
    )


@api_router.get("/", tags=["API Info"], summary="API v1 정보")
async def api_v1_info():
    """API v1 기본 정보와 사용 가능한 엔드포인트 목록"""
    return {
        "version": "v1",
        "endpoints": {
            config["prefix"] or "/ws": config["description"]
            for config in ROUTER_CONFIGS
        }
    }
