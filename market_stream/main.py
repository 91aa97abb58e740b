# market_stream/main.py
import json
import logging
import logging.config
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import requests
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from market_stream.config import Settings, get_log_config, settings
from market_stream.dependencies import Services
from market_stream.exceptions import CacheUnavailable, ExchangeAPIError, MarketStreamError
from market_stream.redis_client import check_redis_connection, close_redis_client, create_redis_client
from market_stream.schemas.websocket_schema import ThresholdConfig
from market_stream.services.request_cache import RequestCache
from market_stream.websocket.handlers import WebSocketHandlers
from market_stream.websocket.manager import SubscriptionHub
from market_stream.websocket.threshold_cache import ThresholdCache
from market_stream.websocket.upstream_feed import UpstreamFeedAdapter, default_streams

# 로깅 설정
logging.config.dictConfig(get_log_config())
logger = logging.getLogger(__name__)


def build_services(
    config: Settings,
    redis_client: Any,
    upstream_connect=None,
    rest_session: Optional[requests.Session] = None
) -> Services:
    """설정으로부터 캐시, 허브, 업스트림 피드를 구성"""
    threshold_cache = ThresholdCache(
        redis_client,
        prefix=config.cache_prefix,
        thresholds=ThresholdConfig(
            percentage=config.threshold_percentage,
            absolute=config.threshold_absolute,
            time_window=config.threshold_time_window,
        ),
        entry_ttl=config.price_entry_ttl,
    )
    hub = SubscriptionHub(
        heartbeat_interval=config.heartbeat_interval,
        max_missed_pongs=config.max_missed_pongs,
        send_timeout=config.send_timeout,
    )
    upstream_feed = UpstreamFeedAdapter(
        hub,
        threshold_cache,
        ws_url=config.upstream_ws_url,
        streams=default_streams(config.upstream_symbols, config.upstream_kline_intervals),
        reconnect_delay=config.upstream_reconnect_delay,
        max_streams_per_connection=config.max_streams_per_connection,
        depth_level=config.upstream_depth_level,
        fail_open=config.fail_open,
        connect=upstream_connect,
    )
    request_cache = RequestCache(
        redis_client,
        base_url=config.exchange_rest_url,
        prefix=config.cache_prefix,
        timeout=config.exchange_rest_timeout,
        session=rest_session,
    )
    return Services(
        config=config,
        redis_client=redis_client,
        threshold_cache=threshold_cache,
        hub=hub,
        handlers=WebSocketHandlers(hub),
        upstream_feed=upstream_feed,
        request_cache=request_cache,
    )


def create_app(
    config: Settings = settings,
    redis_client: Any = None,
    upstream_connect=None,
    rest_session: Optional[requests.Session] = None
) -> FastAPI:
    """
    FastAPI 애플리케이션 생성

    Args:
        config: 설정 (테스트에서 교체)
        redis_client: 외부에서 만든 Redis 클라이언트 (없으면 설정으로 생성)
        upstream_connect: 업스트림 연결 함수 (테스트용)
        rest_session: 거래소 REST 세션 (테스트용)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(f"{config.app_name} v{config.app_version} 시작 중...")

        owns_redis = redis_client is None
        client = create_redis_client(config) if owns_redis else redis_client
        if await check_redis_connection(client):
            logger.info("✅ Redis 연결 성공")
        else:
            logger.error("❌ Redis 연결 실패 (캐시 없이 모든 업데이트를 전달합니다)")

        services = build_services(config, client, upstream_connect, rest_session)
        app.state.services = services

        services.hub.start_liveness()
        if config.upstream_enabled:
            await services.upstream_feed.start()

        logger.info(f"🚀 서버가 http://{config.host}:{config.port} 에서 실행 중")
        logger.info(f"📡 WebSocket: ws://{config.host}:{config.port}{config.api_v1_prefix}/ws")

        yield

        # Shutdown
        logger.info("🛑 애플리케이션 종료 중...")
        await services.upstream_feed.stop()
        await services.hub.shutdown()
        if owns_redis:
            await close_redis_client(client)
        app.state.services = None
        logger.info("✅ 정리 작업 완료")

    # FastAPI 애플리케이션 생성
    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="실시간 암호화폐 시세 배포 서버",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan
    )

    @app.middleware("http")
    async def detailed_logging_middleware(request: Request, call_next):
        """API 요청/응답 로깅 미들웨어"""
        start_time = time.time()

        client_ip = request.client.host if request.client else "unknown"
        method = request.method
        url = str(request.url)
        query_params = dict(request.query_params)

        logger.info(f"📥 {method} {url} - IP: {client_ip}")
        if query_params:
            logger.info(f"   Query params: {json.dumps(query_params, ensure_ascii=False)}")

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(f"💥 {method} {url} - ERROR ({process_time:.3f}s): {str(e)}")
            raise

        process_time = time.time() - start_time
        if response.status_code >= 400:
            logger.warning(f"❌ {method} {url} - {response.status_code} ({process_time:.3f}s)")
        else:
            logger.info(f"✅ {method} {url} - {response.status_code} ({process_time:.3f}s)")
        return response

    # CORS 미들웨어 설정
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    @app.get("/", tags=["Root"])
    async def root():
        """API 기본 정보"""
        return {
            "message": f"Welcome to {config.app_name}!",
            "version": config.app_version,
            "docs": "/docs",
            "websocket": f"{config.api_v1_prefix}/ws",
            "status": "running"
        }

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """
        헬스체크 - 서비스 상태 확인

        Redis가 내려가 있어도 시세 배포는 계속되므로 상태는 degraded로 표시합니다.
        """
        services = getattr(request.app.state, "services", None)
        if services is None:
            return JSONResponse(status_code=503, content={"status": "starting"})

        redis_status = "connected" if await check_redis_connection(services.redis_client) else "disconnected"
        hub_status = services.hub.get_status()

        return {
            "status": "healthy" if redis_status == "connected" else "degraded",
            "app_name": config.app_name,
            "version": config.app_version,
            "redis": redis_status,
            "upstream_running": services.upstream_feed.running,
            "active_connections": hub_status["active_connections"],
            "active_channels": hub_status["active_channels"],
            "debug_mode": config.debug
        }

    # API 라우터 등록
    from market_stream.api.api_v1 import api_router
    app.include_router(api_router, prefix=config.api_v1_prefix)

    @app.exception_handler(CacheUnavailable)
    async def cache_unavailable_handler(request: Request, exc: CacheUnavailable):
        logger.error(f"❌ 캐시 장애: {exc.message}")
        return JSONResponse(
            status_code=503,
            content={"error": exc.error_code, "detail": "캐시를 사용할 수 없습니다."}
        )

    @app.exception_handler(ExchangeAPIError)
    async def exchange_error_handler(request: Request, exc: ExchangeAPIError):
        logger.error(f"❌ 거래소 API 오류: {exc.message}")
        return JSONResponse(status_code=502, content={"error": exc.error_code, "detail": exc.message})

    @app.exception_handler(MarketStreamError)
    async def market_stream_error_handler(request: Request, exc: MarketStreamError):
        logger.error(f"❌ {exc.error_code}: {exc.message}")
        return JSONResponse(status_code=500, content={"error": exc.error_code, "detail": exc.message})

    # 전역 예외 처리기
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """
        전역 예외 처리기

        운영 환경에서는 에러 상세 정보를 숨기고, 개발 환경에서는 표시합니다.
        """
        logger.error(f"예상하지 못한 에러 발생: {str(exc)}", exc_info=True)

        if config.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal Server Error",
                    "detail": str(exc),
                    "type": type(exc).__name__
                }
            )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "detail": "서버에 오류가 발생했습니다. 잠시 후 다시 시도해주세요."
            }
        )

    # 개발 환경에서만 사용할 디버그 정보
    if config.debug:
        @app.get("/debug/info", tags=["Debug"])
        async def debug_info():
            """현재 설정값 확인 (운영 환경에서는 비활성화)"""
            return {
                "settings": {
                    "redis_host": config.redis_host,
                    "redis_port": config.redis_port,
                    "upstream_ws_url": config.upstream_ws_url,
                    "upstream_symbols": config.upstream_symbols,
                    "debug": config.debug,
                    "log_level": config.log_level
                },
                "allowed_origins": config.allowed_origins
            }

    return app


app = create_app()


def run():
    """market-stream 명령 진입점"""
    uvicorn.run(
        "market_stream.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=get_log_config()
    )


if __name__ == "__main__":
    run()
