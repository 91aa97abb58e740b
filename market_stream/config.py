from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    """
    시세 배포 서버 전체 설정을 관리하는 클래스

    pydantic-settings의 BaseSettings를 사용하여:
    1. 환경 변수 자동 로딩
    2. 타입 검증
    3. 기본값 설정

    환경 변수는 다음 순서로 읽어집니다:
    1. 실제 환경 변수
    2. .env 파일
    3. 기본값
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # === 애플리케이션 기본 설정 ===
    app_name: str = Field("Market Stream", description="애플리케이션 이름")
    app_version: str = Field("1.0.0", description="애플리케이션 버전")
    debug: bool = Field(False, description="디버그 모드")

    # === 서버 설정 ===
    host: str = Field("0.0.0.0", description="서버 호스트")
    port: int = Field(8888, description="서버 포트")

    # === Redis 설정 ===
    redis_host: str = Field("localhost", description="Redis 호스트")
    redis_port: int = Field(6379, description="Redis 포트")
    redis_db: int = Field(0, description="Redis 데이터베이스 번호")
    redis_password: Optional[str] = Field(None, description="Redis 비밀번호")
    redis_socket_timeout: float = Field(5.0, description="Redis 소켓 타임아웃 (초)")

    # === 캐시 키 설정 ===
    cache_prefix: str = Field("market_stream", description="캐시 키 접두사")

    # === 임계값 설정 (ThresholdCache) ===
    threshold_percentage: float = Field(0.5, description="유의미한 변화로 판단할 변화율 (%)")
    threshold_absolute: float = Field(10.0, description="유의미한 변화로 판단할 절대 변화량")
    threshold_time_window: float = Field(30.0, description="남은 TTL이 이 값(초)보다 작으면 강제 갱신")
    price_entry_ttl: int = Field(60, description="기준값(baseline) 캐시 TTL (초)")
    fail_open: bool = Field(True, description="캐시 장애 시 모든 업데이트를 그대로 전달")

    # === 구독 허브 설정 ===
    heartbeat_interval: float = Field(30.0, description="liveness ping 주기 (초)")
    max_missed_pongs: int = Field(2, description="연속으로 놓친 pong 허용 횟수")
    send_timeout: float = Field(5.0, description="클라이언트별 전송 타임아웃 (초)")

    # === 업스트림 피드 설정 ===
    upstream_enabled: bool = Field(True, description="서버 시작 시 업스트림 피드 연결 여부")
    upstream_ws_url: str = Field(
        "wss://stream.binance.com:9443/stream",
        description="Binance combined stream 주소"
    )
    upstream_reconnect_delay: float = Field(5.0, description="업스트림 재연결 대기 (초)")
    upstream_symbols: List[str] = Field(
        ["BTCUSDT", "ETHUSDT"],
        description="서버 시작 시 구독할 기본 심볼"
    )
    upstream_kline_intervals: List[str] = Field(
        ["1m", "5m", "15m", "1h", "4h", "1d"],
        description="기본 구독 kline 간격"
    )
    upstream_depth_level: str = Field("20", description="depth 스트림 레벨")
    max_streams_per_connection: int = Field(50, description="연결당 최대 스트림 수")

    # === REST 캐시 설정 (RequestCache) ===
    exchange_rest_url: str = Field("https://api.binance.com", description="Binance REST 주소")
    exchange_rest_timeout: float = Field(10.0, description="REST 요청 타임아웃 (초)")

    # === 클라이언트 연결 매니저 기본값 ===
    client_reconnect_attempts: int = Field(5, description="클라이언트 최대 재연결 시도 횟수")
    client_reconnect_interval: float = Field(2.0, description="클라이언트 재연결 간격 (초)")
    client_heartbeat_interval: float = Field(30.0, description="클라이언트 ping 주기 (초)")

    # === CORS 설정 ===
    allowed_origins: list = Field(
        [
            "http://localhost:3000",  # React 개발 서버
        ],
        description="CORS 허용 오리진"
    )

    # === API 설정 ===
    api_v1_prefix: str = Field("/api/v1", description="API v1 경로 접두사")

    # === 로깅 설정 ===
    log_level: str = Field("INFO", description="로그 레벨")

    @property
    def redis_url(self) -> str:
        """
        Redis 연결 URL을 생성합니다.

        Returns:
            str: Redis 연결 URL
        """
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        else:
            return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

# 전역 설정 인스턴스
settings = Settings()

def get_settings() -> Settings:
    """
    설정 인스턴스를 반환하는 팩토리 함수

    ClientConnectionManager.from_settings()가 기본값을 읽을 때 사용합니다.
    """
    return settings

# === 로깅 설정 ===
def get_log_config() -> dict:
    """
    로깅 설정을 반환합니다.

    uvicorn과 Python 표준 로깅 모듈에서 사용할 설정입니다.
    """
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {
            "level": settings.log_level,
            "handlers": ["default"],
        },
    }
