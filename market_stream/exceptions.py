# market_stream/exceptions.py
"""
시세 배포 계층의 에러 분류

- MalformedMessage: 잘못된 수신 프레임 (에러 응답 후 연결 유지)
- UpstreamDisconnected: 거래소 피드 끊김 (무한 재시도)
- DownstreamDisconnected: 클라이언트 끊김 (구독 정리, 재시도 없음)
- CacheUnavailable: 백엔드 캐시 장애 (fail open)
- ReconnectExhausted: 클라이언트 매니저 재연결 한도 초과 (애플리케이션에 전달)
- RemoteError: 서버가 보낸 error envelope
- ExchangeAPIError: 거래소 REST 호출 실패 (호출자에게 전파)
"""

from typing import Any, Dict, Optional


class MarketStreamError(Exception):
    """시세 배포 계층 공통 예외"""

    error_code = "MARKET_STREAM_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class MalformedMessage(MarketStreamError):
    """기대한 envelope 형식으로 해석할 수 없는 수신 프레임"""

    error_code = "MALFORMED_MESSAGE"

    def __init__(self, message: str, request_id: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.request_id = request_id


class UpstreamDisconnected(MarketStreamError):
    """거래소 push 스트림 연결 끊김"""

    error_code = "UPSTREAM_DISCONNECTED"


class DownstreamDisconnected(MarketStreamError):
    """다운스트림 클라이언트 연결 끊김"""

    error_code = "DOWNSTREAM_DISCONNECTED"


class CacheUnavailable(MarketStreamError):
    """백엔드 캐시(Redis)에 접근할 수 없음"""

    error_code = "CACHE_UNAVAILABLE"


class ReconnectExhausted(MarketStreamError):
    """재연결 시도 횟수를 모두 소진함"""

    error_code = "RECONNECT_EXHAUSTED"

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(
            f"재연결 {attempts}회 실패",
            {"attempts": attempts, "last_error": str(last_error) if last_error else None}
        )
        self.attempts = attempts
        self.last_error = last_error


class RemoteError(MarketStreamError):
    """서버가 보낸 error envelope (클라이언트 매니저의 on_error로 전달)"""

    error_code = "REMOTE_ERROR"

    def __init__(
        self,
        error_code: str,
        message: str,
        request_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.error_code = error_code or self.error_code
        self.request_id = request_id


class ExchangeAPIError(MarketStreamError):
    """거래소 REST 호출 실패 (네트워크 오류 또는 2xx가 아닌 응답)"""

    error_code = "EXCHANGE_API_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.status_code = status_code
