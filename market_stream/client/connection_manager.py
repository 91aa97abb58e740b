# market_stream/client/connection_manager.py
import asyncio
import inspect
import json
import logging
from collections import deque
from datetime import datetime
from enum import Enum
from itertools import count
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Union

import websockets

from market_stream.config import Settings, get_settings
from market_stream.exceptions import MarketStreamError, ReconnectExhausted, RemoteError
from market_stream.schemas.websocket_schema import (
    RequestMethod, WebSocketMessageType, channel_key_for_message,
    create_heartbeat_message, parse_channel_key
)

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[MarketStreamError], Union[None, Awaitable[None]]]
Connector = Callable[[str], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[None]]


class ClientState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"


async def _call(callback: Callable, *args):
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class ClientConnectionManager:
    """
    허브에 연결하는 클라이언트 측 연결 매니저

    **보장하는 것:**
    - 연결 전에 보낸 메시지는 큐에 쌓였다가 연결 직후 순서대로 전송
    - 구독은 원하는 상태(channel → handler 집합)로만 관리하고,
      (재)연결할 때마다 그 상태로부터 SUBSCRIBE를 다시 보냄
    - 재연결은 정해진 횟수까지만 시도하고, 모두 실패하면 CLOSED에 머물며
      ReconnectExhausted를 on_error와 대기 중인 호출자에게 전달
    - close()로 닫은 연결은 재연결하지 않음
    """

    def __init__(
        self,
        url: str,
        reconnect_attempts: int = 5,
        reconnect_interval: float = 2.0,
        max_reconnect_interval: Optional[float] = None,
        heartbeat_interval: float = 30.0,
        connect: Optional[Connector] = None,
        sleep: Sleeper = asyncio.sleep,
        on_error: Optional[ErrorCallback] = None,
        on_ack: Optional[Handler] = None,
        on_state_change: Optional[Callable[[ClientState], Any]] = None
    ):
        """
        Args:
            url: 허브 WebSocket URL
            reconnect_attempts: 최대 재연결 시도 횟수
            reconnect_interval: 재연결 기본 간격 (초), 시도마다 선형 증가
            max_reconnect_interval: 재연결 간격 상한 (없으면 reconnect_interval 고정)
            heartbeat_interval: ping 주기 (초), 0이면 비활성
            connect: url → 웹소켓 연결 (테스트용)
            sleep: 대기 함수 (테스트용)
        """
        self.url = url
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_interval = (
            max_reconnect_interval if max_reconnect_interval is not None else reconnect_interval
        )
        self.heartbeat_interval = heartbeat_interval
        self._connect = connect or self._default_connect
        self._sleep = sleep

        self.on_error = on_error
        self.on_ack = on_ack
        self.on_state_change = on_state_change

        self.state = ClientState.CLOSED
        self.reconnect_attempt = 0
        self.last_error: Optional[MarketStreamError] = None
        self.last_pong_at: Optional[datetime] = None

        self.pending_messages: Deque[str] = deque()
        self.subscriptions: Dict[str, Set[Handler]] = {}
        self.message_handlers: Dict[str, Set[Handler]] = {}

        self._socket = None
        self._closing = False
        self._request_ids = count(1)
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self.reconnect_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, url: str, config: Optional[Settings] = None, **options) -> "ClientConnectionManager":
        """설정의 client_* 기본값으로 생성 (options가 우선)"""
        config = config or get_settings()
        defaults = {
            "reconnect_attempts": config.client_reconnect_attempts,
            "reconnect_interval": config.client_reconnect_interval,
            "heartbeat_interval": config.client_heartbeat_interval,
        }
        return cls(url, **{**defaults, **options})

    @staticmethod
    async def _default_connect(url: str):
        return await websockets.connect(url, ping_interval=None, close_timeout=5)

    def _set_state(self, state: ClientState):
        if self.state == state:
            return
        logger.debug(f"클라이언트 상태 변경: {self.state.value} → {state.value}")
        self.state = state
        if self.on_state_change:
            self.on_state_change(state)

    # =========================
    # 연결 / 재연결
    # =========================

    async def connect(self):
        """
        허브에 연결

        첫 연결이 실패하면 재연결 루프로 넘어갑니다.

        Raises:
            ReconnectExhausted: 재연결 시도를 모두 소진한 경우
        """
        if self.state in (ClientState.OPEN, ClientState.CONNECTING, ClientState.RECONNECTING):
            return

        self._closing = False
        try:
            await self._open()
        except Exception as e:
            logger.warning(f"⚠️ 허브 연결 실패: {self.url} - {e}")
            await self._reconnect(e)

    async def _open(self):
        self._set_state(ClientState.CONNECTING)
        socket = await self._connect(self.url)

        self._socket = socket
        self._set_state(ClientState.OPEN)
        self.reconnect_attempt = 0
        logger.info(f"🔗 허브 연결 성공: {self.url}")

        await self._flush_pending()
        await self._replay_subscriptions()

        self._reader_task = asyncio.create_task(self._read_loop(socket))
        if self.heartbeat_interval and self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def backoff_delay(self, attempt: int) -> float:
        """재연결 대기 시간 (선형 증가, 상한 적용)"""
        return min(self.reconnect_interval * attempt, self.max_reconnect_interval)

    async def _reconnect(self, cause: Optional[BaseException] = None):
        last_error = cause

        for attempt in range(1, self.reconnect_attempts + 1):
            self.reconnect_attempt = attempt
            self._set_state(ClientState.RECONNECTING)

            delay = self.backoff_delay(attempt)
            logger.info(f"🔄 재연결 시도 {attempt}/{self.reconnect_attempts} ({delay}초 후): {self.url}")
            await self._sleep(delay)

            if self._closing:
                self._set_state(ClientState.CLOSED)
                return

            try:
                await self._open()
                logger.info(f"✅ 재연결 성공 ({attempt}번째 시도)")
                return
            except Exception as e:
                last_error = e
                logger.warning(f"⚠️ 재연결 실패 ({attempt}/{self.reconnect_attempts}): {e}")

        self._set_state(ClientState.CLOSED)
        error = ReconnectExhausted(self.reconnect_attempts, last_error)
        self.last_error = error
        logger.error(f"❌ 최대 재연결 횟수 초과: {self.url}")
        await self._emit_error(error)
        raise error

    async def _reconnect_quietly(self, cause: Optional[BaseException] = None):
        try:
            await self._reconnect(cause)
        except ReconnectExhausted:
            # on_error와 last_error로 이미 전달됨
            logger.debug("백그라운드 재연결 종료")

    async def _connect_quietly(self):
        try:
            await self.connect()
        except ReconnectExhausted:
            logger.debug("백그라운드 연결 종료")

    def _spawn_connect(self):
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.create_task(self._connect_quietly())

    def _handle_transport_closed(self, error: Optional[BaseException] = None):
        self._socket = None
        self._stop_heartbeat()

        if self._closing:
            self._set_state(ClientState.CLOSED)
            logger.info(f"🔌 허브 연결 종료: {self.url}")
            return

        logger.warning(f"⚠️ 허브 연결 끊김: {self.url} - {error or '원격 종료'}")
        self._set_state(ClientState.CLOSED)
        self.reconnect_task = asyncio.create_task(self._reconnect_quietly(error))

    async def close(self):
        """자발적 종료 (재연결하지 않음)"""
        self._closing = True
        self._set_state(ClientState.CLOSING)
        self._stop_heartbeat()

        for task in (self.reconnect_task, self._connect_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        socket, self._socket = self._socket, None
        if socket is not None:
            try:
                await socket.close()
            except Exception as e:
                logger.debug(f"소켓 종료 중 오류 (무시): {e}")

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass

        self._set_state(ClientState.CLOSED)
        logger.info(f"🔌 허브 연결 종료: {self.url}")

    # =========================
    # 전송
    # =========================

    async def send(self, message: Union[str, Dict[str, Any]]) -> bool:
        """
        메시지 전송

        OPEN이 아니면 큐에 넣고, CLOSED 상태라면 연결을 시작합니다.

        Returns:
            bool: 즉시 전송되었는지
        """
        text = message if isinstance(message, str) else json.dumps(message)

        if await self._send_now(text):
            return True

        self.pending_messages.append(text)
        if self.state == ClientState.CLOSED:
            self._spawn_connect()
        return False

    async def _send_now(self, text: str) -> bool:
        if self.state != ClientState.OPEN or self._socket is None:
            return False
        try:
            await self._socket.send(text)
            return True
        except Exception as e:
            logger.warning(f"⚠️ 메시지 전송 실패: {e}")
            return False

    async def _flush_pending(self):
        while self.pending_messages:
            if not await self._send_now(self.pending_messages[0]):
                break
            self.pending_messages.popleft()

    def _request(self, method: RequestMethod, channels: List[str]) -> str:
        return json.dumps({"method": method.value, "params": channels, "id": next(self._request_ids)})

    async def _replay_subscriptions(self):
        if not self.subscriptions:
            return
        channels = sorted(self.subscriptions)
        await self._send_now(self._request(RequestMethod.SUBSCRIBE, channels))
        logger.info(f"🔁 구독 복원: {len(channels)}개 채널")

    # =========================
    # 구독
    # =========================

    async def subscribe(self, channel: str, handler: Handler) -> bool:
        """
        채널 구독

        채널의 첫 handler일 때만 SUBSCRIBE를 보냅니다. 연결 전이라면
        연결 직후 구독 복원 단계에서 전송됩니다.

        Returns:
            bool: 새로 구독한 채널이면 True
        """
        channel = parse_channel_key(channel).key
        handlers = self.subscriptions.get(channel)
        is_new = handlers is None

        if is_new:
            handlers = self.subscriptions[channel] = set()
        handlers.add(handler)

        if is_new and self.state == ClientState.OPEN:
            await self._send_now(self._request(RequestMethod.SUBSCRIBE, [channel]))
        elif self.state == ClientState.CLOSED and not self._closing:
            self._spawn_connect()
        return is_new

    async def unsubscribe(self, channel: str, handler: Optional[Handler] = None) -> bool:
        """
        구독 해제

        handler를 지정하지 않으면 채널의 모든 handler를 제거합니다.
        마지막 handler가 빠질 때만 UNSUBSCRIBE를 보냅니다.

        Returns:
            bool: 채널 구독이 완전히 해제되었으면 True
        """
        channel = parse_channel_key(channel).key
        handlers = self.subscriptions.get(channel)
        if handlers is None:
            return False

        if handler is None:
            handlers.clear()
        else:
            handlers.discard(handler)

        if handlers:
            return False

        del self.subscriptions[channel]
        await self._send_now(self._request(RequestMethod.UNSUBSCRIBE, [channel]))
        return True

    def add_message_handler(self, message_type: str, handler: Handler):
        """메시지 타입별 handler 등록 (채널과 무관한 메시지용)"""
        self.message_handlers.setdefault(message_type, set()).add(handler)

    def remove_message_handler(self, message_type: str, handler: Handler):
        handlers = self.message_handlers.get(message_type)
        if handlers is None:
            return
        handlers.discard(handler)
        if not handlers:
            del self.message_handlers[message_type]

    # =========================
    # 수신
    # =========================

    async def _read_loop(self, socket):
        error = None
        try:
            async for raw in socket:
                await self.dispatch(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e

        if self._socket is socket or self._socket is None:
            self._handle_transport_closed(error)

    async def dispatch(self, raw: Union[str, bytes]):
        """수신 프레임을 handler / 콜백으로 전달"""
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"⚠️ 수신 메시지 파싱 오류: {e}")
            return
        if not isinstance(message, dict):
            return

        message_type = message.get("type")

        if message_type == WebSocketMessageType.PING.value:
            await self._send_now(create_heartbeat_message(WebSocketMessageType.PONG).model_dump_json())
            return
        if message_type == WebSocketMessageType.PONG.value:
            self.last_pong_at = datetime.utcnow()
            return

        if message_type == WebSocketMessageType.ERROR.value:
            await self._emit_error(RemoteError(
                error_code=message.get("error_code"),
                message=message.get("message", ""),
                request_id=message.get("id"),
                details=message.get("details")
            ))
        elif message_type is None and "status" in message:
            if self.on_ack:
                await self._safe_call(self.on_ack, message)
            return

        for handler in list(self.message_handlers.get(message_type, ())):
            await self._safe_call(handler, message)

        channel = channel_key_for_message(message)
        if channel is None:
            return

        handlers = list(self.subscriptions.get(channel, ()))
        kind_channel = channel.split(":")[0]
        if kind_channel != channel:
            handlers.extend(h for h in self.subscriptions.get(kind_channel, ()) if h not in handlers)

        for handler in handlers:
            await self._safe_call(handler, message)

    async def _safe_call(self, callback: Callable, *args):
        try:
            await _call(callback, *args)
        except Exception as e:
            logger.error(f"❌ handler 실행 오류: {e}")

    async def _emit_error(self, error: MarketStreamError):
        if self.on_error:
            await self._safe_call(self.on_error, error)

    # =========================
    # Heartbeat
    # =========================

    async def send_heartbeat(self) -> bool:
        """ping 전송 (응답이 없어도 연결을 닫지 않음)"""
        return await self._send_now(create_heartbeat_message(WebSocketMessageType.PING).model_dump_json())

    async def _heartbeat_loop(self):
        try:
            while self.state == ClientState.OPEN:
                await self._sleep(self.heartbeat_interval)
                if self.state != ClientState.OPEN:
                    break
                await self.send_heartbeat()
        except asyncio.CancelledError:
            logger.debug("heartbeat 중단됨")
            raise

    def _stop_heartbeat(self):
        task, self._heartbeat_task = self._heartbeat_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def get_status(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "state": self.state.value,
            "reconnect_attempt": self.reconnect_attempt,
            "pending_messages": len(self.pending_messages),
            "subscriptions": sorted(self.subscriptions),
            "last_error": str(self.last_error) if self.last_error else None,
        }


class ConnectionPool:
    """URL별 ClientConnectionManager 공유"""

    def __init__(self):
        self.connections: Dict[str, ClientConnectionManager] = {}

    def get_connection(self, url: str, **options) -> ClientConnectionManager:
        if url not in self.connections:
            self.connections[url] = ClientConnectionManager.from_settings(url, **options)
        return self.connections[url]

    async def close_all(self):
        for connection in self.connections.values():
            await connection.close()
        self.connections.clear()
