# market_stream/websocket/manager.py
import asyncio
import json
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import BaseModel

from market_stream.exceptions import DownstreamDisconnected
from market_stream.schemas.websocket_schema import (
    ThresholdConfig, ThresholdOverride, WebSocketMessageType,
    create_error_message, create_heartbeat_message, now_ms
)
from market_stream.websocket.thresholds import (
    DEFAULT_CHANNEL_THRESHOLD, ChannelThreshold, reduce_overrides
)

logger = logging.getLogger(__name__)

ChannelListener = Callable[[str], Union[None, Awaitable[None]]]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class Connection:
    """다운스트림 소켓 하나 (허브가 수명 전체를 소유)"""
    id: str
    transport: Any
    client_ip: str = "unknown"
    state: ConnectionState = ConnectionState.CONNECTING
    subscriptions: Set[str] = field(default_factory=set)
    overrides: Dict[str, Optional[ThresholdOverride]] = field(default_factory=dict)
    is_alive: bool = True
    missed_pongs: int = 0
    last_pong_at: float = field(default_factory=time.time)
    connected_at: datetime = field(default_factory=datetime.utcnow)
    messages_sent: int = 0


def generate_client_id() -> str:
    return f"ws_{now_ms()}_{uuid.uuid4().hex[:9]}"


class SubscriptionHub:
    """
    다운스트림 WebSocket 구독 허브

    채널(kind:SYMBOL[:interval])별 구독자를 관리하고, 유의미한 업데이트를
    해당 채널 구독자에게만 브로드캐스트합니다.

    **관리하는 상태:**
    - 연결별 구독 채널 집합
    - 채널별 구독자 역색인 (channel → connection id)
    - 채널별 유효 임계값 (구독별 요청의 최소값)

    두 색인은 항상 일치해야 하며, 모든 변경은 하나의 락 안에서 이루어집니다.
    브로드캐스트는 락 안에서 구독자 스냅샷만 만들고 전송은 락 밖에서 수행합니다.
    """

    def __init__(
        self,
        heartbeat_interval: float = 30.0,
        max_missed_pongs: int = 2,
        send_timeout: float = 5.0
    ):
        """
        Args:
            heartbeat_interval: liveness ping 주기 (초)
            max_missed_pongs: 연속으로 응답하지 않은 ping 허용 횟수
            send_timeout: 클라이언트별 전송 타임아웃 (초)
        """
        self.heartbeat_interval = heartbeat_interval
        self.max_missed_pongs = max(1, max_missed_pongs)
        self.send_timeout = send_timeout

        self._connections: Dict[str, Connection] = {}
        self._channels: Dict[str, Set[str]] = {}
        self._channel_thresholds: Dict[str, ChannelThreshold] = {}
        self._lock = asyncio.Lock()

        self._channel_added_listeners: List[ChannelListener] = []
        self._channel_removed_listeners: List[ChannelListener] = []

        self._liveness_task: Optional[asyncio.Task] = None

        # 통계 정보
        self.stats = {
            "total_connections": 0,
            "total_disconnections": 0,
            "total_messages_sent": 0,
            "total_broadcasts": 0,
            "total_errors": 0,
            "evicted_connections": 0,
            "start_time": datetime.utcnow()
        }

        logger.info("✅ SubscriptionHub 초기화 완료")

    # =========================
    # 연결 관리
    # =========================

    async def connect(self, transport: Any, client_ip: str = "unknown") -> str:
        """
        새 연결 등록 (CONNECTING 상태)

        Returns:
            str: 연결 ID
        """
        connection = Connection(id=generate_client_id(), transport=transport, client_ip=client_ip)
        async with self._lock:
            self._connections[connection.id] = connection

        self.stats["total_connections"] += 1
        logger.info(f"🔗 클라이언트 연결: {connection.id} ({client_ip})")
        return connection.id

    async def mark_open(self, connection_id: str):
        """연결을 OPEN 상태로 전환 (브로드캐스트 수신 시작)"""
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None or connection.state != ConnectionState.CONNECTING:
                raise DownstreamDisconnected(f"열 수 없는 연결: {connection_id}")
            connection.state = ConnectionState.OPEN
            connection.last_pong_at = time.time()

        logger.info(f"📊 현재 연결 수: {len(self._connections)}")

    async def disconnect(self, connection_id: str, terminate: bool = False, reason: str = "closed") -> bool:
        """
        연결 해제 및 모든 구독 정리

        락 안에서 모든 채널 구독자 집합에서 제거한 뒤에 반환하므로,
        이후의 브로드캐스트는 이 연결을 보지 않습니다.

        Args:
            connection_id: 연결 ID
            terminate: True면 transport를 강제로 닫음
            reason: 로깅용 사유

        Returns:
            bool: 실제로 정리한 연결이 있었는지
        """
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return False

            connection.state = ConnectionState.CLOSING
            emptied = self._drain_locked(connection, list(connection.subscriptions))

        if terminate:
            try:
                await connection.transport.close(code=1001)
            except Exception as e:
                logger.debug(f"transport 종료 중 오류 (무시): {connection_id} - {e}")

        connection.state = ConnectionState.CLOSED
        self.stats["total_disconnections"] += 1

        duration = datetime.utcnow() - connection.connected_at
        logger.info(f"🔌 클라이언트 해제: {connection_id} ({reason}, 연결 시간: {duration})")

        await self._notify(self._channel_removed_listeners, emptied)
        return True

    async def evict(self, connection_id: str, reason: str = "evicted") -> bool:
        """응답 없는 연결 강제 종료 후 정리"""
        removed = await self.disconnect(connection_id, terminate=True, reason=reason)
        if removed:
            self.stats["evicted_connections"] += 1
            logger.warning(f"🧹 연결 강제 종료: {connection_id} ({reason})")
        return removed

    # =========================
    # 구독 관리
    # =========================

    async def subscribe(
        self,
        connection_id: str,
        channel_key: str,
        thresholds: Optional[ThresholdOverride] = None
    ) -> bool:
        """
        채널 구독 (멱등)

        같은 채널을 두 번 구독해도 한 번 구독한 것과 같습니다.
        임계값 요청은 마지막 요청으로 교체됩니다.

        Returns:
            bool: 새로 추가된 구독이면 True
        """
        async with self._lock:
            connection = self._get_active_locked(connection_id)

            added = channel_key not in connection.subscriptions
            channel_created = channel_key not in self._channels

            connection.subscriptions.add(channel_key)
            connection.overrides[channel_key] = thresholds
            self._channels.setdefault(channel_key, set()).add(connection_id)
            self._recompute_threshold_locked(channel_key)

        if added:
            logger.info(f"✅ 구독: {connection_id} -> {channel_key}")
        if channel_created:
            await self._notify(self._channel_added_listeners, [channel_key])
        return added

    async def unsubscribe(
        self,
        connection_id: str,
        channel_key: Optional[str] = None,
        all: bool = False
    ) -> List[str]:
        """
        구독 해제

        Args:
            connection_id: 연결 ID
            channel_key: 해제할 채널
            all: True면 연결의 모든 채널 해제

        Returns:
            List[str]: 실제로 해제된 채널
        """
        async with self._lock:
            connection = self._get_active_locked(connection_id)

            if all:
                channels = list(connection.subscriptions)
            elif channel_key in connection.subscriptions:
                channels = [channel_key]
            else:
                channels = []

            emptied = self._drain_locked(connection, channels)

        for channel in channels:
            logger.info(f"✅ 구독 해제: {connection_id} -> {channel}")

        await self._notify(self._channel_removed_listeners, emptied)
        return channels

    def _get_active_locked(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None or connection.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            raise DownstreamDisconnected(f"연결이 종료되었습니다: {connection_id}")
        return connection

    def _drain_locked(self, connection: Connection, channels: List[str]) -> List[str]:
        """연결의 채널 구독을 양쪽 색인에서 제거하고, 비게 된 채널 목록을 반환"""
        emptied = []
        for channel in channels:
            connection.subscriptions.discard(channel)
            connection.overrides.pop(channel, None)

            subscribers = self._channels.get(channel)
            if subscribers is None:
                continue
            subscribers.discard(connection.id)
            if subscribers:
                self._recompute_threshold_locked(channel)
            else:
                # 구독자가 없으면 채널 키 자체를 제거
                del self._channels[channel]
                self._channel_thresholds.pop(channel, None)
                emptied.append(channel)
        return emptied

    def _recompute_threshold_locked(self, channel_key: str):
        subscribers = self._channels.get(channel_key, set())
        overrides = [
            self._connections[connection_id].overrides.get(channel_key)
            for connection_id in subscribers
            if connection_id in self._connections
        ]
        self._channel_thresholds[channel_key] = reduce_overrides(overrides)

    def effective_thresholds(self, channel_key: str, global_config: ThresholdConfig) -> ThresholdConfig:
        """채널의 유효 임계값 (구독별 요청과 전역 설정 중 가장 민감한 값)"""
        reduced = self._channel_thresholds.get(channel_key, DEFAULT_CHANNEL_THRESHOLD)
        return reduced.resolve(global_config)

    # =========================
    # 브로드캐스트
    # =========================

    async def broadcast(self, channel_key: str, message: Union[BaseModel, Dict[str, Any], str]) -> int:
        """
        채널 구독자에게 메시지 전송

        OPEN 상태가 아닌 연결은 에러 없이 건너뜁니다. 전송에 실패한 연결은
        다른 구독자에게 영향을 주지 않고 정리됩니다.

        Returns:
            int: 메시지를 받은 구독자 수
        """
        async with self._lock:
            subscriber_ids = self._channels.get(channel_key)
            if not subscriber_ids:
                return 0
            recipients = [
                self._connections[connection_id]
                for connection_id in subscriber_ids
                if connection_id in self._connections
                and self._connections[connection_id].state == ConnectionState.OPEN
            ]

        if not recipients:
            return 0

        message_json = serialize_message(message)
        results = await asyncio.gather(
            *(self._safe_send(connection, message_json) for connection in recipients)
        )

        successful_sends = 0
        for connection, delivered in zip(recipients, results):
            if delivered:
                successful_sends += 1
            else:
                await self.disconnect(connection.id, terminate=True, reason="send_failed")

        self.stats["total_broadcasts"] += 1
        self.stats["total_messages_sent"] += successful_sends

        if successful_sends > 0:
            logger.debug(f"📤 {channel_key} 업데이트 전송 완료: {successful_sends}명")
        return successful_sends

    async def send_to(self, connection_id: str, message: Union[BaseModel, Dict[str, Any], str]) -> bool:
        """특정 연결 하나에 메시지 전송 (응답, 에러, 환영 메시지용)"""
        connection = self._connections.get(connection_id)
        if connection is None or connection.state not in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            return False
        return await self._safe_send(connection, serialize_message(message), allow_connecting=True)

    async def _safe_send(self, connection: Connection, message_json: str, allow_connecting: bool = False) -> bool:
        allowed = (ConnectionState.OPEN, ConnectionState.CONNECTING) if allow_connecting else (ConnectionState.OPEN,)
        if connection.state not in allowed:
            return False

        try:
            await asyncio.wait_for(connection.transport.send_text(message_json), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ 메시지 전송 타임아웃: {connection.id}")
            self.stats["total_errors"] += 1
            return False
        except Exception as e:
            # 닫힌 transport로의 전송은 해당 연결만의 문제
            logger.warning(f"⚠️ 메시지 전송 실패: {connection.id} - {e}")
            self.stats["total_errors"] += 1
            return False

        connection.messages_sent += 1
        return True

    # =========================
    # Liveness (ping / pong)
    # =========================

    def record_pong(self, connection_id: str):
        """pong 수신 시 liveness 초기화"""
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.is_alive = True
        connection.missed_pongs = 0
        connection.last_pong_at = time.time()

    async def check_liveness(self) -> List[str]:
        """
        liveness 점검 1회

        직전 ping에 응답하지 않은 연결은 놓친 횟수를 늘리고, 허용 횟수에 도달하면
        강제 종료합니다. 나머지는 is_alive=False로 표시한 뒤 ping을 보냅니다.

        Returns:
            List[str]: 강제 종료된 연결 ID
        """
        async with self._lock:
            connections = [
                connection for connection in self._connections.values()
                if connection.state == ConnectionState.OPEN
            ]

        evicted = []
        ping_json = create_heartbeat_message(WebSocketMessageType.PING).model_dump_json()

        for connection in connections:
            if not connection.is_alive:
                connection.missed_pongs += 1
                if connection.missed_pongs >= self.max_missed_pongs:
                    await self.evict(connection.id, reason=f"pong 없음 ({connection.missed_pongs}회)")
                    evicted.append(connection.id)
                    continue

            connection.is_alive = False
            if not await self._safe_send(connection, ping_json):
                await self.evict(connection.id, reason="ping 전송 실패")
                evicted.append(connection.id)

        if evicted:
            logger.info(f"🧹 비활성 연결 정리: {len(evicted)}개")
        return evicted

    async def run_liveness_loop(self):
        """heartbeat_interval마다 liveness 점검"""
        try:
            while True:
                await asyncio.sleep(self.heartbeat_interval)
                try:
                    await self.check_liveness()
                except Exception as e:
                    logger.error(f"❌ liveness 점검 오류: {e}")
        except asyncio.CancelledError:
            logger.info("🛑 liveness 점검 중단됨")
            raise

    def start_liveness(self):
        if self._liveness_task and not self._liveness_task.done():
            logger.warning("⚠️ liveness 점검이 이미 실행 중입니다")
            return
        self._liveness_task = asyncio.create_task(self.run_liveness_loop())
        logger.info(f"🚀 liveness 점검 시작 ({self.heartbeat_interval}초 주기)")

    async def stop_liveness(self):
        if self._liveness_task and not self._liveness_task.done():
            self._liveness_task.cancel()
            try:
                await self._liveness_task
            except asyncio.CancelledError:
                pass
        self._liveness_task = None

    # =========================
    # 채널 리스너
    # =========================

    def add_channel_listener(
        self,
        on_added: Optional[ChannelListener] = None,
        on_removed: Optional[ChannelListener] = None
    ):
        """채널이 처음 생기거나 마지막 구독자가 떠날 때 호출될 콜백 등록"""
        if on_added:
            self._channel_added_listeners.append(on_added)
        if on_removed:
            self._channel_removed_listeners.append(on_removed)

    async def _notify(self, listeners: List[ChannelListener], channels: List[str]):
        for channel in channels:
            for listener in listeners:
                try:
                    result = listener(channel)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"❌ 채널 리스너 오류: {channel} - {e}")

    # =========================
    # 상태 조회 및 통계
    # =========================

    def get_subscriptions(self, connection_id: str) -> List[str]:
        connection = self._connections.get(connection_id)
        return sorted(connection.subscriptions) if connection else []

    def subscribers(self, channel_key: str) -> Set[str]:
        return set(self._channels.get(channel_key, set()))

    def active_channels(self) -> List[str]:
        return sorted(self._channels.keys())

    def connection_ids(self) -> List[str]:
        return list(self._connections.keys())

    def get_connection_state(self, connection_id: str) -> ConnectionState:
        connection = self._connections.get(connection_id)
        return connection.state if connection else ConnectionState.CLOSED

    def get_client_info(self, connection_id: str) -> Optional[Dict[str, Any]]:
        connection = self._connections.get(connection_id)
        if connection is None:
            return None
        return {
            "id": connection.id,
            "ip": connection.client_ip,
            "state": connection.state.value,
            "subscriptions": sorted(connection.subscriptions),
            "is_alive": connection.is_alive,
            "missed_pongs": connection.missed_pongs,
            "connected_at": connection.connected_at.isoformat(),
            "messages_sent": connection.messages_sent,
        }

    def get_status(self) -> Dict[str, Any]:
        """
        허브 상태 반환

        Returns:
            Dict[str, Any]: 연결 수, 채널별 구독자 수, 통계
        """
        uptime = datetime.utcnow() - self.stats["start_time"]
        return {
            **{k: v for k, v in self.stats.items() if k != "start_time"},
            "uptime_seconds": uptime.total_seconds(),
            "active_connections": len(self._connections),
            "active_channels": len(self._channels),
            "channels": {
                channel: len(subscribers)
                for channel, subscribers in self._channels.items()
            },
        }

    async def shutdown(self):
        """모든 WebSocket 연결 종료"""
        logger.info("🛑 모든 WebSocket 연결 종료 시작")
        await self.stop_liveness()

        shutdown_message = create_error_message(
            error_code="SERVER_SHUTDOWN",
            message="서버가 종료됩니다. 연결이 곧 끊어집니다."
        )
        connection_ids = list(self._connections.keys())
        for connection_id in connection_ids:
            await self.send_to(connection_id, shutdown_message)
            await self.disconnect(connection_id, terminate=True, reason="shutdown")

        logger.info(f"✅ 모든 WebSocket 연결 종료 완료: {len(connection_ids)}개")


def serialize_message(message: Union[BaseModel, Dict[str, Any], str]) -> str:
    if isinstance(message, str):
        return message
    if isinstance(message, BaseModel):
        return message.model_dump_json(exclude_none=True)
    return json.dumps(message, default=str)
