# market_stream/websocket/handlers.py
import logging
from typing import Any, Dict, List

from market_stream.exceptions import DownstreamDisconnected, MalformedMessage
from market_stream.schemas.websocket_schema import (
    AckMessage, RequestMethod, SubscriptionRequest, WebSocketMessageType,
    create_error_message, create_heartbeat_message, parse_channel_key,
    parse_subscription_request, validate_websocket_message
)
from market_stream.websocket.manager import SubscriptionHub

logger = logging.getLogger(__name__)


class WebSocketHandlers:
    """
    WebSocket 메시지 처리 핸들러 클래스

    클라이언트로부터 받은 프레임을 해석해 허브의 구독 API를 호출하고,
    요청한 연결에만 응답을 보냅니다. 잘못된 프레임은 에러 응답만 보내고
    연결은 유지합니다.
    """

    def __init__(self, hub: SubscriptionHub):
        """
        Args:
            hub: SubscriptionHub 인스턴스
        """
        self.hub = hub
        self.method_handlers = {
            RequestMethod.SUBSCRIBE: self.handle_subscribe,
            RequestMethod.UNSUBSCRIBE: self.handle_unsubscribe,
            RequestMethod.LIST_SUBSCRIPTIONS: self.handle_list_subscriptions,
        }

        logger.info("✅ WebSocketHandlers 초기화 완료")

    async def handle_client_message(self, connection_id: str, message_data: str) -> bool:
        """
        클라이언트 메시지 처리 메인 함수

        Args:
            connection_id: 허브 연결 ID
            message_data: 클라이언트로부터 받은 JSON 문자열

        Returns:
            bool: 처리 성공 여부
        """
        is_valid, data, error = validate_websocket_message(message_data)
        if not is_valid:
            logger.warning(f"⚠️ 잘못된 메시지: {connection_id} - {error}")
            await self.send_error(connection_id, MalformedMessage.error_code, error)
            return False

        # heartbeat 프레임
        message_type = data.get("type")
        if message_type == WebSocketMessageType.PING.value:
            await self.hub.send_to(connection_id, create_heartbeat_message(WebSocketMessageType.PONG))
            return True
        if message_type == WebSocketMessageType.PONG.value:
            self.hub.record_pong(connection_id)
            return True

        try:
            request = parse_subscription_request(data)
            return await self.method_handlers[request.method](connection_id, request)

        except MalformedMessage as e:
            logger.warning(f"⚠️ 요청 형식 오류: {connection_id} - {e.message}")
            await self.send_error(connection_id, e.error_code, e.message, request_id=e.request_id)
            return False

        except DownstreamDisconnected:
            logger.debug(f"종료된 연결의 요청 무시: {connection_id}")
            return False

        except Exception as e:
            logger.error(f"❌ 메시지 처리 오류: {connection_id} - {e}")
            await self.send_error(connection_id, "INTERNAL_ERROR", f"서버 내부 오류: {str(e)}")
            return False

    async def handle_subscribe(self, connection_id: str, request: SubscriptionRequest) -> bool:
        """
        구독 요청 처리

        params의 모든 채널 키를 먼저 검증하고, 하나라도 잘못되면
        아무것도 구독하지 않습니다.
        """
        if not request.params:
            raise MalformedMessage("구독할 채널이 없습니다", request_id=request.id)

        channels = self._parse_params(request)
        for channel in channels:
            await self.hub.subscribe(connection_id, channel, thresholds=request.thresholds)

        await self.send_ack(connection_id, request.id, f"구독 완료: {', '.join(channels)}", channels)
        return True

    async def handle_unsubscribe(self, connection_id: str, request: SubscriptionRequest) -> bool:
        """
        구독 해제 요청 처리

        `all: true` 또는 빈 params는 연결의 모든 구독을 해제합니다.
        """
        if request.all or not request.params:
            removed = await self.hub.unsubscribe(connection_id, all=True)
        else:
            removed = []
            for channel in self._parse_params(request):
                removed.extend(await self.hub.unsubscribe(connection_id, channel))

        await self.send_ack(connection_id, request.id, f"구독 해제 완료: {len(removed)}개", removed)
        return True

    async def handle_list_subscriptions(self, connection_id: str, request: SubscriptionRequest) -> bool:
        """현재 구독 목록 응답"""
        channels = self.hub.get_subscriptions(connection_id)
        message = ", ".join(channels) if channels else "구독 중인 채널이 없습니다"
        await self.send_ack(connection_id, request.id, message, channels)
        return True

    @staticmethod
    def _parse_params(request: SubscriptionRequest) -> List[str]:
        channels = []
        for raw in request.params:
            try:
                key = parse_channel_key(raw).key
            except MalformedMessage as e:
                raise MalformedMessage(e.message, request_id=request.id, details={"param": raw})
            if key not in channels:
                channels.append(key)
        return channels

    # =========================
    # 응답 전송
    # =========================

    async def send_ack(self, connection_id: str, request_id, message: str, result: List[str]):
        ack = AckMessage(id=request_id, status="success", message=message, result=result)
        await self.hub.send_to(connection_id, ack)

    async def send_error(self, connection_id: str, error_code: str, message: str, request_id=None,
                         details: Dict[str, Any] = None):
        """에러 메시지 전송 (해당 연결에만)"""
        error_msg = create_error_message(error_code, message, request_id=request_id, details=details)
        await self.hub.send_to(connection_id, error_msg)
