# market_stream/api/endpoints/websocket_endpoint.py
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from market_stream.dependencies import Services, get_services
from market_stream.exceptions import DownstreamDisconnected, MalformedMessage
from market_stream.schemas.websocket_schema import WelcomeMessage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["WebSocket"])


@router.websocket("/ws")
async def websocket_market_stream(websocket: WebSocket, services: Services = Depends(get_services)):
    """
    실시간 시세 WebSocket

    연결 후 `{"method": "SUBSCRIBE", "params": ["ticker:BTCUSDT"], "id": 1}` 형식으로
    채널을 구독하면 유의미한 변화가 있을 때만 업데이트를 받습니다.
    """
    hub = services.hub
    handlers = services.handlers

    await websocket.accept()
    client_ip = websocket.client.host if websocket.client else "unknown"
    connection_id = await hub.connect(websocket, client_ip=client_ip)

    try:
        await hub.mark_open(connection_id)
        await hub.send_to(connection_id, WelcomeMessage(
            client_id=connection_id,
            heartbeat_interval=hub.heartbeat_interval
        ))

        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            data = message.get("text")
            if data is None:
                # 바이너리 프레임은 지원하지 않음 (연결은 유지)
                logger.warning(f"⚠️ 바이너리 프레임 수신: {connection_id}")
                await handlers.send_error(
                    connection_id,
                    MalformedMessage.error_code,
                    "텍스트(JSON) 프레임만 지원합니다"
                )
                continue

            logger.debug(f"📨 클라이언트 메시지 수신: {connection_id} - {data}")
            await handlers.handle_client_message(connection_id, data)

    except WebSocketDisconnect:
        logger.info(f"🔌 WebSocket 연결 해제: {connection_id}")

    except DownstreamDisconnected:
        logger.info(f"🔌 허브에서 정리된 연결: {connection_id}")

    except Exception as e:
        logger.error(f"❌ WebSocket 오류: {connection_id} - {e}")

    finally:
        await hub.disconnect(connection_id)
        logger.info(f"🧹 WebSocket 정리 완료: {connection_id}")
