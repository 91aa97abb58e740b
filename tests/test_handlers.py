"""WebSocketHandlers tests: request protocol on a single connection"""

import json

import pytest

from market_stream.schemas.websocket_schema import ThresholdConfig
from market_stream.websocket.handlers import WebSocketHandlers


@pytest.fixture
def handlers(hub):
    return WebSocketHandlers(hub)


def frame(**fields) -> str:
    return json.dumps(fields)


def last(transport):
    return transport.sent[-1]


class TestSubscribe:

    @pytest.mark.asyncio
    async def test_subscribe_acks_with_canonical_channels(self, hub, handlers, open_connection):
        connection_id, transport = await open_connection()

        ok = await handlers.handle_client_message(
            connection_id, frame(method="SUBSCRIBE", params=["btcusdt@ticker", "kline:btcusdt:1m"], id=1)
        )

        assert ok is True
        ack = last(transport)
        assert ack["id"] == 1
        assert ack["status"] == "success"
        assert ack["result"] == ["ticker:BTCUSDT", "kline:BTCUSDT:1m"]
        assert hub.get_subscriptions(connection_id) == ["kline:BTCUSDT:1m", "ticker:BTCUSDT"]

    @pytest.mark.asyncio
    async def test_duplicate_params_are_collapsed(self, hub, handlers, open_connection):
        connection_id, transport = await open_connection()

        await handlers.handle_client_message(
            connection_id, frame(method="SUBSCRIBE", params=["ticker:BTCUSDT", "btcusdt@ticker"], id=2)
        )

        assert last(transport)["result"] == ["ticker:BTCUSDT"]

    @pytest.mark.asyncio
    async def test_one_bad_channel_rejects_whole_request(self, hub, handlers, open_connection):
        connection_id, transport = await open_connection()

        ok = await handlers.handle_client_message(
            connection_id, frame(method="SUBSCRIBE", params=["ticker:BTCUSDT", "candles:BTCUSDT"], id=3)
        )

        assert ok is False
        error = last(transport)
        assert error["type"] == "error"
        assert error["error_code"] == "MALFORMED_MESSAGE"
        assert error["id"] == 3
        assert error["details"] == {"param": "candles:BTCUSDT"}
        assert hub.get_subscriptions(connection_id) == []

    @pytest.mark.asyncio
    async def test_subscribe_without_params_is_rejected(self, handlers, open_connection):
        connection_id, transport = await open_connection()

        assert await handlers.handle_client_message(connection_id, frame(method="SUBSCRIBE", id=4)) is False
        assert last(transport)["id"] == 4

    @pytest.mark.asyncio
    async def test_thresholds_travel_with_subscription(self, hub, handlers, open_connection):
        connection_id, _ = await open_connection()

        await handlers.handle_client_message(
            connection_id,
            frame(method="SUBSCRIBE", params=["price:BTCUSDT"], id=5, thresholds={"percentage": 0.05})
        )

        resolved = hub.effective_thresholds("price:BTCUSDT", ThresholdConfig())
        assert resolved.percentage == 0.05
        assert resolved.absolute == ThresholdConfig().absolute


class TestMalformedFrames:

    @pytest.mark.asyncio
    async def test_invalid_json_keeps_connection_open(self, hub, handlers, open_connection):
        connection_id, transport = await open_connection()

        assert await handlers.handle_client_message(connection_id, "{not json") is False

        assert last(transport)["error_code"] == "MALFORMED_MESSAGE"
        assert transport.closed is False
        assert connection_id in hub.connection_ids()

    @pytest.mark.asyncio
    async def test_non_object_json(self, handlers, open_connection):
        connection_id, transport = await open_connection()

        await handlers.handle_client_message(connection_id, "[1, 2, 3]")

        assert last(transport)["type"] == "error"

    @pytest.mark.asyncio
    async def test_unknown_method_echoes_id(self, handlers, open_connection):
        connection_id, transport = await open_connection()

        await handlers.handle_client_message(connection_id, frame(method="PUBLISH", params=[], id=9))

        error = last(transport)
        assert error["error_code"] == "MALFORMED_MESSAGE"
        assert error["id"] == 9

    @pytest.mark.asyncio
    async def test_request_from_closed_connection_is_ignored(self, hub, handlers, open_connection):
        connection_id, transport = await open_connection()
        await hub.disconnect(connection_id)

        ok = await handlers.handle_client_message(
            connection_id, frame(method="SUBSCRIBE", params=["ticker:BTCUSDT"], id=1)
        )

        assert ok is False
        assert transport.sent == []
        assert hub.active_channels() == []


class TestHeartbeat:

    @pytest.mark.asyncio
    async def test_ping_gets_pong(self, handlers, open_connection):
        connection_id, transport = await open_connection()

        assert await handlers.handle_client_message(connection_id, frame(type="ping")) is True

        assert last(transport)["type"] == "pong"

    @pytest.mark.asyncio
    async def test_pong_resets_liveness(self, hub, handlers, open_connection):
        connection_id, _ = await open_connection()
        await hub.check_liveness()
        await hub.check_liveness()
        assert hub.get_client_info(connection_id)["missed_pongs"] == 1

        await handlers.handle_client_message(connection_id, frame(type="pong"))

        info = hub.get_client_info(connection_id)
        assert info["missed_pongs"] == 0
        assert info["is_alive"] is True


class TestUnsubscribeAndList:

    @pytest.mark.asyncio
    async def test_unsubscribe_specific_channel(self, hub, handlers, open_connection):
        connection_id, transport = await open_connection()
        await hub.subscribe(connection_id, "ticker:BTCUSDT")
        await hub.subscribe(connection_id, "price:BTCUSDT")

        await handlers.handle_client_message(
            connection_id, frame(method="UNSUBSCRIBE", params=["btcusdt@ticker"], id=6)
        )

        ack = last(transport)
        assert ack["result"] == ["ticker:BTCUSDT"]
        assert hub.get_subscriptions(connection_id) == ["price:BTCUSDT"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_fields", [
        {"all": True},
        {"params": []},
        {},
    ])
    async def test_unsubscribe_everything(self, hub, handlers, open_connection, request_fields):
        connection_id, transport = await open_connection()
        await hub.subscribe(connection_id, "ticker:BTCUSDT")
        await hub.subscribe(connection_id, "price:BTCUSDT")

        await handlers.handle_client_message(connection_id, frame(method="UNSUBSCRIBE", id=7, **request_fields))

        ack = last(transport)
        assert ack["message"] == "구독 해제 완료: 2개"
        assert sorted(ack["result"]) == ["price:BTCUSDT", "ticker:BTCUSDT"]
        assert hub.active_channels() == []

    @pytest.mark.asyncio
    async def test_list_subscriptions(self, hub, handlers, open_connection):
        connection_id, transport = await open_connection()
        await hub.subscribe(connection_id, "ticker:BTCUSDT")
        await hub.subscribe(connection_id, "depth:ETHUSDT")

        await handlers.handle_client_message(connection_id, frame(method="LIST_SUBSCRIPTIONS", id=8))

        assert last(transport)["result"] == ["depth:ETHUSDT", "ticker:BTCUSDT"]

    @pytest.mark.asyncio
    async def test_list_without_subscriptions(self, handlers, open_connection):
        connection_id, transport = await open_connection()

        await handlers.handle_client_message(connection_id, frame(method="LIST_SUBSCRIPTIONS", id=8))

        assert last(transport)["result"] == []
