"""HTTP / WebSocket surface tests through the FastAPI app"""

import asyncio

import pytest
import requests
from fastapi.testclient import TestClient

from conftest import FakeRedis, FakeResponse, FakeSession
from market_stream.config import Settings
from market_stream.main import create_app
from market_stream.schemas.websocket_schema import DataKind, MarketEnvelope

TICKER_PATH = "/api/v3/ticker/24hr"


@pytest.fixture
def redis_double():
    return FakeRedis()


@pytest.fixture
def session():
    return FakeSession({
        TICKER_PATH: FakeResponse(200, {"symbol": "BTCUSDT", "lastPrice": "50000.00"}),
        "/api/v3/exchangeInfo": FakeResponse(200, {"symbols": [
            {"symbol": "BTCUSDT", "baseAsset": "BTC", "quoteAsset": "USDT", "status": "TRADING"},
            {"symbol": "ETHBTC", "baseAsset": "ETH", "quoteAsset": "BTC", "status": "TRADING"},
        ]}),
    })


@pytest.fixture
def client(redis_double, session):
    config = Settings(
        _env_file=None,
        upstream_enabled=False,
        cache_prefix="test",
        heartbeat_interval=3600,
    )
    app = create_app(config, redis_client=redis_double, rest_session=session)
    with TestClient(app) as test_client:
        yield test_client


def services(client):
    return client.app.state.services


class TestHealth:

    def test_root_and_api_info(self, client):
        assert client.get("/").json()["websocket"] == "/api/v1/ws"

        info = client.get("/api/v1/").json()
        assert info["version"] == "v1"
        assert set(info["endpoints"]) == {"/ws", "/market", "/admin"}

    def test_health_reports_redis_state(self, client, redis_double):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["redis"] == "connected"
        assert body["upstream_running"] is False

        redis_double.fail = True

        assert client.get("/health").json()["status"] == "degraded"


class TestAdmin:

    def test_get_and_update_thresholds(self, client):
        assert client.get("/api/v1/admin/thresholds").json() == {
            "percentage": 0.5, "absolute": 10.0, "time_window": 30.0
        }

        response = client.put("/api/v1/admin/thresholds", json={"percentage": 1.25})

        assert response.status_code == 200
        assert response.json()["percentage"] == 1.25
        assert response.json()["absolute"] == 10.0
        assert services(client).threshold_cache.get_thresholds().percentage == 1.25

    @pytest.mark.parametrize("body", [{"percent": 1}, {"absolute": -1}])
    def test_invalid_thresholds_are_rejected(self, client, body):
        assert client.put("/api/v1/admin/thresholds", json=body).status_code == 422

    def test_clear_cache(self, client, redis_double):
        client.get("/api/v1/market/ticker/BTCUSDT")
        cache = services(client).threshold_cache
        client.portal.call(cache.evaluate, cache.build_key("price", "BTCUSDT"), 50000.0)

        response = client.delete("/api/v1/admin/cache")

        assert response.json() == {"deleted": 1, "api_deleted": 1}
        assert redis_double.store == {}

    def test_clear_cache_by_kind_keeps_api_entries(self, client):
        client.get("/api/v1/market/ticker/BTCUSDT")

        response = client.delete("/api/v1/admin/cache", params={"kind": "price"})

        assert response.json() == {"deleted": 0, "api_deleted": 0}

    def test_clear_cache_when_redis_is_down(self, client, redis_double):
        redis_double.fail = True

        assert client.delete("/api/v1/admin/cache").status_code == 503

    def test_status(self, client):
        body = client.get("/api/v1/admin/status").json()

        assert body["hub"]["active_connections"] == 0
        assert body["upstream"]["running"] is False
        assert "forced_refresh" in body["threshold_cache"]
        assert body["request_cache"]["cache_ttl"]["ticker"] == 60


class TestMarket:

    def test_ticker_is_cached(self, client, session):
        first = client.get("/api/v1/market/ticker/btcusdt").json()
        second = client.get("/api/v1/market/ticker/BTCUSDT").json()

        assert first == {"data": {"symbol": "BTCUSDT", "lastPrice": "50000.00"}, "source": "api"}
        assert second["source"] == "cache"
        assert len(session.calls) == 1

    def test_markets_by_quote(self, client):
        body = client.get("/api/v1/market/markets/usdt").json()

        assert [item["symbol"] for item in body["data"]] == ["BTCUSDT"]

    def test_invalid_symbol(self, client):
        assert client.get("/api/v1/market/ticker/BTC$USDT").status_code == 400

    def test_invalid_kline_interval(self, client):
        assert client.get("/api/v1/market/klines/BTCUSDT", params={"interval": "7m"}).status_code == 400

    def test_exchange_client_error_maps_to_400(self, client, session):
        session.routes["/api/v3/depth"] = FakeResponse(400, {"code": -1121, "msg": "Invalid symbol."})

        assert client.get("/api/v1/market/depth/NOPEUSDT").status_code == 400

    def test_exchange_failure_maps_to_502(self, client, session):
        session.routes["/api/v3/trades"] = FakeResponse(503, {"msg": "Service unavailable"})
        session.routes["/api/v3/klines"] = requests.Timeout("read timed out")

        assert client.get("/api/v1/market/trades/BTCUSDT").status_code == 502
        assert client.get("/api/v1/market/klines/BTCUSDT").status_code == 502

    def test_price_comes_from_accepted_baseline(self, client):
        assert client.get("/api/v1/market/price/BTCUSDT").status_code == 404

        cache = services(client).threshold_cache
        client.portal.call(cache.evaluate, cache.build_key("ticker", "BTCUSDT"), {"price": 50000.0})

        body = client.get("/api/v1/market/price/btcusdt").json()
        assert body["symbol"] == "BTCUSDT"
        assert body["price"] == 50000.0
        assert body["kind"] == "ticker"
        assert body["expires_at"] > body["accepted_at"]

    def test_price_when_cache_is_down(self, client, redis_double):
        redis_double.fail = True

        assert client.get("/api/v1/market/price/BTCUSDT").status_code == 503


class TestWebSocket:

    def test_subscription_flow(self, client):
        with client.websocket_connect("/api/v1/ws") as websocket:
            welcome = websocket.receive_json()
            assert welcome["type"] == "welcome"
            assert welcome["heartbeat_interval"] == 3600

            websocket.send_json({"method": "SUBSCRIBE", "params": ["btcusdt@ticker"], "id": 1})
            ack = websocket.receive_json()
            assert ack == {"id": 1, "status": "success", "message": "구독 완료: ticker:BTCUSDT",
                           "result": ["ticker:BTCUSDT"]}

            websocket.send_text("{oops")
            assert websocket.receive_json()["error_code"] == "MALFORMED_MESSAGE"

            websocket.send_json({"type": "ping"})
            assert websocket.receive_json()["type"] == "pong"

            envelope = MarketEnvelope(symbol="BTCUSDT", kind=DataKind.TICKER, payload={"price": 50000.0})
            delivered = client.portal.call(services(client).upstream_feed.process_envelope, envelope)
            assert delivered == 1

            update = websocket.receive_json()
            assert update["type"] == "ticker_update"
            assert update["data"] == {"price": 50000.0}

            websocket.send_json({"method": "LIST_SUBSCRIPTIONS", "id": 2})
            assert websocket.receive_json()["result"] == ["ticker:BTCUSDT"]

        hub = services(client).hub
        assert client.portal.call(_wait_for_cleanup, hub)
        assert hub.active_channels() == []

    def test_binary_frame_gets_error_and_connection_stays_open(self, client):
        with client.websocket_connect("/api/v1/ws") as websocket:
            websocket.receive_json()

            websocket.send_bytes(b"\x00\x01garbage")
            error = websocket.receive_json()
            assert error["type"] == "error"
            assert error["error_code"] == "MALFORMED_MESSAGE"

            websocket.send_json({"method": "SUBSCRIBE", "params": ["ticker:BTCUSDT"], "id": 3})
            ack = websocket.receive_json()
            assert ack["id"] == 3
            assert ack["status"] == "success"
            assert len(services(client).hub.connection_ids()) == 1


async def _wait_for_cleanup(hub):
    for _ in range(100):
        if not hub.connection_ids():
            return True
        await asyncio.sleep(0.01)
    return False
