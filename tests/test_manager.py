"""SubscriptionHub tests: registry consistency, broadcast isolation, liveness"""

import asyncio

import pytest

from conftest import FakeTransport
from market_stream.exceptions import DownstreamDisconnected
from market_stream.schemas.websocket_schema import ThresholdConfig, ThresholdOverride
from market_stream.websocket.manager import ConnectionState, SubscriptionHub

TICKER = "ticker:BTCUSDT"
GLOBAL = ThresholdConfig(percentage=0.5, absolute=10.0, time_window=30.0)


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_subscribe_is_idempotent(self, hub, open_connection):
        connection_id, transport = await open_connection()

        assert await hub.subscribe(connection_id, TICKER) is True
        assert await hub.subscribe(connection_id, TICKER) is False

        assert await hub.broadcast(TICKER, {"type": "ticker_update"}) == 1
        assert len(transport.of_type("ticker_update")) == 1

    @pytest.mark.asyncio
    async def test_broadcast_reaches_only_channel_subscribers(self, hub, open_connection):
        a_id, a = await open_connection()
        b_id, b = await open_connection()
        await hub.subscribe(a_id, TICKER)
        await hub.subscribe(b_id, "ticker:ETHUSDT")

        assert await hub.broadcast(TICKER, {"type": "ticker_update", "symbol": "BTCUSDT"}) == 1

        assert len(a.sent) == 1
        assert b.sent == []

    @pytest.mark.asyncio
    async def test_broadcast_to_empty_channel(self, hub):
        assert await hub.broadcast(TICKER, {"type": "ticker_update"}) == 0

    @pytest.mark.asyncio
    async def test_connecting_subscribers_are_skipped(self, hub, open_connection):
        pending = FakeTransport()
        pending_id = await hub.connect(pending)
        await hub.subscribe(pending_id, TICKER)
        open_id, transport = await open_connection()
        await hub.subscribe(open_id, TICKER)

        assert await hub.broadcast(TICKER, {"type": "ticker_update"}) == 1
        assert pending.sent == []
        assert hub.get_connection_state(pending_id) == ConnectionState.CONNECTING

    @pytest.mark.asyncio
    async def test_failing_transport_is_removed_without_affecting_others(self, hub, open_connection):
        broken_id, _ = await open_connection(FakeTransport(fail=True))
        healthy_id, healthy = await open_connection()
        await hub.subscribe(broken_id, TICKER)
        await hub.subscribe(healthy_id, TICKER)

        assert await hub.broadcast(TICKER, {"type": "ticker_update"}) == 1

        assert len(healthy.sent) == 1
        assert hub.subscribers(TICKER) == {healthy_id}
        assert broken_id not in hub.connection_ids()

    @pytest.mark.asyncio
    async def test_stalled_transport_is_evicted_after_send_timeout(self):
        hub = SubscriptionHub(heartbeat_interval=30.0, send_timeout=0.05)

        class StalledTransport(FakeTransport):
            async def send_text(self, text: str):
                await asyncio.sleep(10)

        stalled_id = await hub.connect(StalledTransport())
        await hub.mark_open(stalled_id)
        healthy = FakeTransport()
        healthy_id = await hub.connect(healthy)
        await hub.mark_open(healthy_id)
        await hub.subscribe(stalled_id, TICKER)
        await hub.subscribe(healthy_id, TICKER)

        assert await asyncio.wait_for(hub.broadcast(TICKER, {"type": "ticker_update"}), timeout=1.0) == 1
        assert stalled_id not in hub.connection_ids()

        assert await asyncio.wait_for(hub.broadcast(TICKER, {"type": "ticker_update"}), timeout=0.5) == 1
        assert len(healthy.sent) == 2

    @pytest.mark.asyncio
    async def test_disconnect_removes_every_index_entry(self, hub, open_connection):
        connection_id, transport = await open_connection()
        await hub.subscribe(connection_id, TICKER)
        await hub.subscribe(connection_id, "kline:BTCUSDT:1m")

        assert await hub.disconnect(connection_id) is True
        assert await hub.disconnect(connection_id) is False

        assert hub.active_channels() == []
        assert hub.get_subscriptions(connection_id) == []
        assert await hub.broadcast(TICKER, {"type": "ticker_update"}) == 0
        assert transport.closed is False

    @pytest.mark.asyncio
    async def test_subscribe_after_disconnect_raises(self, hub, open_connection):
        connection_id, _ = await open_connection()
        await hub.disconnect(connection_id)

        with pytest.raises(DownstreamDisconnected):
            await hub.subscribe(connection_id, TICKER)
        assert hub.active_channels() == []

    @pytest.mark.asyncio
    async def test_mark_open_twice_raises(self, hub, open_connection):
        connection_id, _ = await open_connection()

        with pytest.raises(DownstreamDisconnected):
            await hub.mark_open(connection_id)

    @pytest.mark.asyncio
    async def test_unsubscribe_single_and_all(self, hub, open_connection):
        connection_id, _ = await open_connection()
        for channel in (TICKER, "price:BTCUSDT", "depth:BTCUSDT"):
            await hub.subscribe(connection_id, channel)

        assert await hub.unsubscribe(connection_id, TICKER) == [TICKER]
        assert await hub.unsubscribe(connection_id, TICKER) == []

        removed = await hub.unsubscribe(connection_id, all=True)

        assert sorted(removed) == ["depth:BTCUSDT", "price:BTCUSDT"]
        assert hub.get_subscriptions(connection_id) == []
        assert hub.active_channels() == []

    @pytest.mark.asyncio
    async def test_concurrent_subscribe_and_disconnect_stay_consistent(self, hub, open_connection):
        ids = [(await open_connection())[0] for _ in range(5)]

        await asyncio.gather(
            *(hub.subscribe(connection_id, TICKER) for connection_id in ids),
            *(hub.disconnect(connection_id) for connection_id in ids[:3]),
            return_exceptions=True
        )

        remaining = set(hub.connection_ids())
        assert hub.subscribers(TICKER) <= remaining
        for connection_id in remaining:
            assert hub.get_subscriptions(connection_id) in ([TICKER], [])


class TestChannelListeners:

    @pytest.mark.asyncio
    async def test_listeners_fire_on_first_and_last_subscriber(self, hub, open_connection):
        added, removed = [], []

        async def on_removed(channel):
            removed.append(channel)

        hub.add_channel_listener(on_added=added.append, on_removed=on_removed)
        a_id, _ = await open_connection()
        b_id, _ = await open_connection()

        await hub.subscribe(a_id, TICKER)
        await hub.subscribe(b_id, TICKER)
        await hub.unsubscribe(a_id, TICKER)
        assert removed == []

        await hub.disconnect(b_id)

        assert added == [TICKER]
        assert removed == [TICKER]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_subscribe(self, hub, open_connection):
        def explode(channel):
            raise RuntimeError("boom")

        hub.add_channel_listener(on_added=explode)
        connection_id, _ = await open_connection()

        assert await hub.subscribe(connection_id, TICKER) is True


class TestEffectiveThresholds:

    @pytest.mark.asyncio
    async def test_overrides_are_reduced_per_channel(self, hub, open_connection):
        a_id, _ = await open_connection()
        b_id, _ = await open_connection()
        await hub.subscribe(a_id, TICKER, ThresholdOverride(percentage=0.2))
        await hub.subscribe(b_id, TICKER, ThresholdOverride(percentage=0.1, absolute=50))

        resolved = hub.effective_thresholds(TICKER, GLOBAL)
        assert resolved.percentage == 0.1
        assert resolved.absolute == 10.0

        await hub.disconnect(b_id)
        assert hub.effective_thresholds(TICKER, GLOBAL).percentage == 0.2

    @pytest.mark.asyncio
    async def test_resubscribe_replaces_override(self, hub, open_connection):
        connection_id, _ = await open_connection()
        await hub.subscribe(connection_id, TICKER, ThresholdOverride(percentage=0.1))
        await hub.subscribe(connection_id, TICKER)

        assert hub.effective_thresholds(TICKER, GLOBAL) == GLOBAL

    def test_unknown_channel_uses_global(self, hub):
        assert hub.effective_thresholds("depth:BTCUSDT", GLOBAL) == GLOBAL


class TestLiveness:

    @pytest.mark.asyncio
    async def test_silent_connection_is_evicted_on_third_sweep(self, hub, open_connection):
        connection_id, transport = await open_connection()
        await hub.subscribe(connection_id, TICKER)

        assert await hub.check_liveness() == []
        assert await hub.check_liveness() == []
        assert len(transport.of_type("ping")) == 2

        assert await hub.check_liveness() == [connection_id]

        assert transport.closed is True
        assert transport.close_code == 1001
        assert hub.active_channels() == []
        assert hub.get_status()["evicted_connections"] == 1

    @pytest.mark.asyncio
    async def test_pong_keeps_connection_alive(self, hub, open_connection):
        connection_id, transport = await open_connection()

        for _ in range(5):
            assert await hub.check_liveness() == []
            hub.record_pong(connection_id)

        assert transport.closed is False
        assert hub.get_client_info(connection_id)["missed_pongs"] == 0

    @pytest.mark.asyncio
    async def test_connecting_sockets_are_not_pinged(self, hub):
        transport = FakeTransport()
        await hub.connect(transport)

        await hub.check_liveness()

        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_failed_ping_evicts_immediately(self, hub, open_connection):
        connection_id, _ = await open_connection(FakeTransport(fail=True))

        assert await hub.check_liveness() == [connection_id]

    @pytest.mark.asyncio
    async def test_liveness_task_starts_and_stops(self, hub):
        hub.start_liveness()
        hub.start_liveness()

        await hub.stop_liveness()

        assert hub._liveness_task is None


class TestStatusAndShutdown:

    @pytest.mark.asyncio
    async def test_status_counts(self, hub, open_connection):
        a_id, _ = await open_connection()
        b_id, _ = await open_connection()
        await hub.subscribe(a_id, TICKER)
        await hub.subscribe(b_id, TICKER)
        await hub.subscribe(b_id, "price:BTCUSDT")

        status = hub.get_status()

        assert status["active_connections"] == 2
        assert status["active_channels"] == 2
        assert status["channels"] == {TICKER: 2, "price:BTCUSDT": 1}
        assert status["total_connections"] == 2

    @pytest.mark.asyncio
    async def test_send_to_reaches_connecting_socket(self, hub):
        transport = FakeTransport()
        connection_id = await hub.connect(transport)

        assert await hub.send_to(connection_id, {"type": "welcome"}) is True
        assert await hub.send_to("missing", {"type": "welcome"}) is False
        assert transport.of_type("welcome")

    @pytest.mark.asyncio
    async def test_shutdown_notifies_and_closes_everyone(self, hub, open_connection):
        transports = [(await open_connection())[1] for _ in range(3)]

        await hub.shutdown()

        for transport in transports:
            assert transport.of_type("error")[0]["error_code"] == "SERVER_SHUTDOWN"
            assert transport.closed is True
        assert hub.connection_ids() == []
