"""
Pytest configuration and fixtures for the market stream test suite

Provides in-memory stand-ins for Redis, server-side WebSocket transports,
client/upstream sockets and timers so the suite runs without a network.
"""

import asyncio
import fnmatch
import json
import math
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from market_stream.websocket.manager import SubscriptionHub
from market_stream.websocket.threshold_cache import ThresholdCache


class FakeClock:
    """Controllable wall clock (seconds)"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRedis:
    """
    Minimal async Redis double (GET / SET EX / TTL / DELETE / SCAN / PING)

    Expiry follows the injected clock. Setting `fail = True` makes every
    command raise a redis ConnectionError. With `yield_control = True` every
    command yields to the event loop, which exposes missing locks.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.store: Dict[str, Tuple[Any, Optional[float]]] = {}
        self.fail = False
        self.yield_control = False

    async def _enter(self):
        if self.yield_control:
            await asyncio.sleep(0)
        if self.fail:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    def _entry(self, key: str):
        entry = self.store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self.store[key]
            return None
        return entry

    async def get(self, key: str):
        await self._enter()
        entry = self._entry(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: Any, ex: Optional[int] = None):
        await self._enter()
        self.store[key] = (value, self.clock() + ex if ex else None)
        return True

    async def ttl(self, key: str) -> int:
        await self._enter()
        entry = self._entry(key)
        if entry is None:
            return -2
        if entry[1] is None:
            return -1
        return int(math.ceil(entry[1] - self.clock()))

    async def delete(self, *keys: str) -> int:
        await self._enter()
        deleted = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                deleted += 1
        return deleted

    async def scan_iter(self, match: Optional[str] = None):
        await self._enter()
        for key in list(self.store):
            if self._entry(key) is None:
                continue
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self):
        await self._enter()
        return True

    async def aclose(self):
        return None


class FakeTransport:
    """Server-side WebSocket double (the object the hub sends to)"""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.fail = fail

    async def send_text(self, text: str):
        if self.closed or self.fail:
            raise RuntimeError('Cannot call "send" once a close message has been sent.')
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000):
        self.closed = True
        self.close_code = code

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [message for message in self.sent if message.get("type") == message_type]


class FakeSocket:
    """
    Client / upstream WebSocket double (websockets-style send / close / async iteration)

    `feed()` delivers a frame, `drop()` ends the stream as a remote close would.
    """

    def __init__(self, frames: Optional[List[Any]] = None, end_after_frames: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.incoming: asyncio.Queue = asyncio.Queue()
        for frame in frames or []:
            self.feed(frame)
        if end_after_frames:
            self.drop()

    def feed(self, frame: Any):
        self.incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self):
        self.incoming.put_nowait(None)

    async def send(self, text: str):
        if self.closed:
            raise ConnectionError("socket is closed")
        self.sent.append(json.loads(text))

    async def close(self):
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self.incoming.get()
        if frame is None:
            self.closed = True
            raise StopAsyncIteration
        return frame

    def sent_methods(self, method: str) -> List[Dict[str, Any]]:
        return [frame for frame in self.sent if frame.get("method") == method]


class FakeConnector:
    """
    Injectable `connect(url)` callable

    Returns the scripted sockets in order, then fresh open sockets (or raises
    when `always_fail` is set). `fail_first` makes the first N calls raise.
    """

    def __init__(self, sockets: Optional[List[FakeSocket]] = None, fail_first: int = 0, always_fail: bool = False):
        self.scripted = list(sockets or [])
        self.fail_first = fail_first
        self.always_fail = always_fail
        self.urls: List[str] = []
        self.sockets: List[FakeSocket] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if self.always_fail:
            raise OSError("[Errno 111] Connection refused")
        if self.fail_first > 0:
            self.fail_first -= 1
            raise OSError("[Errno 111] Connection refused")
        socket = self.scripted.pop(0) if self.scripted else FakeSocket()
        self.sockets.append(socket)
        return socket


class FakeSleep:
    """Records requested delays and returns immediately (after yielding once)"""

    def __init__(self, on_sleep: Optional[Callable[[int], None]] = None):
        self.delays: List[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)
        if self.on_sleep:
            self.on_sleep(len(self.delays))


async def wait_until(predicate: Callable[[], bool], attempts: int = 200):
    """Yield to the event loop until predicate() holds"""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def threshold_cache(fake_redis, clock) -> ThresholdCache:
    return ThresholdCache(fake_redis, prefix="test", entry_ttl=60, clock=clock)


@pytest.fixture
def hub() -> SubscriptionHub:
    return SubscriptionHub(heartbeat_interval=30.0, max_missed_pongs=2, send_timeout=1.0)


@pytest.fixture
def open_connection(hub):
    """Factory: register a transport with the hub and move it to OPEN"""

    async def _open(transport: Optional[FakeTransport] = None) -> Tuple[str, FakeTransport]:
        transport = transport or FakeTransport()
        connection_id = await hub.connect(transport, client_ip="127.0.0.1")
        await hub.mark_open(connection_id)
        return connection_id, transport

    return _open


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or json.dumps(payload)

    def json(self):
        return self._payload


class FakeSession:
    """
    requests.Session double for exchange REST calls

    `routes` maps a path (e.g. /api/v3/ticker/24hr) to a FakeResponse or an
    exception instance to raise. Every call is recorded in `calls`.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes = routes or {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def get(self, url: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None):
        path = "/" + url.split("://", 1)[-1].split("/", 1)[-1]
        self.calls.append((path, dict(params or {})))
        route = self.routes.get(path)
        if route is None:
            return FakeResponse(404, {"code": -1, "msg": "Not Found"})
        if isinstance(route, Exception):
            raise route
        return route


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()
