"""
Tests for the relay link state machine.

The WebSocket connector and the sleep function are injected: the connector
hands out scripted MockWebSockets (or raises), and FakeClock records every
reconnect delay without actually waiting.
"""

import asyncio
import json

import pytest

from semantic_bridge.relay import LinkState, RelayConnectError, RelayLink

CLOSE = object()


class MockWebSocket:
    """Mock WebSocket that yields queued messages until closed."""

    def __init__(self, messages=(), block_send: float = 0):
        self.inbox: asyncio.Queue = asyncio.Queue()
        for message in messages:
            self.inbox.put_nowait(message)
        self.block_send = block_send
        self.sent: list[str] = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is CLOSE:
            raise StopAsyncIteration
        return item

    async def send(self, message: str):
        if self.block_send:
            await asyncio.sleep(self.block_send)
        self.sent.append(message)

    async def close(self):
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(CLOSE)

    def drop(self):
        """Simulate the relay closing the connection."""
        self.inbox.put_nowait(CLOSE)


class MockConnector:
    """Hands out scripted connection outcomes, then idle sockets."""

    def __init__(self, outcomes=()):
        self.outcomes = list(outcomes)
        self.calls: list[str] = []
        self.sockets: list[MockWebSocket] = []

    async def __call__(self, url: str, **kwargs):
        self.calls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else MockWebSocket()
        if isinstance(outcome, Exception):
            raise outcome
        self.sockets.append(outcome)
        return outcome


class FakeClock:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    async def sleep(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate, steps: int = 500):
    for _ in range(steps):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def make_link(connector, clock=None, **kwargs) -> RelayLink:
    clock = clock or FakeClock()
    return RelayLink(
        "localhost",
        8810,
        connector=connector,
        sleep=clock.sleep,
        log_callback=lambda msg, level: None,
        **kwargs,
    )


class TestInitialConnect:

    @pytest.mark.asyncio
    async def test_connect_success(self):
        connector = MockConnector()
        link = make_link(connector)

        await link.connect()

        assert link.state is LinkState.CONNECTED
        assert link.connected
        assert connector.calls == ["ws://localhost:8810"]
        await link.close()
        assert link.state is LinkState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_failure_surfaces_once(self):
        clock = FakeClock()
        connector = MockConnector([ConnectionRefusedError("refused")])
        link = make_link(connector, clock)

        with pytest.raises(RelayConnectError, match="ws://localhost:8810"):
            await link.connect()

        await asyncio.sleep(0)
        assert link.state is LinkState.DISCONNECTED
        assert len(connector.calls) == 1
        assert clock.delays == []


class TestMessages:

    @pytest.mark.asyncio
    async def test_messages_delivered_in_order(self):
        ws = MockWebSocket(['{"n": 1}', b'{"n": 2}', '{"n": 3}'])
        link = make_link(MockConnector([ws]))
        received = []

        async def handler(raw):
            received.append(raw)

        link.on_message(handler)
        await link.connect()
        await wait_until(lambda: len(received) == 3)

        assert received == ['{"n": 1}', b'{"n": 2}', '{"n": 3}']
        await link.close()

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_reader(self):
        ws = MockWebSocket(["bad", "good"])
        link = make_link(MockConnector([ws]))
        received = []

        async def handler(raw):
            if raw == "bad":
                raise RuntimeError("handler blew up")
            received.append(raw)

        link.on_message(handler)
        await link.connect()
        await wait_until(lambda: received == ["good"])

        assert link.connected
        await link.close()


class TestSend:

    @pytest.mark.asyncio
    async def test_send_when_connected(self):
        ws = MockWebSocket()
        link = make_link(MockConnector([ws]))
        await link.connect()

        assert await link.send({"type": "semantic_response", "id": "msg-1"}) is True
        assert json.loads(ws.sent[0]) == {"type": "semantic_response", "id": "msg-1"}
        await link.close()

    @pytest.mark.asyncio
    async def test_send_when_disconnected_is_dropped(self):
        link = make_link(MockConnector())
        assert await link.send({"type": "semantic_error", "id": "x"}) is False

    @pytest.mark.asyncio
    async def test_blocked_send_drops_connection(self):
        ws = MockWebSocket(block_send=10.0)
        clock = FakeClock()
        connector = MockConnector([ws])
        link = make_link(connector, clock)
        await link.connect()

        assert await link.send({"type": "semantic_response"}, timeout=0.05) is False
        assert ws.closed
        assert ws.sent == []

        # The supervisor notices the closed socket and reconnects
        await wait_until(lambda: len(connector.calls) == 2 and link.connected)
        assert clock.delays == [5.0]
        await link.close()


class TestReconnect:

    @pytest.mark.asyncio
    async def test_each_failure_schedules_one_attempt(self):
        """A drop plus three refused attempts gives four attempts, each after 5s."""
        first = MockWebSocket()
        clock = FakeClock()
        connector = MockConnector([
            first,
            OSError("refused"),
            OSError("refused"),
            OSError("refused"),
        ])
        link = make_link(connector, clock)
        await link.connect()

        first.drop()
        await wait_until(lambda: link.reconnect_attempts == 4 and link.connected)

        assert clock.delays == [5.0, 5.0, 5.0, 5.0]
        assert len(connector.calls) == 5
        await link.close()

    @pytest.mark.asyncio
    async def test_no_retry_cap(self):
        first = MockWebSocket()
        clock = FakeClock()
        connector = MockConnector([first] + [OSError("refused")] * 50)
        link = make_link(connector, clock)
        await link.connect()

        first.drop()
        await wait_until(lambda: link.connected and link.reconnect_attempts == 51, steps=5000)

        assert clock.delays == [5.0] * 51
        await link.close()

    @pytest.mark.asyncio
    async def test_reconnects_after_every_drop(self):
        first, second = MockWebSocket(), MockWebSocket()
        clock = FakeClock()
        connector = MockConnector([first, second])
        link = make_link(connector, clock)
        await link.connect()

        first.drop()
        await wait_until(lambda: link.reconnect_attempts == 1 and link.connected)
        second.drop()
        await wait_until(lambda: link.reconnect_attempts == 2 and link.connected)

        assert clock.delays == [5.0, 5.0]
        await link.close()

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self):
        first = MockWebSocket()
        clock = FakeClock()
        connector = MockConnector([first] + [OSError("refused")] * 3)
        link = make_link(connector, clock, backoff=2.0, max_reconnect_delay=20.0)
        await link.connect()

        first.drop()
        await wait_until(lambda: link.reconnect_attempts == 4 and link.connected)

        assert clock.delays == [5.0, 10.0, 20.0, 20.0]
        await link.close()

    @pytest.mark.asyncio
    async def test_max_retries_gives_up(self):
        first = MockWebSocket()
        clock = FakeClock()
        connector = MockConnector([first] + [OSError("refused")] * 5)
        link = make_link(connector, clock, max_retries=2)
        await link.connect()

        first.drop()
        await wait_until(lambda: link.reconnect_attempts == 2)
        for _ in range(20):
            await asyncio.sleep(0)

        assert link.reconnect_attempts == 2
        assert link.state is LinkState.DISCONNECTED
        await link.close()

    @pytest.mark.asyncio
    async def test_close_stops_reconnecting(self):
        first = MockWebSocket()
        connector = MockConnector([first])
        link = make_link(connector)
        await link.connect()

        await link.close()
        for _ in range(20):
            await asyncio.sleep(0)

        assert len(connector.calls) == 1
        assert link.state is LinkState.DISCONNECTED
