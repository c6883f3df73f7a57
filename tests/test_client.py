"""Tests for the client-side connection manager."""

import asyncio

import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

from src.client import ConnectionManager, backoff_delay, build_socket_url
from src.config import Settings
from src.protocol import STATUS_NO_RECONNECT
from tests.fakes import FakeConnector, Recorder, wait_for

# ============================================================
# FIXTURES
# ============================================================


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
async def manager(connector):
    manager = ConnectionManager("ws://test/", connector=connector, max_interval_seconds=0)
    yield manager
    await manager.disconnect()


# ============================================================
# BACKOFF
# ============================================================


class TestBackoff:
    def test_formula(self):
        assert backoff_delay(1) == 1
        assert backoff_delay(4) == pytest.approx(8.0)
        assert backoff_delay(9, backoff_factor=2) == 81

    def test_capped(self):
        assert backoff_delay(1000) == 1800
        assert backoff_delay(10, max_interval_seconds=5) == 5

    def test_monotonic_up_to_cap(self):
        delays = [backoff_delay(n) for n in range(1, 500)]
        assert delays == sorted(delays)
        assert delays[-1] == 1800


class TestBuildSocketUrl:
    def test_ws_base(self):
        assert build_socket_url("ws://example.com/", "abc") == "ws://example.com/abc"

    def test_https_maps_to_wss(self):
        assert build_socket_url("https://example.com/api", "abc") == "wss://example.com/api/abc"

    def test_http_maps_to_ws(self):
        assert build_socket_url("http://localhost:8003", "abc") == "ws://localhost:8003/abc"

    def test_missing_scheme(self):
        assert build_socket_url("localhost:8003/", "abc") == "ws://localhost:8003/abc"


# ============================================================
# CONNECTION LIFECYCLE
# ============================================================


class TestConnect:
    async def test_connect(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        assert await manager.connect("abc") is True
        assert manager.connected is True
        assert connector.urls == ["ws://test/abc"]
        assert recorder.names() == ["open"]
        assert manager.last_message_time is not None

    async def test_failed_connect_returns_false_and_retries(self):
        connector = FakeConnector(failures=1)
        manager = ConnectionManager("ws://test/", connector=connector, max_interval_seconds=0)
        recorder = Recorder()
        manager.add_listener(recorder)

        assert await manager.connect("abc") is False
        assert manager.reconnect_attempts == 1
        assert recorder.names() == ["error"]

        await wait_for(lambda: manager.connected)
        assert manager.reconnect_attempts == 0
        assert len(connector.urls) == 2
        await manager.disconnect()

    async def test_repeated_failures_keep_retrying(self):
        connector = FakeConnector(failures=3)
        manager = ConnectionManager("ws://test/", connector=connector, max_interval_seconds=0)
        await manager.connect("abc")
        await wait_for(lambda: manager.connected)
        assert len(connector.urls) == 4
        assert manager.reconnect_attempts == 0
        await manager.disconnect()

    async def test_attempts_grow_while_failing(self):
        connector = FakeConnector(failures=1)
        manager = ConnectionManager("ws://test/", connector=connector)
        await manager.connect("abc")
        assert manager.reconnect_attempts == 1
        assert manager.reconnect_pending is True
        await manager.disconnect()

    async def test_disconnect_cancels_pending_reconnect(self):
        connector = FakeConnector(failures=1)
        manager = ConnectionManager("ws://test/", connector=connector)
        await manager.connect("abc")
        assert manager.reconnect_pending is True

        await manager.disconnect()
        assert manager.reconnect_pending is False
        assert manager.reconnect_attempts == 0
        await asyncio.sleep(0.01)
        assert connector.urls == ["ws://test/abc"]

    async def test_disconnect_does_not_reconnect(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        await manager.connect("abc")
        await manager.disconnect()

        assert connector.connections[0].close_code == STATUS_NO_RECONNECT
        assert manager.connected is False
        assert ("close", STATUS_NO_RECONNECT) in recorder.events
        await asyncio.sleep(0.01)
        assert manager.reconnect_pending is False
        assert len(connector.urls) == 1

    async def test_disconnect_reports_close_without_error(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        await manager.connect("abc")
        await manager.disconnect()
        assert recorder.names() == ["open", "close"]

    async def test_abnormal_close_reports_error_and_reconnects(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        await manager.connect("abc")
        frame = Close(1011, "internal error")
        connector.connections[0].fail(ConnectionClosedError(frame, frame, True))

        await wait_for(lambda: len(connector.connections) == 2 and manager.connected)
        assert recorder.names()[:3] == ["open", "error", "close"]

    async def test_reader_failure_still_closes(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        await manager.connect("abc")
        connector.connections[0].fail(RuntimeError("boom"))

        await wait_for(lambda: len(connector.connections) == 2 and manager.connected)
        assert ("close", None) in recorder.events
        assert manager._health_task is not None

    async def test_server_close_triggers_reconnect(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        await manager.connect("abc")
        connector.connections[0].drop(1006)

        await wait_for(lambda: len(connector.connections) == 2 and manager.connected)
        assert ("close", 1006) in recorder.events
        assert recorder.names().count("open") == 2
        assert manager.reconnect_attempts == 0

    async def test_server_no_reconnect_code(self, manager, connector):
        await manager.connect("abc")
        connector.connections[0].drop(STATUS_NO_RECONNECT)
        await wait_for(lambda: not manager.connected)
        await asyncio.sleep(0.01)
        assert len(connector.connections) == 1
        assert manager.reconnect_pending is False

    async def test_async_context_disconnects(self, connector):
        async with ConnectionManager("ws://test/", connector=connector) as manager:
            await manager.connect("abc")
        assert manager.connected is False
        assert connector.connections[0].close_code == STATUS_NO_RECONNECT

    def test_from_settings(self):
        settings = Settings(
            socket_base_url="wss://timers.example.com/",
            reconnect_max_interval_seconds=60,
            reconnect_backoff_factor=2,
            client_health_check_timeout_seconds=30,
        )
        manager = ConnectionManager.from_settings(settings)
        assert manager.base_url == "wss://timers.example.com/"
        assert manager.max_interval_seconds == 60
        assert manager.backoff_factor == 2
        assert manager.health_check_timeout == 30


# ============================================================
# MESSAGING
# ============================================================


class TestSend:
    async def test_send_when_not_connected(self, manager):
        assert await manager.send("state", {}) is False

    async def test_send_encodes_pair(self, manager, connector):
        await manager.connect("abc")
        assert await manager.send("state", {"time": 3}) is True
        assert connector.connections[0].frames() == [["state", {"time": 3}]]

    async def test_send_failure_returns_false(self, manager, connector):
        await manager.connect("abc")
        connector.connections[0].fail_send = True
        assert await manager.send("state", {}) is False


class TestReceive:
    async def test_events_fan_out(self, manager, connector):
        first, second = Recorder(), Recorder()
        manager.add_listener(first)
        manager.add_listener(second)
        await manager.connect("abc")

        connector.connections[0].feed('["state", {"time": 5}]')
        await wait_for(lambda: ("state", {"time": 5}) in first.events)
        assert ("state", {"time": 5}) in second.events

    async def test_failing_listener_isolated(self, manager, connector):
        recorder = Recorder()

        def bad(event, data):
            raise RuntimeError("boom")

        manager.add_listener(bad)
        manager.add_listener(recorder)
        await manager.connect("abc")

        connector.connections[0].feed('["state", 1]')
        connector.connections[0].feed('["state", 2]')
        await wait_for(lambda: ("state", 2) in recorder.events)
        assert manager.connected is True

    async def test_listener_removing_itself(self, manager, connector):
        seen = []

        def once(event, data):
            manager.remove_listener(once)
            seen.append(data)

        await manager.connect("abc")
        manager.add_listener(once)
        recorder = Recorder()
        manager.add_listener(recorder)

        connector.connections[0].feed('["x", 1]')
        connector.connections[0].feed('["x", 2]')
        await wait_for(lambda: ("x", 2) in recorder.events)
        assert seen == [1]

    async def test_removed_listener_not_called(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        manager.remove_listener(recorder)
        await manager.connect("abc")
        assert recorder.events == []

    async def test_malformed_message_dropped(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        await manager.connect("abc")
        connection = connector.connections[0]

        connection.feed("not json")
        connection.feed('{"event": "state"}')
        connection.feed('["too", "many", "items"]')
        connection.feed('["after", null]')

        await wait_for(lambda: ("after", None) in recorder.events)
        assert recorder.names() == ["open", "after"]
        assert manager.connected is True

    async def test_deeply_nested_message_dropped(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        await manager.connect("abc")
        connection = connector.connections[0]

        connection.feed("[" * 100_000 + "]" * 100_000)
        connection.feed('["hello", 1]')

        await wait_for(lambda: ("hello", 1) in recorder.events)
        assert recorder.names() == ["open", "hello"]
        assert manager.connected is True
        assert len(connector.connections) == 1

    async def test_ping_answered_with_pong(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        await manager.connect("abc")
        connection = connector.connections[0]

        connection.feed('["ping", 1000]')
        await wait_for(lambda: connection.sent)

        event, payload = connection.frames()[0]
        assert event == "pong"
        assert payload["then"] == 1000
        assert payload["diff"] == payload["now"] - 1000
        assert "ping" not in recorder.names()

    async def test_ping_without_timestamp_ignored(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        await manager.connect("abc")
        connection = connector.connections[0]

        connection.feed('["ping", {"now": 5}]')
        connection.feed('["after", null]')
        await wait_for(lambda: ("after", None) in recorder.events)
        assert connection.sent == []
        assert manager.connected is True

    async def test_pong_swallowed(self, manager, connector):
        recorder = Recorder()
        manager.add_listener(recorder)
        await manager.connect("abc")
        connection = connector.connections[0]

        connection.feed('["pong", {"then": 1, "now": 2, "diff": 1}]')
        connection.feed('["after", null]')
        await wait_for(lambda: ("after", None) in recorder.events)
        assert "pong" not in recorder.names()

    async def test_message_updates_last_message_time(self, manager, connector):
        await manager.connect("abc")
        manager.last_message_time = 0
        connector.connections[0].feed('["x", null]')
        await wait_for(lambda: manager.last_message_time > 0)


class TestHealthCheck:
    async def test_silent_connection_is_pinged(self, connector):
        manager = ConnectionManager("ws://test/", connector=connector, health_check_timeout=0.01)
        await manager.connect("abc")
        connection = connector.connections[0]

        await wait_for(lambda: connection.sent)
        event, payload = connection.frames()[0]
        assert event == "ping"
        assert isinstance(payload, int)
        assert manager.connected is True
        await manager.disconnect()

    async def test_active_connection_not_pinged(self, connector):
        manager = ConnectionManager("ws://test/", connector=connector, health_check_timeout=10)
        await manager.connect("abc")
        await asyncio.sleep(0.02)
        assert connector.connections[0].sent == []
        await manager.disconnect()
