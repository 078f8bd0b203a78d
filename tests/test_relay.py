"""
Tests for RealtimeRelay
=======================

The downstream caller and the upstream service are both MockWebSockets; the
upstream handshake can be held open with a gate to exercise queueing.
"""

import asyncio

import pytest

from src.realtime_session.client import RealtimeClient
from src.realtime_session.errors import RelayModeError
from src.realtime_session.relay import RealtimeRelay
from tests.realtime_fakes import MockConnector, MockWebSocket, server_event, settle

API_PARAMS = {
    "url": "wss://example.test/v1/realtime",
    "model": "test-model",
    "api_key": "sk-test",
    "deployment": "",
}


class GatedConnector(MockConnector):
    """Connector whose handshake completes only once the gate opens."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gate = asyncio.Event()

    async def __call__(self, url, **kwargs):
        await self.gate.wait()
        return await super().__call__(url, **kwargs)


@pytest.fixture
def relay_client():
    return RealtimeClient(relay=True, **API_PARAMS)


@pytest.fixture
def upstream(monkeypatch):
    connector = GatedConnector()
    monkeypatch.setattr("src.realtime_session.api.websockets.connect", connector)
    return connector


def test_requires_relay_mode_client():
    with pytest.raises(RelayModeError):
        RealtimeRelay(RealtimeClient(**API_PARAMS))


def test_requires_api_key():
    with pytest.raises(ValueError):
        RealtimeRelay(RealtimeClient(relay=True, url="wss://x", model="m", api_key="", deployment=""))


@pytest.mark.asyncio
async def test_frames_before_upstream_open_are_queued_in_order(relay_client, upstream):
    relay = RealtimeRelay(relay_client)
    downstream = MockWebSocket()
    downstream.feed({"type": "session.update", "session": {"voice": "echo"}})
    downstream.feed({"type": "response.create"})

    task = asyncio.create_task(relay.handle_connection(downstream))
    await settle()
    assert upstream.calls == []

    upstream.gate.set()
    await settle()

    assert upstream.ws.sent_types() == ["session.update", "response.create"]
    assert upstream.ws.sent_events[0]["session"] == {"voice": "echo"}

    downstream.feed({"type": "input_audio_buffer.clear"})
    await settle()
    assert upstream.ws.sent_types()[-1] == "input_audio_buffer.clear"

    await downstream.close()
    await asyncio.wait_for(task, timeout=1.0)
    assert upstream.ws.closed
    assert relay._active is None


@pytest.mark.asyncio
async def test_server_events_are_streamed_downstream(relay_client, upstream):
    relay = RealtimeRelay(relay_client)
    downstream = MockWebSocket()
    upstream.gate.set()

    task = asyncio.create_task(relay.handle_connection(downstream))
    await settle()
    upstream.ws.feed(server_event("session.created", session={"id": "sess_1"}))
    await settle()

    assert downstream.sent_types() == ["session.created"]

    await downstream.close()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_upstream_close_closes_downstream(relay_client, upstream):
    relay = RealtimeRelay(relay_client)
    downstream = MockWebSocket()
    upstream.gate.set()

    task = asyncio.create_task(relay.handle_connection(downstream))
    await settle()
    upstream.ws.fail()
    await settle()

    assert downstream.closed
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_malformed_frames_are_dropped(relay_client, upstream):
    relay = RealtimeRelay(relay_client)
    downstream = MockWebSocket()
    upstream.gate.set()
    downstream.feed("{broken")
    downstream.feed({"no": "type"})
    downstream.feed({"type": "response.cancel"})

    task = asyncio.create_task(relay.handle_connection(downstream))
    await settle()

    assert upstream.ws.sent_types() == ["response.cancel"]

    await downstream.close()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_wrong_path_is_rejected(relay_client, upstream):
    relay = RealtimeRelay(relay_client)
    downstream = MockWebSocket(path="/admin")

    await relay.handle_connection(downstream)

    assert downstream.closed
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_second_connection_is_rejected(relay_client, upstream):
    relay = RealtimeRelay(relay_client)
    relay._active = MockWebSocket()
    downstream = MockWebSocket()

    await relay.handle_connection(downstream)

    assert downstream.close_code == 1013


@pytest.mark.asyncio
async def test_upstream_failure_closes_downstream(relay_client, monkeypatch):
    monkeypatch.setattr(
        "src.realtime_session.api.websockets.connect", MockConnector(error=OSError("unreachable"))
    )
    relay = RealtimeRelay(relay_client)
    downstream = MockWebSocket()

    await asyncio.wait_for(relay.handle_connection(downstream), timeout=1.0)

    assert downstream.close_code == 1011
    assert relay._active is None
