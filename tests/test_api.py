"""
Tests for RealtimeAPI connection handling
=========================================

The WebSocket transport is replaced by MockConnector/MockWebSocket so the
handshake arguments, event dispatch and close semantics can be asserted
without a network.
"""

import pytest

from src.realtime_session.api import ConnectionState, RealtimeAPI
from src.realtime_session.errors import (
    RealtimeConnectionError,
    RealtimeNotConnectedError,
    RealtimeStateError,
)
from tests.realtime_fakes import MockConnector, attach_mock_socket, server_event, settle


@pytest.fixture
def connector(monkeypatch):
    fake = MockConnector()
    monkeypatch.setattr("src.realtime_session.api.websockets.connect", fake)
    return fake


class TestHandshake:
    """Test URL and credential placement."""

    def test_openai_url_carries_model(self, api):
        assert api.build_connection_url() == "wss://example.test/v1/realtime?model=test-model"

    def test_azure_url_carries_deployment_and_version(self):
        api = RealtimeAPI(
            url="https://res.openai.azure.com",
            api_key="azure-key",
            deployment="gpt-rt",
            api_version="2024-10-01-preview",
        )

        assert api.build_connection_url() == (
            "wss://res.openai.azure.com/openai/realtime?api-version=2024-10-01-preview&deployment=gpt-rt"
        )

    def test_query_auth_puts_key_in_url(self):
        api = RealtimeAPI(url="wss://example.test/v1/realtime", model="m", api_key="k", deployment="", auth_mode="query")

        assert "api-key=k" in api.build_connection_url()
        assert "Authorization" not in api._handshake_options()["additional_headers"]

    def test_header_auth(self, api):
        options = api._handshake_options()

        assert options["additional_headers"] == {
            "OpenAI-Beta": "realtime=v1",
            "Authorization": "Bearer sk-test",
            "api-key": "sk-test",
        }
        assert "subprotocols" not in options

    def test_subprotocol_auth(self):
        api = RealtimeAPI(
            url="wss://example.test/v1/realtime", model="m", api_key="k", deployment="", auth_mode="subprotocol"
        )

        options = api._handshake_options()

        assert options["subprotocols"] == ["realtime", "openai-insecure-api-key.k", "openai-beta.realtime-v1"]
        assert "additional_headers" not in options

    def test_invalid_auth_mode(self):
        with pytest.raises(ValueError):
            RealtimeAPI(url="wss://x", model="m", api_key="k", deployment="", auth_mode="cookie")


class TestConnection:
    """Test connect/disconnect lifecycle and close notification."""

    @pytest.mark.asyncio
    async def test_connect_opens_and_passes_handshake(self, api, connector):
        await api.connect()

        assert api.is_connected()
        assert api.state is ConnectionState.OPEN
        assert connector.calls[0]["url"] == "wss://example.test/v1/realtime?model=test-model"
        assert connector.calls[0]["additional_headers"]["Authorization"] == "Bearer sk-test"

        await api.disconnect()

    @pytest.mark.asyncio
    async def test_connect_when_open_is_a_no_op(self, api, connector):
        await api.connect()
        await api.connect()

        assert len(connector.calls) == 1
        await api.disconnect()

    @pytest.mark.asyncio
    async def test_connect_while_connecting_is_rejected(self, api, connector):
        api.state = ConnectionState.CONNECTING

        with pytest.raises(RealtimeStateError):
            await api.connect()
        assert connector.calls == []

    @pytest.mark.asyncio
    async def test_connect_failure(self, api, monkeypatch):
        monkeypatch.setattr(
            "src.realtime_session.api.websockets.connect", MockConnector(error=OSError("refused"))
        )

        with pytest.raises(RealtimeConnectionError):
            await api.connect()

        assert api.state is ConnectionState.DISCONNECTED
        assert not api.is_connected()

    @pytest.mark.asyncio
    async def test_disconnect_dispatches_clean_close_once(self, api, connector):
        closes = []
        api.on("close", closes.append)
        await api.connect()

        await api.disconnect()
        await api.disconnect()

        assert closes == [{"error": False}]
        assert connector.ws.closed
        assert api.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_abnormal_closure_sets_error_flag(self, api, connector):
        closes = []
        api.on("close", closes.append)
        await api.connect()

        connector.ws.fail()
        await settle()

        assert closes == [{"error": True}]
        assert not api.is_connected()


class TestMessaging:
    """Test outbound and inbound event dispatch."""

    @pytest.mark.asyncio
    async def test_send_requires_connection(self, api):
        with pytest.raises(RealtimeNotConnectedError):
            await api.send("response.create")

    @pytest.mark.asyncio
    async def test_send_rejects_non_dict_payload(self, api):
        attach_mock_socket(api)
        with pytest.raises(TypeError):
            await api.send("response.create", ["not", "a", "dict"])

    @pytest.mark.asyncio
    async def test_send_dispatches_and_transmits(self, api):
        ws = attach_mock_socket(api)
        seen = []
        for name in ("response.create", "client.response.create", "client.*", "server.*"):
            api.on(name, lambda e, name=name: seen.append(name))

        event = await api.send("response.create", {"response": {"modalities": ["text"]}})

        assert seen == ["response.create", "client.response.create", "client.*"]
        assert event["event_id"].startswith("evt_")
        assert ws.sent_events == [event]

    @pytest.mark.asyncio
    async def test_send_on_closed_transport(self, api):
        ws = attach_mock_socket(api)
        ws.closed = True

        with pytest.raises(RealtimeConnectionError):
            await api.send("response.create")

    @pytest.mark.asyncio
    async def test_received_frames_are_dispatched(self, api, connector):
        seen = []
        api.on("server.session.created", lambda e: seen.append(("exact", e["type"])))
        api.on("server.*", lambda e: seen.append(("wildcard", e["type"])))
        await api.connect()

        connector.ws.feed("{not json")
        connector.ws.feed({"no_type": True})
        connector.ws.feed(server_event("session.created", session={}))
        connector.ws.feed(server_event("something.new"))
        await settle()

        assert seen == [
            ("exact", "session.created"),
            ("wildcard", "session.created"),
            ("wildcard", "something.new"),
        ]
        assert api.is_connected()
        await api.disconnect()
