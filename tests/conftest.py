"""
Shared fixtures for the realtime session tests.
"""

import pytest

from src.realtime_session.api import RealtimeAPI
from src.realtime_session.client import RealtimeClient
from src.realtime_session.conversation import RealtimeConversation
from tests.realtime_fakes import attach_mock_socket


@pytest.fixture
def conversation():
    """Fixture providing a conversation at the default 24 kHz."""
    return RealtimeConversation()


@pytest.fixture
def api():
    """Fixture providing an API client with explicit, environment-free settings."""
    return RealtimeAPI(
        url="wss://example.test/v1/realtime",
        model="test-model",
        api_key="sk-test",
        deployment="",
    )


@pytest.fixture
def client():
    """Fixture providing a RealtimeClient attached to a mock socket."""
    rt_client = RealtimeClient(
        url="wss://example.test/v1/realtime",
        model="test-model",
        api_key="sk-test",
        deployment="",
    )
    attach_mock_socket(rt_client.realtime)
    return rt_client
