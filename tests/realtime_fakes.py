"""
Fake WebSocket transport and event builders for the realtime session tests.
"""

import asyncio
import base64
import itertools
import json
from typing import Any, Dict, List, Optional

import numpy as np
import websockets

from src.realtime_session.api import ConnectionState, RealtimeAPI

_CLOSE = object()
_ERROR = object()

_event_counter = itertools.count(1)


class MockWebSocket:
    """Mock WebSocket connection speaking JSON text frames."""

    def __init__(self, path: str = "/"):
        self.sent_messages: List[str] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.request = type("Request", (), {"path": path})()

    @property
    def sent_events(self) -> List[Dict[str, Any]]:
        return [json.loads(m) for m in self.sent_messages]

    def sent_types(self) -> List[str]:
        return [e["type"] for e in self.sent_events]

    def feed(self, message: Any) -> None:
        """Queue an inbound frame (dicts are JSON-encoded)."""
        self._incoming.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

    def fail(self) -> None:
        """Make the receive loop see an abnormal closure."""
        self._incoming.put_nowait(_ERROR)

    async def send(self, message: str) -> None:
        if self.closed:
            raise websockets.ConnectionClosedOK(None, None)
        self.sent_messages.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.closed = True
            self.close_code = code
            self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is _CLOSE:
            raise StopAsyncIteration
        if message is _ERROR:
            raise websockets.ConnectionClosedError(None, None)
        return message


class MockConnector:
    """Stand-in for websockets.connect that records handshake arguments."""

    def __init__(self, ws: Optional[MockWebSocket] = None, error: Optional[Exception] = None):
        self.ws = ws or MockWebSocket()
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, url: str, **kwargs: Any) -> MockWebSocket:
        self.calls.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.ws


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def attach_mock_socket(api: RealtimeAPI) -> MockWebSocket:
    """Mark the API as open over a mock socket without a receive loop."""
    ws = MockWebSocket()
    api.ws = ws
    api.state = ConnectionState.OPEN
    return ws


def server_event(event_type: str, **fields: Any) -> Dict[str, Any]:
    return {"event_id": f"event_{next(_event_counter)}", "type": event_type, **fields}


def pcm16_base64(samples: np.ndarray) -> str:
    return base64.b64encode(samples.astype("<i2").tobytes()).decode("utf-8")


def item_created(item_id: str, item_type: str = "message", role: Optional[str] = "assistant", **fields: Any):
    item = {"id": item_id, "object": "realtime.item", "type": item_type, "status": "in_progress", **fields}
    if role is not None:
        item["role"] = role
    item.setdefault("content", [] if item_type == "message" else None)
    if item["content"] is None:
        del item["content"]
    return server_event("conversation.item.created", previous_item_id=None, item=item)
