"""
Realtime Relay
==============

WebSocket pass-through between a downstream caller (e.g. a browser) and the
Realtime API. The relay keeps the API key server-side: the caller speaks the
client-event protocol to the relay, the relay forwards it upstream through a
relay-mode RealtimeClient and streams every server event back.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import websockets

from src.realtime_session import settings
from src.realtime_session.client import RealtimeClient
from src.realtime_session.errors import RealtimeError, RelayModeError
from src.realtime_session.events import Notification, SERVER_WILDCARD
from utils.ml_logging import get_logger

logger = get_logger(__name__)

_CLOSE_SENTINEL = object()


class RealtimeRelay:
    """
    Relay server serving one downstream connection at a time on path ``/``.
    """

    def __init__(self, client: RealtimeClient) -> None:
        if not client.relay:
            raise RelayModeError('RealtimeRelay client must have the "relay" option set.')
        if not client.realtime.api_key:
            raise ValueError("RealtimeRelay client must have an API key set.")

        self.client = client
        self.server = None
        self._active: Optional[Any] = None

    async def listen(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """
        Start the relay WebSocket server.

        Args:
            host: Interface to bind; defaults to REALTIME_RELAY_HOST.
            port: Port to listen on; defaults to REALTIME_RELAY_PORT (8081).
        """
        if self.server is not None:
            raise RuntimeError("RealtimeRelay is already listening.")

        host = host or settings.REALTIME_RELAY_HOST
        port = port or settings.REALTIME_RELAY_PORT
        self.server = await websockets.serve(self.handle_connection, host, port)
        logger.keyinfo(f"Relay listening on ws://{host}:{port}")

    async def close(self) -> None:
        """
        Stop accepting connections and close the server.
        """
        if self.server is None:
            return
        self.server.close()
        await self.server.wait_closed()
        self.server = None
        logger.info("Relay closed.")

    async def handle_connection(self, ws: Any) -> None:
        """
        Relay one downstream connection until either side closes.
        """
        path = getattr(getattr(ws, "request", None), "path", "/") or "/"
        if path.split("?", 1)[0] != "/":
            logger.error(f"Invalid pathname: '{path}'")
            await ws.close()
            return

        if self._active is not None:
            logger.warning("Relay already serving a connection; rejecting new connection.")
            await ws.close(code=1013, reason="relay busy")
            return
        self._active = ws

        outbound: asyncio.Queue = asyncio.Queue()

        def _forward_server_event(event: Dict[str, Any]) -> None:
            logger.debug(f"Relaying '{event.get('type')}' to client")
            outbound.put_nowait(json.dumps(event))

        def _on_upstream_close(event: Dict[str, Any]) -> None:
            outbound.put_nowait(_CLOSE_SENTINEL)

        realtime = self.client.realtime
        realtime.on(SERVER_WILDCARD, _forward_server_event)
        realtime.on(Notification.CLOSE.value, _on_upstream_close)
        writer = asyncio.create_task(self._write_downstream(ws, outbound))

        # Messages that arrive before the upstream connection is open
        message_queue: List[str] = []
        upstream_ready = asyncio.Event()
        reader = asyncio.create_task(self._read_downstream(ws, message_queue, upstream_ready))

        try:
            try:
                logger.info(f"Connecting to server... {realtime.url}")
                await self.client.connect()
            except Exception as e:
                logger.error(f"Error connecting to server: {e}")
                await ws.close(code=1011, reason="upstream connection failed")
                return

            logger.info(f"Connected to server successfully {realtime.url}")
            # Frames read during the flush keep queueing, preserving order
            while message_queue:
                await self._relay_to_server(message_queue.pop(0))
            upstream_ready.set()

            await reader
        finally:
            reader.cancel()
            realtime.off(SERVER_WILDCARD, _forward_server_event)
            realtime.off(Notification.CLOSE.value, _on_upstream_close)
            outbound.put_nowait(_CLOSE_SENTINEL)
            await asyncio.gather(writer, reader, return_exceptions=True)
            await self.client.disconnect()
            self._active = None
            logger.info("Relay connection finished.")

    async def _read_downstream(
        self, ws: Any, message_queue: List[str], upstream_ready: asyncio.Event
    ) -> None:
        try:
            async for data in ws:
                message = data if isinstance(data, str) else data.decode("utf-8")
                if not upstream_ready.is_set():
                    message_queue.append(message)
                else:
                    await self._relay_to_server(message)
        except websockets.ConnectionClosed as e:
            logger.info(f"Downstream connection closed: {e}")

    async def _relay_to_server(self, message: str) -> None:
        try:
            event = json.loads(message)
            if not isinstance(event, dict) or not event.get("type"):
                raise ValueError("event has no type")
        except ValueError as e:
            logger.error(f"Error parsing event from client: {message[:200]} ({e})")
            return

        logger.debug(f"Relaying '{event['type']}' to server")
        try:
            await self.client.realtime.send(event["type"], event)
        except RealtimeError as e:
            logger.error(f"Could not relay '{event['type']}' to server: {e}")

    async def _write_downstream(self, ws: Any, outbound: asyncio.Queue) -> None:
        while True:
            message = await outbound.get()
            if message is _CLOSE_SENTINEL:
                await ws.close()
                return
            try:
                await ws.send(message)
            except websockets.ConnectionClosed:
                return
