"""
Realtime WebSocket API communication handler.
Handles the connection to OpenAI or Azure OpenAI Realtime endpoints.
"""

import asyncio
import json
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets

from src.realtime_session import settings
from src.realtime_session.errors import (
    RealtimeConnectionError,
    RealtimeNotConnectedError,
    RealtimeStateError,
)
from src.realtime_session.event_handler import EventCallback, RealtimeEventHandler
from src.realtime_session.events import ServerEventType, client_event_names, server_event_names
from src.realtime_session.utils import generate_id, trim_debug_event
from utils.ml_logging import get_logger

logger = get_logger(__name__)

AUTH_MODES = ("header", "subprotocol", "query")


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"

    def __str__(self) -> str:
        return self.value


class RealtimeAPI:
    """
    WebSocket client for one persistent connection to the Realtime API.

    Outbound events are dispatched under ``<type>``, ``client.<type>`` and
    ``client.*``; inbound events under ``<type>``, ``server.<type>`` and
    ``server.*``. A ``close`` event with an ``error`` flag is dispatched once
    when an open connection ends.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        deployment: Optional[str] = None,
        api_version: Optional[str] = None,
        auth_mode: Optional[str] = None,
        open_timeout: Optional[float] = None,
    ) -> None:
        self.events = RealtimeEventHandler()

        self.deployment: str = (
            deployment if deployment is not None else settings.AZURE_OPENAI_DEPLOYMENT
        )
        is_azure = bool(self.deployment)
        if url is None:
            url = (
                settings.AZURE_OPENAI_ENDPOINT
                if is_azure and settings.AZURE_OPENAI_ENDPOINT
                else settings.REALTIME_URL
            )
        if api_key is None:
            api_key = settings.AZURE_OPENAI_API_KEY if is_azure else settings.OPENAI_API_KEY

        self.url: str = url
        self.model: str = model or settings.REALTIME_MODEL
        self.api_key: str = api_key or ""
        self.api_version: str = api_version or settings.AZURE_OPENAI_API_VERSION
        self.auth_mode: str = auth_mode or settings.REALTIME_AUTH_MODE
        self.open_timeout: float = open_timeout or settings.REALTIME_OPEN_TIMEOUT

        if self.auth_mode not in AUTH_MODES:
            raise ValueError(f"Invalid auth_mode '{self.auth_mode}'. Valid options: {list(AUTH_MODES)}")

        self.ws = None
        self.state: ConnectionState = ConnectionState.DISCONNECTED
        self._receive_task: Optional[asyncio.Task] = None

    # ---------------------------
    # Event bus delegation
    # ---------------------------

    def on(self, event_name: str, handler: EventCallback) -> None:
        self.events.on(event_name, handler)

    def once(self, event_name: str, handler: EventCallback) -> EventCallback:
        return self.events.once(event_name, handler)

    def off(self, event_name: str, handler: Optional[EventCallback] = None) -> None:
        self.events.off(event_name, handler)

    async def wait_for_next(self, event_name: str, timeout: Optional[float] = None) -> Any:
        return await self.events.wait_for_next(event_name, timeout=timeout)

    def clear_event_handlers(self) -> None:
        self.events.clear_event_handlers()

    # ---------------------------
    # Connection lifecycle
    # ---------------------------

    def is_connected(self) -> bool:
        """
        Check if the WebSocket connection is open.

        Returns:
            bool: True if connected, False otherwise.
        """
        return self.state is ConnectionState.OPEN and self.ws is not None

    def build_connection_url(self) -> str:
        """
        Build the endpoint URL, including the model or Azure deployment and,
        for ``query`` auth, the credential.
        """
        parts = urlsplit(self.url)
        scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
        path = parts.path
        query = dict(parse_qsl(parts.query))

        if self.deployment:
            if not path.rstrip("/").endswith("/openai/realtime"):
                path = f"{path.rstrip('/')}/openai/realtime"
            query["api-version"] = self.api_version
            query["deployment"] = self.deployment
        else:
            query["model"] = self.model

        if self.auth_mode == "query" and self.api_key:
            query["api-key"] = self.api_key

        return urlunsplit((scheme, parts.netloc, path, urlencode(query), parts.fragment))

    def _handshake_options(self) -> Dict[str, Any]:
        """Headers and subprotocols carrying the credential and protocol version."""
        headers: Dict[str, str] = {}
        subprotocols: Optional[List[str]] = None

        if self.auth_mode == "subprotocol":
            subprotocols = ["realtime", settings.REALTIME_BETA_SUBPROTOCOL]
            if self.api_key:
                subprotocols.insert(1, f"openai-insecure-api-key.{self.api_key}")
        else:
            headers["OpenAI-Beta"] = settings.REALTIME_BETA_HEADER
            if self.auth_mode == "header" and self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
                # Azure OpenAI reads the key from this header
                headers["api-key"] = self.api_key

        options: Dict[str, Any] = {"open_timeout": self.open_timeout}
        if headers:
            options["additional_headers"] = headers
        if subprotocols:
            options["subprotocols"] = subprotocols
        return options

    async def connect(self) -> None:
        """
        Establish the WebSocket connection. A no-op when already open.

        Raises:
            RealtimeStateError: If a connection attempt is already in progress.
            RealtimeConnectionError: If the handshake fails.
        """
        if self.is_connected():
            logger.debug("connect() called while already connected; ignoring.")
            return
        if self.state is ConnectionState.CONNECTING:
            raise RealtimeStateError("A connection attempt is already in progress.")

        if not self.api_key:
            logger.warning(f"No API key provided for connection to '{self.url}'.")

        connection_url = self.build_connection_url()
        safe_url = urlunsplit(urlsplit(connection_url)._replace(query=""))
        logger.info(f"Connecting to Realtime API at {safe_url}")

        self.state = ConnectionState.CONNECTING
        try:
            ws = await websockets.connect(connection_url, **self._handshake_options())
        except Exception as e:
            self.state = ConnectionState.DISCONNECTED
            logger.error(f"Failed to connect to Realtime API: {e}")
            raise RealtimeConnectionError(f"Could not connect to '{safe_url}': {e}") from e

        self.ws = ws
        self.state = ConnectionState.OPEN
        self._receive_task = asyncio.create_task(self._receive_messages(ws))
        logger.keyinfo(f"Connected to {safe_url}")

    async def disconnect(self) -> None:
        """
        Close the WebSocket connection and wait for the receive loop to end.
        """
        ws = self.ws
        if ws is None:
            self.state = ConnectionState.DISCONNECTED
            return

        try:
            await ws.close()
        except Exception as e:
            logger.error(f"Error during WebSocket disconnect: {e}", exc_info=True)

        task = self._receive_task
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

        self._handle_close(ws, error=False)
        logger.info(f"Disconnected from Realtime API at {self.url}")

    def _handle_close(self, ws: Any, error: bool) -> None:
        # Stale sockets from an earlier connection are ignored
        if ws is not self.ws:
            return
        self.ws = None
        self.state = ConnectionState.DISCONNECTED
        self._receive_task = None
        self.events.dispatch("close", {"error": error})

    # ---------------------------
    # Messaging
    # ---------------------------

    async def send(self, event_name: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send an event to the Realtime API through the WebSocket.

        Args:
            event_name (str): Type/name of the event.
            data (Optional[Dict[str, Any]]): Payload dictionary.

        Returns:
            Dict[str, Any]: The event as transmitted, including its event_id.

        Raises:
            RealtimeNotConnectedError: If the WebSocket is not open.
            TypeError: If data is not a dictionary.
            RealtimeConnectionError: If the transport rejects the frame.
        """
        if not self.is_connected():
            raise RealtimeNotConnectedError("RealtimeAPI is not connected.")

        data = data or {}
        if not isinstance(data, dict):
            logger.error("Provided data is not a dictionary.")
            raise TypeError("Data must be a dictionary.")

        event_name = str(event_name)
        event = {
            "event_id": generate_id("evt_"),
            "type": event_name,
            **data,
        }

        for name in client_event_names(event_name):
            self.events.dispatch(name, event)
        logger.debug(f"Sent event: {trim_debug_event(event)}")

        try:
            await self.ws.send(json.dumps(event))
        except Exception as e:
            logger.error(f"Failed to send event '{event_name}': {e}", exc_info=True)
            raise RealtimeConnectionError(f"Failed to send event '{event_name}': {e}") from e
        return event

    def receive(self, event: Dict[str, Any]) -> None:
        """
        Dispatch an inbound event under its exact, server-prefixed and wildcard names.
        """
        event_type = event["type"]
        logger.debug(f"Received event: {trim_debug_event(event)}")

        if event_type == ServerEventType.ERROR.value:
            logger.error(f"Realtime API Error: {event.get('error')}")
        elif not ServerEventType.is_known(event_type):
            logger.debug(f"Unrecognized server event type '{event_type}'.")

        for name in server_event_names(event_type):
            self.events.dispatch(name, event)

    async def _receive_messages(self, ws: Any) -> None:
        """
        Continuously listen for incoming WebSocket messages and dispatch events.
        """
        error = False
        try:
            async for message in ws:
                try:
                    event = json.loads(message)
                except json.JSONDecodeError as e:
                    logger.error(f"Failed to decode incoming message: {e}")
                    continue

                if not isinstance(event, dict) or not event.get("type"):
                    logger.warning(f"Ignoring message without a type: {trim_debug_event(event)}")
                    continue

                self.receive(event)
        except websockets.ConnectionClosedError as e:
            logger.warning(f"WebSocket connection closed with error: {e}")
            error = True
        except Exception as e:
            logger.error(f"Error in WebSocket receive loop: {e}", exc_info=True)
            error = True
        finally:
            self._handle_close(ws, error=error)
