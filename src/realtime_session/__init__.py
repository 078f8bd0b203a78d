"""
Realtime Session Package

Provides classes and utilities for:
- Event dispatching and handling
- WebSocket API management for the Realtime API
- Conversation state reconstruction from streamed server events
- Session, tool and input audio management
- Relaying client events from a downstream caller
"""

from .api import ConnectionState, RealtimeAPI
from .client import RealtimeClient
from .conversation import EventResult, RealtimeConversation
from .errors import (
    ConversationError,
    ItemNotFoundError,
    RealtimeConnectionError,
    RealtimeError,
    RealtimeNotConnectedError,
    RealtimeStateError,
    RelayModeError,
    ResponseNotFoundError,
    ToolError,
    UnknownEventError,
)
from .event_handler import RealtimeEventHandler
from .events import ClientEventType, Notification, ServerEventType
from .relay import RealtimeRelay
from .schemas import SessionConfig
from .utils import (
    array_buffer_to_base64,
    base64_to_array_buffer,
    base64_to_int16,
    float_to_16bit_pcm,
    merge_int16_arrays,
)

__all__ = [
    "RealtimeClient",
    "RealtimeAPI",
    "RealtimeConversation",
    "RealtimeEventHandler",
    "RealtimeRelay",
    "ConnectionState",
    "EventResult",
    "SessionConfig",
    "ClientEventType",
    "ServerEventType",
    "Notification",
    "RealtimeError",
    "RealtimeConnectionError",
    "RealtimeNotConnectedError",
    "RealtimeStateError",
    "ConversationError",
    "UnknownEventError",
    "ItemNotFoundError",
    "ResponseNotFoundError",
    "ToolError",
    "RelayModeError",
    "float_to_16bit_pcm",
    "base64_to_array_buffer",
    "base64_to_int16",
    "array_buffer_to_base64",
    "merge_int16_arrays",
]
