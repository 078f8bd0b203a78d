"""
Exception types raised by the realtime session package.
"""


class RealtimeError(Exception):
    """Base class for every error raised by this package."""


class RealtimeConnectionError(RealtimeError):
    """The WebSocket handshake failed or the transport broke during a call."""


class RealtimeNotConnectedError(RealtimeError):
    """An operation needed an open connection and there was none."""


class RealtimeStateError(RealtimeError):
    """An operation was attempted in a connection state that does not allow it."""


class ConversationError(RealtimeError):
    """A server event could not be applied to the conversation state."""


class UnknownEventError(ConversationError):
    """No projector exists for the event type."""


class ItemNotFoundError(ConversationError):
    def __init__(self, item_id: str, context: str = "") -> None:
        self.item_id = item_id
        prefix = f"{context}: " if context else ""
        super().__init__(f'{prefix}Item "{item_id}" not found')


class ResponseNotFoundError(ConversationError):
    def __init__(self, response_id: str, context: str = "") -> None:
        self.response_id = response_id
        prefix = f"{context}: " if context else ""
        super().__init__(f'{prefix}Response "{response_id}" not found')


class ToolError(RealtimeError):
    """Invalid tool registration or removal."""


class RelayModeError(RealtimeError):
    """The capability is delegated upstream while the client runs in relay mode."""
