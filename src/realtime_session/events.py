"""
Event type catalog for the Realtime API protocol (realtime=v1).

Client events are sent by this package, server events are received from the
service, and notifications are derived locally and never go over the wire.
"""

from enum import Enum


class _EventTypeEnum(str, Enum):
    def __str__(self) -> str:
        """Return the wire name for easy comparison"""
        return self.value

    @classmethod
    def is_known(cls, value: str) -> bool:
        return any(member.value == value for member in cls)


class ClientEventType(_EventTypeEnum):
    SESSION_UPDATE = "session.update"
    INPUT_AUDIO_BUFFER_APPEND = "input_audio_buffer.append"
    INPUT_AUDIO_BUFFER_COMMIT = "input_audio_buffer.commit"
    INPUT_AUDIO_BUFFER_CLEAR = "input_audio_buffer.clear"
    CONVERSATION_ITEM_CREATE = "conversation.item.create"
    CONVERSATION_ITEM_TRUNCATE = "conversation.item.truncate"
    CONVERSATION_ITEM_DELETE = "conversation.item.delete"
    RESPONSE_CREATE = "response.create"
    RESPONSE_CANCEL = "response.cancel"


class ServerEventType(_EventTypeEnum):
    ERROR = "error"
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_ITEM_CREATED = "conversation.item.created"
    CONVERSATION_ITEM_INPUT_AUDIO_TRANSCRIPTION_COMPLETED = (
        "conversation.item.input_audio_transcription.completed"
    )
    CONVERSATION_ITEM_INPUT_AUDIO_TRANSCRIPTION_FAILED = (
        "conversation.item.input_audio_transcription.failed"
    )
    CONVERSATION_ITEM_TRUNCATED = "conversation.item.truncated"
    CONVERSATION_ITEM_DELETED = "conversation.item.deleted"
    INPUT_AUDIO_BUFFER_COMMITTED = "input_audio_buffer.committed"
    INPUT_AUDIO_BUFFER_CLEARED = "input_audio_buffer.cleared"
    INPUT_AUDIO_BUFFER_SPEECH_STARTED = "input_audio_buffer.speech_started"
    INPUT_AUDIO_BUFFER_SPEECH_STOPPED = "input_audio_buffer.speech_stopped"
    RESPONSE_CREATED = "response.created"
    RESPONSE_DONE = "response.done"
    RESPONSE_OUTPUT_ITEM_ADDED = "response.output_item.added"
    RESPONSE_OUTPUT_ITEM_DONE = "response.output_item.done"
    RESPONSE_CONTENT_PART_ADDED = "response.content_part.added"
    RESPONSE_CONTENT_PART_DONE = "response.content_part.done"
    RESPONSE_TEXT_DELTA = "response.text.delta"
    RESPONSE_TEXT_DONE = "response.text.done"
    RESPONSE_AUDIO_TRANSCRIPT_DELTA = "response.audio_transcript.delta"
    RESPONSE_AUDIO_TRANSCRIPT_DONE = "response.audio_transcript.done"
    RESPONSE_AUDIO_DELTA = "response.audio.delta"
    RESPONSE_AUDIO_DONE = "response.audio.done"
    RESPONSE_FUNCTION_CALL_ARGUMENTS_DELTA = "response.function_call_arguments.delta"
    RESPONSE_FUNCTION_CALL_ARGUMENTS_DONE = "response.function_call_arguments.done"
    RATE_LIMITS_UPDATED = "rate_limits.updated"


class Notification(_EventTypeEnum):
    """Caller-facing events synthesized by RealtimeClient."""

    REALTIME_EVENT = "realtime.event"
    CONVERSATION_UPDATED = "conversation.updated"
    CONVERSATION_INTERRUPTED = "conversation.interrupted"
    ITEM_APPENDED = "conversation.item.appended"
    ITEM_COMPLETED = "conversation.item.completed"
    INPUT_AUDIO_TRANSCRIPTION_COMPLETED = "conversation.item.input_audio_transcription.completed"
    TOOL_CALL_ERROR = "conversation.tool_call.error"
    CLOSE = "close"


CLIENT_WILDCARD = "client.*"
SERVER_WILDCARD = "server.*"


def client_event_names(event_type: str) -> list:
    """Names an outbound event is dispatched under, most specific first."""
    return [event_type, f"client.{event_type}", CLIENT_WILDCARD]


def server_event_names(event_type: str) -> list:
    """Names an inbound event is dispatched under, most specific first."""
    return [event_type, f"server.{event_type}", SERVER_WILDCARD]
