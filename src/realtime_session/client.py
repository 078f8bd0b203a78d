# client.py orchestrates the RealtimeAPI and RealtimeConversation classes
# and handles session configuration, tools, input audio and derived events.

import asyncio
import copy
import functools
import inspect
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import numpy as np
import yaml
from opentelemetry import trace

from src.realtime_session import settings
from src.realtime_session.api import RealtimeAPI
from src.realtime_session.conversation import EventResult, RealtimeConversation
from src.realtime_session.errors import (
    ConversationError,
    ItemNotFoundError,
    RealtimeNotConnectedError,
    RelayModeError,
    ToolError,
)
from src.realtime_session.event_handler import EventCallback, RealtimeEventHandler
from src.realtime_session.events import ClientEventType, Notification, ServerEventType
from src.realtime_session.schemas import validate_session_config
from src.realtime_session.utils import (
    array_buffer_to_base64,
    deep_merge,
    empty_audio,
    merge_int16_arrays,
    samples_to_ms,
    to_int16_array,
)
from utils.ml_logging import get_logger

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

ToolHandler = Callable[..., Union[Any, Awaitable[Any]]]

DEFAULT_INSTRUCTIONS = (
    "You are a helpful, witty, and friendly AI. Your voice and personality should be warm "
    "and engaging. Talk quickly. You should always call a function if you can."
)


class RealtimeClient:
    """
    Client orchestrator that manages the RealtimeAPI connection, conversation
    tracking, session configuration, tools and user input.

    In relay mode, tool execution and session updates belong to an upstream
    caller; the client only tracks the conversation and forwards events.
    """

    def __init__(
        self,
        session_config: Optional[Dict[str, Any]] = None,
        session_config_path: Optional[str] = None,
        relay: bool = False,
        frequency: Optional[int] = None,
        **api_params: Any,
    ) -> None:
        self.events = RealtimeEventHandler()
        self.relay = relay
        self.realtime = RealtimeAPI(**api_params)
        self.conversation = RealtimeConversation(frequency=frequency)

        self.default_session_config: Dict[str, Any] = {
            "modalities": ["text", "audio"],
            "instructions": DEFAULT_INSTRUCTIONS,
            "voice": "alloy",
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "input_audio_transcription": {"model": "whisper-1"},
            "turn_detection": {
                "type": "server_vad",
                "threshold": 0.5,
                "prefix_padding_ms": 300,
                "silence_duration_ms": 200,
            },
            "tools": [],
            "tool_choice": "auto",
            "temperature": 0.8,
            "max_response_output_tokens": 4096,
        }

        session_config_path = session_config_path or settings.REALTIME_SESSION_CONFIG or None
        if session_config_path:
            self.default_session_config = deep_merge(
                self.default_session_config, self._load_session_config_from_yaml(session_config_path)
            )
        if session_config:
            self.default_session_config = deep_merge(self.default_session_config, session_config)
        validate_session_config(self.default_session_config)

        self.session_config: Dict[str, Any] = {}
        self.tools: Dict[str, Dict[str, Any]] = {}
        self.input_audio_buffer: np.ndarray = empty_audio()
        self._session_created = asyncio.Event()
        self._tool_tasks: Set[asyncio.Task] = set()

        self._reset_config()
        self._add_api_event_handlers()

    # ---------------------------
    # Event bus delegation
    # ---------------------------

    def on(self, event_name: str, handler: EventCallback) -> None:
        self.events.on(event_name, handler)

    def once(self, event_name: str, handler: EventCallback) -> EventCallback:
        return self.events.once(event_name, handler)

    def off(self, event_name: str, handler: Optional[EventCallback] = None) -> None:
        self.events.off(event_name, handler)

    def dispatch(self, event_name: str, event: Any) -> None:
        self.events.dispatch(str(event_name), event)

    async def wait_for_next(self, event_name: str, timeout: Optional[float] = None) -> Any:
        return await self.events.wait_for_next(str(event_name), timeout=timeout)

    # ---------------------------
    # Setup
    # ---------------------------

    def _reset_config(self) -> None:
        """
        Reset session configuration, tool registry and input audio.
        """
        self._session_created.clear()
        self.tools = {}
        self.session_config = copy.deepcopy(self.default_session_config)
        self.input_audio_buffer = empty_audio()

    @staticmethod
    def _load_session_config_from_yaml(path: str) -> Dict[str, Any]:
        with open(path, "r", encoding="utf-8") as f:
            config_from_yaml = yaml.safe_load(f) or {}
        if not isinstance(config_from_yaml, dict):
            raise ValueError(f"Session config YAML must be a mapping: {path}")
        logger.info(f"Loaded session config from {path}")
        return config_from_yaml

    def _add_api_event_handlers(self) -> None:
        """
        Attach handlers to RealtimeAPI for conversation updates.
        """
        self.realtime.on("client.*", functools.partial(self._log_event, "client"))
        self.realtime.on("server.*", functools.partial(self._log_event, "server"))
        self.realtime.on("close", self._on_close)
        self.realtime.on(f"server.{ServerEventType.SESSION_CREATED}", self._on_session_created)

        for event_type in (
            ServerEventType.RESPONSE_CREATED,
            ServerEventType.RESPONSE_DONE,
            ServerEventType.RESPONSE_OUTPUT_ITEM_ADDED,
            ServerEventType.RESPONSE_CONTENT_PART_ADDED,
        ):
            self.realtime.on(f"server.{event_type}", self._process_event)

        for event_type in (
            ServerEventType.CONVERSATION_ITEM_TRUNCATED,
            ServerEventType.CONVERSATION_ITEM_DELETED,
            ServerEventType.RESPONSE_AUDIO_TRANSCRIPT_DELTA,
            ServerEventType.RESPONSE_AUDIO_DELTA,
            ServerEventType.RESPONSE_TEXT_DELTA,
            ServerEventType.RESPONSE_FUNCTION_CALL_ARGUMENTS_DELTA,
        ):
            self.realtime.on(f"server.{event_type}", self._process_event_with_dispatch)

        self.realtime.on(
            f"server.{ServerEventType.CONVERSATION_ITEM_INPUT_AUDIO_TRANSCRIPTION_COMPLETED}",
            self._on_transcription_completed,
        )
        self.realtime.on(f"server.{ServerEventType.INPUT_AUDIO_BUFFER_SPEECH_STARTED}", self._on_speech_started)
        self.realtime.on(f"server.{ServerEventType.INPUT_AUDIO_BUFFER_SPEECH_STOPPED}", self._on_speech_stopped)
        self.realtime.on(f"server.{ServerEventType.CONVERSATION_ITEM_CREATED}", self._on_item_created)
        self.realtime.on(f"server.{ServerEventType.RESPONSE_OUTPUT_ITEM_DONE}", self._on_output_item_done)

    # ---------------------------
    # Server event handlers
    # ---------------------------

    def _log_event(self, source: str, event: Dict[str, Any]) -> None:
        realtime_event = {
            "time": datetime.now(timezone.utc).isoformat(),
            "source": source,
            "event": event,
        }
        self.dispatch(Notification.REALTIME_EVENT, realtime_event)

    def _on_close(self, event: Dict[str, Any]) -> None:
        self._session_created.clear()
        if event.get("error"):
            logger.error("Realtime connection closed with an error.")
        self.dispatch(Notification.CLOSE, event)

    def _on_session_created(self, event: Dict[str, Any]) -> None:
        self._session_created.set()

    def _process_event(self, event: Dict[str, Any], *args: Any) -> EventResult:
        return self.conversation.process_event(event, *args)

    def _process_event_with_dispatch(self, event: Dict[str, Any], *args: Any) -> EventResult:
        result = self._process_event(event, *args)
        # Transcripts can precede item creation, leaving no item to report yet
        if result.item is not None:
            self.dispatch(Notification.CONVERSATION_UPDATED, {"item": result.item, "delta": result.delta})
        return result

    def _on_transcription_completed(self, event: Dict[str, Any]) -> None:
        result = self._process_event_with_dispatch(event)
        self.dispatch(
            Notification.INPUT_AUDIO_TRANSCRIPTION_COMPLETED,
            {"item": result.item, "delta": result.delta},
        )

    def _on_speech_started(self, event: Dict[str, Any]) -> None:
        in_progress = self.conversation.has_response_in_progress()
        self._process_event(event)
        if in_progress:
            self.dispatch(Notification.CONVERSATION_INTERRUPTED, event)

    def _on_speech_stopped(self, event: Dict[str, Any]) -> None:
        self._process_event(event, self.input_audio_buffer)

    def _on_item_created(self, event: Dict[str, Any]) -> None:
        item_id = (event.get("item") or {}).get("id")
        is_replay = bool(item_id) and self.conversation.get_item(item_id) is not None

        result = self._process_event_with_dispatch(event)
        if is_replay:
            return
        item = result.item
        self.dispatch(Notification.ITEM_APPENDED, {"item": item})
        if item.get("status") == "completed":
            self.dispatch(Notification.ITEM_COMPLETED, {"item": item})

    def _on_output_item_done(self, event: Dict[str, Any]) -> None:
        item_id = (event.get("item") or {}).get("id")
        previous = self.conversation.get_item(item_id) if item_id else None
        previous_status = previous.get("status") if previous else None

        result = self._process_event_with_dispatch(event)
        item = result.item
        if item.get("status") == "completed" and previous_status != "completed":
            self.dispatch(Notification.ITEM_COMPLETED, {"item": item})

        tool = item["formatted"].get("tool")
        if tool and not self.relay and previous_status != "completed":
            task = asyncio.create_task(self._call_tool(tool))
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)

    async def _call_tool(self, tool: Dict[str, Any]) -> None:
        """
        Execute a registered tool with the parsed arguments and send its output.

        Failures become a ``{"error": ...}`` output; the session carries on.
        """
        with tracer.start_as_current_span("realtime.tool_call") as span:
            span.set_attribute("realtime.tool.name", tool.get("name") or "")
            span.set_attribute("realtime.tool.call_id", tool.get("call_id") or "")
            try:
                logger.info(f"Calling tool {tool['name']} with arguments: {tool['arguments']}")
                json_arguments = json.loads(tool["arguments"] or "{}")
                if not isinstance(json_arguments, dict):
                    raise ValueError("Tool arguments must be a JSON object.")

                tool_config = self.tools.get(tool["name"])
                if not tool_config:
                    raise ToolError(f"Tool '{tool['name']}' has not been added.")

                result = tool_config["handler"](**json_arguments)
                if inspect.isawaitable(result):
                    result = await result
                output = json.dumps(result)
            except Exception as e:
                logger.error(f"Tool '{tool.get('name')}' failed: {e}", exc_info=True)
                span.record_exception(e)
                output = json.dumps({"error": str(e)})
                self.dispatch(
                    Notification.TOOL_CALL_ERROR,
                    {"error": str(e), "tool": tool.get("name")},
                )

        try:
            await self.realtime.send(
                ClientEventType.CONVERSATION_ITEM_CREATE,
                {
                    "item": {
                        "type": "function_call_output",
                        "call_id": tool["call_id"],
                        "output": output,
                    }
                },
            )
            await self.create_response()
        except Exception as e:
            logger.error(f"Could not deliver output of tool '{tool.get('name')}': {e}")

    # ---------------------------
    # Connection
    # ---------------------------

    def is_connected(self) -> bool:
        return self.realtime.is_connected()

    async def connect(self) -> None:
        """
        Connect to the Realtime API and push the session configuration.
        A no-op when already connected.
        """
        if self.is_connected():
            return
        await self.realtime.connect()
        if not self.relay:
            await self.update_session()

    async def wait_for_session_created(self, timeout: Optional[float] = None) -> None:
        """
        Wait until the service reports ``session.created``.

        Raises:
            RealtimeNotConnectedError: If not connected.
            asyncio.TimeoutError: If the timeout elapses first.
        """
        if not self.is_connected():
            raise RealtimeNotConnectedError("Not connected, use connect() first.")
        await asyncio.wait_for(self._session_created.wait(), timeout=timeout)

    async def disconnect(self) -> None:
        """
        Disconnect the client and clear the conversation state.
        """
        self._session_created.clear()
        await self.realtime.disconnect()
        self.conversation.clear()

    async def reset(self) -> None:
        """
        Disconnect, drop all handlers and restore the default configuration.
        """
        await self.disconnect()
        self.events.clear_event_handlers()
        self.realtime.clear_event_handlers()
        self._reset_config()
        self._add_api_event_handlers()

    # ---------------------------
    # Session & tools
    # ---------------------------

    def get_turn_detection_type(self) -> Optional[str]:
        turn_detection = self.session_config.get("turn_detection")
        return turn_detection.get("type") if turn_detection else None

    async def add_tool(self, definition: Dict[str, Any], handler: ToolHandler) -> Dict[str, Any]:
        """
        Register a tool; a later registration with the same name replaces the earlier one.
        """
        if self.relay:
            raise RelayModeError("Unable to add tools in relay mode.")
        if not definition or not definition.get("name"):
            raise ToolError("Missing tool name in definition.")
        name = definition["name"]
        if not callable(handler):
            raise ToolError(f"Tool '{name}' handler must be callable.")

        if name in self.tools:
            logger.info(f"Replacing existing tool '{name}'.")
        tools = dict(self.tools)
        tools[name] = {"definition": definition, "handler": handler}
        await self._apply_session(tools)
        return self.tools[name]

    async def remove_tool(self, name: str) -> None:
        if self.relay:
            raise RelayModeError("Unable to remove tools in relay mode.")
        if name not in self.tools:
            raise ToolError(f"Tool '{name}' does not exist, can not be removed.")
        tools = {k: v for k, v in self.tools.items() if k != name}
        await self._apply_session(tools)

    async def update_session(self, **kwargs: Any) -> Dict[str, Any]:
        """
        Deep-merge configuration changes, recompute the tool catalog and push
        the session to the service when connected.

        Raises:
            RelayModeError: In relay mode.
            pydantic.ValidationError: If the merged configuration is invalid.
        """
        if self.relay:
            raise RelayModeError("Unable to update the session in relay mode.")
        return await self._apply_session(self.tools, **kwargs)

    async def _apply_session(self, tools: Dict[str, Dict[str, Any]], **kwargs: Any) -> Dict[str, Any]:
        # Registry and config are committed together, only once validation passes
        merged = deep_merge(self.session_config, kwargs)
        merged["tools"] = [{**tool["definition"], "type": "function"} for tool in tools.values()]
        validate_session_config(merged)
        self.tools = tools
        self.session_config = merged

        if self.is_connected():
            await self.realtime.send(ClientEventType.SESSION_UPDATE, {"session": copy.deepcopy(merged)})
        return copy.deepcopy(merged)

    # ---------------------------
    # Conversation actions
    # ---------------------------

    async def send_user_message_content(self, content: List[Dict[str, Any]]) -> None:
        """
        Send user message content (text and/or audio) and request a response.
        """
        if content:
            parts = []
            for c in content:
                part = dict(c)
                if part.get("type") == "input_audio" and not isinstance(part.get("audio"), str):
                    part["audio"] = array_buffer_to_base64(part["audio"])
                parts.append(part)

            await self.realtime.send(
                ClientEventType.CONVERSATION_ITEM_CREATE,
                {"item": {"type": "message", "role": "user", "content": parts}},
            )
        await self.create_response()

    async def append_input_audio(self, array_buffer: Any) -> bool:
        """
        Stream user audio to the service and keep a local copy.

        Args:
            array_buffer: int16/float32 samples or raw PCM16 bytes.
        """
        samples = to_int16_array(array_buffer)
        if len(samples) == 0:
            return False

        await self.realtime.send(
            ClientEventType.INPUT_AUDIO_BUFFER_APPEND,
            {"audio": array_buffer_to_base64(samples)},
        )
        self.input_audio_buffer = merge_int16_arrays(self.input_audio_buffer, samples)
        return True

    async def create_response(self) -> None:
        """
        Force a response. Without server VAD, pending input audio is committed
        first and attached to the resulting user item.
        """
        if self.get_turn_detection_type() is None and len(self.input_audio_buffer) > 0:
            await self.realtime.send(ClientEventType.INPUT_AUDIO_BUFFER_COMMIT)
            self.conversation.queue_input_audio(self.input_audio_buffer)
            self.input_audio_buffer = empty_audio()
        await self.realtime.send(ClientEventType.RESPONSE_CREATE)

    async def cancel_response(self, item_id: Optional[str] = None, sample_count: int = 0) -> Optional[Dict[str, Any]]:
        """
        Cancel the in-flight response, optionally truncating an assistant
        item's audio at the number of samples already played.

        Args:
            item_id (Optional[str]): Assistant message to truncate.
            sample_count (int): Samples played so far.

        Returns:
            The item snapshot when truncating, else None.
        """
        if not item_id:
            await self.realtime.send(ClientEventType.RESPONSE_CANCEL)
            return None

        item = self.conversation.get_item(item_id)
        if not item:
            raise ItemNotFoundError(item_id, "cancel_response")
        if item.get("type") != "message":
            raise ConversationError('Can only cancel_response messages with type "message".')
        if item.get("role") != "assistant":
            raise ConversationError('Can only cancel_response messages with role "assistant".')

        audio_index = next(
            (i for i, c in enumerate(item.get("content") or []) if c.get("type") == "audio"), -1
        )
        if audio_index == -1:
            raise ConversationError("Could not find audio on item to cancel.")

        await self.realtime.send(ClientEventType.RESPONSE_CANCEL)
        await self.realtime.send(
            ClientEventType.CONVERSATION_ITEM_TRUNCATE,
            {
                "item_id": item_id,
                "content_index": audio_index,
                "audio_end_ms": samples_to_ms(sample_count, self.conversation.frequency),
            },
        )
        return item

    async def delete_item(self, item_id: str) -> None:
        await self.realtime.send(ClientEventType.CONVERSATION_ITEM_DELETE, {"item_id": item_id})

    async def wait_for_next_item(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        event = await self.wait_for_next(Notification.ITEM_APPENDED, timeout=timeout)
        return event["item"] if event else None

    async def wait_for_next_completed_item(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        event = await self.wait_for_next(Notification.ITEM_COMPLETED, timeout=timeout)
        return event["item"] if event else None
