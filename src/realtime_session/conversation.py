"""
RealtimeConversation reconstructs the conversation state (items, responses,
audio and transcripts) from the stream of Realtime API server events.
"""

import copy
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import numpy as np

from src.realtime_session.errors import (
    ConversationError,
    ItemNotFoundError,
    ResponseNotFoundError,
    UnknownEventError,
)
from src.realtime_session.events import ServerEventType
from src.realtime_session.settings import DEFAULT_SAMPLE_RATE
from src.realtime_session.utils import (
    base64_to_int16,
    empty_audio,
    merge_int16_arrays,
    ms_to_samples,
    to_int16_array,
)
from utils.ml_logging import get_logger

logger = get_logger(__name__)


class EventResult(NamedTuple):
    """Outcome of applying one server event: snapshots of what changed."""

    item: Optional[Dict[str, Any]] = None
    delta: Optional[Dict[str, Any]] = None
    response: Optional[Dict[str, Any]] = None


def _readonly(audio: np.ndarray) -> np.ndarray:
    if audio.flags.writeable:
        audio = audio.copy()
        audio.flags.writeable = False
    return audio


class RealtimeConversation:
    """
    In-memory conversation store driven by server events.

    Items and responses are kept as an append-ordered list plus an id lookup.
    Each item's formatted projection (flattened text, transcript, PCM16 audio,
    tool call, output) lives in a separate map keyed by item id and is merged
    in under ``formatted`` only when a snapshot leaves this class.
    """

    default_frequency: int = DEFAULT_SAMPLE_RATE

    def __init__(self, frequency: Optional[int] = None) -> None:
        frequency = self.default_frequency if frequency is None else frequency
        if frequency <= 0:
            raise ValueError(f"Invalid frequency: {frequency}")
        self.frequency: int = frequency

        self.EventProcessors: Dict[str, Callable[..., EventResult]] = {
            ServerEventType.CONVERSATION_ITEM_CREATED.value: self._process_item_created,
            ServerEventType.CONVERSATION_ITEM_TRUNCATED.value: self._process_item_truncated,
            ServerEventType.CONVERSATION_ITEM_DELETED.value: self._process_item_deleted,
            ServerEventType.CONVERSATION_ITEM_INPUT_AUDIO_TRANSCRIPTION_COMPLETED.value: self._process_input_audio_transcription_completed,
            ServerEventType.INPUT_AUDIO_BUFFER_SPEECH_STARTED.value: self._process_speech_started,
            ServerEventType.INPUT_AUDIO_BUFFER_SPEECH_STOPPED.value: self._process_speech_stopped,
            ServerEventType.RESPONSE_CREATED.value: self._process_response_created,
            ServerEventType.RESPONSE_DONE.value: self._process_response_done,
            ServerEventType.RESPONSE_OUTPUT_ITEM_ADDED.value: self._process_output_item_added,
            ServerEventType.RESPONSE_OUTPUT_ITEM_DONE.value: self._process_output_item_done,
            ServerEventType.RESPONSE_CONTENT_PART_ADDED.value: self._process_content_part_added,
            ServerEventType.RESPONSE_AUDIO_TRANSCRIPT_DELTA.value: self._process_audio_transcript_delta,
            ServerEventType.RESPONSE_AUDIO_DELTA.value: self._process_audio_delta,
            ServerEventType.RESPONSE_TEXT_DELTA.value: self._process_text_delta,
            ServerEventType.RESPONSE_FUNCTION_CALL_ARGUMENTS_DELTA.value: self._process_function_call_arguments_delta,
        }
        self.clear()

    def clear(self) -> None:
        """
        Reset the conversation state, clearing all items, responses, and queued data.
        """
        self.item_lookup: Dict[str, Dict[str, Any]] = {}
        self.items: List[Dict[str, Any]] = []
        self.formatted_lookup: Dict[str, Dict[str, Any]] = {}
        self.response_lookup: Dict[str, Dict[str, Any]] = {}
        self.responses: List[Dict[str, Any]] = []
        self.queued_speech_items: Dict[str, Dict[str, Any]] = {}
        self.queued_transcript_items: Dict[str, Dict[str, str]] = {}
        self.queued_input_audio: Optional[np.ndarray] = None

    def queue_input_audio(self, input_audio: Any) -> None:
        """
        Hold manually committed input audio for the next user message item.

        Args:
            input_audio: PCM16 samples or raw bytes.
        """
        self.queued_input_audio = _readonly(np.array(to_int16_array(input_audio), dtype=np.int16))

    def process_event(self, event: Dict[str, Any], *args: Any) -> EventResult:
        """
        Apply a server event to the conversation state.

        Args:
            event (Dict[str, Any]): Incoming event containing type and data.
            *args (Any): Extra context, e.g. the rolling input audio buffer
                for ``input_audio_buffer.speech_stopped``.

        Returns:
            EventResult: Snapshots of the affected item, delta and response.

        Raises:
            ConversationError: If the event is malformed or references an
                unknown item or response. State is left unchanged.
        """
        if not event.get("event_id"):
            raise ConversationError('Missing "event_id" on event')
        if not event.get("type"):
            raise ConversationError('Missing "type" on event')

        event_type = str(event["type"])
        event_processor = self.EventProcessors.get(event_type)
        if not event_processor:
            raise UnknownEventError(f'Missing conversation event processor for "{event_type}"')

        try:
            return event_processor(event, *args)
        except KeyError as e:
            raise ConversationError(f'{event_type}: missing field {e} on event') from e

    # ---------------------------
    # Read-only views
    # ---------------------------

    def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a snapshot of an item by its unique ID.
        """
        if item_id not in self.item_lookup:
            return None
        return self._snapshot(item_id)

    def get_items(self) -> List[Dict[str, Any]]:
        """
        Snapshots of all items in conversation order.
        """
        return [self._snapshot(item["id"]) for item in self.items]

    def get_response(self, response_id: str) -> Optional[Dict[str, Any]]:
        """
        Snapshot of a response with its output ids resolved to current item
        snapshots. Items deleted since are left out.
        """
        response = self.response_lookup.get(response_id)
        if response is None:
            return None
        snapshot = copy.deepcopy(response)
        snapshot["output"] = [
            self._snapshot(item_id) for item_id in response["output"] if item_id in self.item_lookup
        ]
        return snapshot

    def get_responses(self) -> List[Dict[str, Any]]:
        return [self.get_response(r["id"]) for r in self.responses]

    def has_response_in_progress(self) -> bool:
        return any(r.get("status") == "in_progress" for r in self.responses)

    def _snapshot(self, item_id: str) -> Dict[str, Any]:
        formatted = self.formatted_lookup[item_id]
        # Formatted audio is read-only and replaced on change, so it is shared
        memo = {id(formatted["audio"]): formatted["audio"]}
        snapshot = copy.deepcopy(self.item_lookup[item_id], memo)
        snapshot["formatted"] = copy.deepcopy(formatted, memo)
        return snapshot

    def _require_item(self, item_id: str, context: str) -> Dict[str, Any]:
        item = self.item_lookup.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id, context)
        return item

    @staticmethod
    def _content_part(item: Dict[str, Any], content_index: int, context: str) -> Dict[str, Any]:
        content = item.get("content") or []
        if not 0 <= content_index < len(content):
            raise ConversationError(
                f'{context}: content index {content_index} out of range for item "{item["id"]}"'
            )
        return content[content_index]

    # ---------------------------
    # Event Processors
    # ---------------------------

    def _process_item_created(self, event: Dict[str, Any]) -> EventResult:
        new_item = copy.deepcopy(event["item"])
        item_id = new_item["id"]

        if item_id in self.item_lookup:
            logger.debug(f'Item "{item_id}" already exists; ignoring replayed creation.')
            return EventResult(item=self._snapshot(item_id))

        formatted: Dict[str, Any] = {"audio": empty_audio(), "text": "", "transcript": ""}

        speech = self.queued_speech_items.get(item_id)
        if speech is not None and speech.get("audio") is not None:
            formatted["audio"] = speech["audio"]
            del self.queued_speech_items[item_id]

        for content in new_item.get("content") or []:
            if content.get("type") in ("text", "input_text"):
                formatted["text"] += content.get("text") or ""

        if item_id in self.queued_transcript_items:
            formatted["transcript"] = self.queued_transcript_items.pop(item_id)["transcript"]

        item_type = new_item.get("type")
        if item_type == "message":
            if new_item.get("role") == "user":
                new_item["status"] = "completed"
                if self.queued_input_audio is not None:
                    formatted["audio"] = self.queued_input_audio
                    self.queued_input_audio = None
            else:
                new_item["status"] = "in_progress"
        elif item_type == "function_call":
            new_item.setdefault("arguments", "")
            new_item["status"] = "in_progress"
            formatted["tool"] = {
                "type": "function",
                "name": new_item.get("name"),
                "call_id": new_item.get("call_id"),
                "arguments": "",
            }
        elif item_type == "function_call_output":
            new_item["status"] = "completed"
            formatted["output"] = new_item.get("output")

        self.item_lookup[item_id] = new_item
        self.items.append(new_item)
        self.formatted_lookup[item_id] = formatted

        return EventResult(item=self._snapshot(item_id))

    def _process_item_truncated(self, event: Dict[str, Any]) -> EventResult:
        item_id = event["item_id"]
        audio_end_ms = event["audio_end_ms"]
        self._require_item(item_id, "item.truncated")

        formatted = self.formatted_lookup[item_id]
        end_index = ms_to_samples(audio_end_ms, self.frequency)
        formatted["audio"] = _readonly(formatted["audio"][:end_index])
        formatted["transcript"] = ""

        return EventResult(item=self._snapshot(item_id))

    def _process_item_deleted(self, event: Dict[str, Any]) -> EventResult:
        item_id = event["item_id"]
        self._require_item(item_id, "item.deleted")

        snapshot = self._snapshot(item_id)
        item = self.item_lookup.pop(item_id)
        del self.formatted_lookup[item_id]
        self.items = [i for i in self.items if i is not item]

        return EventResult(item=snapshot)

    def _process_input_audio_transcription_completed(self, event: Dict[str, Any]) -> EventResult:
        item_id = event["item_id"]
        content_index = event["content_index"]
        transcript = event.get("transcript") or ""
        # A single space marks "transcribed, but empty" in the formatted view
        formatted_transcript = transcript or " "

        item = self.item_lookup.get(item_id)
        if item is None:
            # In VAD mode the transcript can beat conversation.item.created
            self.queued_transcript_items[item_id] = {"transcript": formatted_transcript}
            return EventResult()

        content = item.get("content") or []
        if 0 <= content_index < len(content):
            content[content_index]["transcript"] = transcript
        self.formatted_lookup[item_id]["transcript"] = formatted_transcript

        return EventResult(item=self._snapshot(item_id), delta={"transcript": transcript})

    def _process_speech_started(self, event: Dict[str, Any]) -> EventResult:
        item_id = event["item_id"]
        self.queued_speech_items[item_id] = {"audio_start_ms": event["audio_start_ms"]}
        return EventResult(item=self.get_item(item_id))

    def _process_speech_stopped(
        self, event: Dict[str, Any], input_audio_buffer: Optional[Any] = None
    ) -> EventResult:
        item_id = event["item_id"]
        audio_end_ms = event["audio_end_ms"]

        speech = self.queued_speech_items.get(item_id)
        if speech is None:
            # TODO: surface stop-without-start to callers once the service
            # documents whether it can legitimately happen.
            logger.warning(
                f'speech_stopped for "{item_id}" without speech_started; using a zero-length segment.'
            )
            speech = {"audio_start_ms": audio_end_ms}
            self.queued_speech_items[item_id] = speech

        speech["audio_end_ms"] = audio_end_ms

        if input_audio_buffer is not None:
            samples = to_int16_array(input_audio_buffer)
            start_index = ms_to_samples(speech["audio_start_ms"], self.frequency)
            end_index = ms_to_samples(audio_end_ms, self.frequency)
            speech["audio"] = _readonly(np.array(samples[start_index:end_index], dtype=np.int16))

        return EventResult(item=self.get_item(item_id))

    def _process_response_created(self, event: Dict[str, Any]) -> EventResult:
        response = copy.deepcopy(event["response"])
        response_id = response["id"]

        if response_id not in self.response_lookup:
            # Output is tracked by item id
            response["output"] = [
                o["id"] if isinstance(o, dict) else o for o in response.get("output") or []
            ]
            self.response_lookup[response_id] = response
            self.responses.append(response)

        return EventResult(response=self.get_response(response_id))

    def _process_response_done(self, event: Dict[str, Any]) -> EventResult:
        final = event["response"]
        response_id = final["id"]
        response = self.response_lookup.get(response_id)
        if response is None:
            raise ResponseNotFoundError(response_id, "response.done")

        response["status"] = final.get("status", response.get("status"))
        for key in ("status_details", "usage"):
            if final.get(key) is not None:
                response[key] = copy.deepcopy(final[key])

        return EventResult(response=self.get_response(response_id))

    def _process_output_item_added(self, event: Dict[str, Any]) -> EventResult:
        response_id = event["response_id"]
        item = event["item"]

        response = self.response_lookup.get(response_id)
        if response is None:
            raise ResponseNotFoundError(response_id, "response.output_item.added")

        if item["id"] not in response["output"]:
            response["output"].append(item["id"])
        return EventResult(item=self.get_item(item["id"]), response=self.get_response(response_id))

    def _process_output_item_done(self, event: Dict[str, Any]) -> EventResult:
        item = event.get("item")
        if not item:
            raise ConversationError('response.output_item.done: Missing "item"')

        found_item = self._require_item(item["id"], "response.output_item.done")
        found_item["status"] = item.get("status", found_item.get("status"))

        formatted = self.formatted_lookup[item["id"]]
        tool = formatted.get("tool")
        if tool is not None and not tool["arguments"] and item.get("arguments"):
            # Arguments delivered whole without streamed deltas
            tool["arguments"] = item["arguments"]
            found_item["arguments"] = item["arguments"]

        return EventResult(item=self._snapshot(item["id"]))

    def _process_content_part_added(self, event: Dict[str, Any]) -> EventResult:
        item_id = event["item_id"]
        part = event["part"]

        item = self._require_item(item_id, "response.content_part.added")
        item.setdefault("content", []).append(copy.deepcopy(part))
        return EventResult(item=self._snapshot(item_id))

    def _process_audio_transcript_delta(self, event: Dict[str, Any]) -> EventResult:
        item_id = event["item_id"]
        delta = event["delta"]

        item = self._require_item(item_id, "response.audio_transcript.delta")
        part = self._content_part(item, event["content_index"], "response.audio_transcript.delta")

        part["transcript"] = (part.get("transcript") or "") + delta
        self.formatted_lookup[item_id]["transcript"] += delta

        return EventResult(item=self._snapshot(item_id), delta={"transcript": delta})

    def _process_audio_delta(self, event: Dict[str, Any]) -> EventResult:
        item_id = event["item_id"]
        self._require_item(item_id, "response.audio.delta")

        # Only the formatted view carries audio; base64 chunks are not re-joined
        append_values = base64_to_int16(event["delta"])
        formatted = self.formatted_lookup[item_id]
        formatted["audio"] = merge_int16_arrays(formatted["audio"], append_values)

        return EventResult(item=self._snapshot(item_id), delta={"audio": append_values})

    def _process_text_delta(self, event: Dict[str, Any]) -> EventResult:
        item_id = event["item_id"]
        delta = event["delta"]

        item = self._require_item(item_id, "response.text.delta")
        part = self._content_part(item, event["content_index"], "response.text.delta")

        part["text"] = (part.get("text") or "") + delta
        self.formatted_lookup[item_id]["text"] += delta

        return EventResult(item=self._snapshot(item_id), delta={"text": delta})

    def _process_function_call_arguments_delta(self, event: Dict[str, Any]) -> EventResult:
        item_id = event["item_id"]
        delta = event["delta"]

        item = self._require_item(item_id, "response.function_call_arguments.delta")
        tool = self.formatted_lookup[item_id].get("tool")
        if tool is None:
            raise ConversationError(
                f'response.function_call_arguments.delta: Item "{item_id}" is not a function call'
            )

        item["arguments"] = (item.get("arguments") or "") + delta
        tool["arguments"] += delta

        return EventResult(item=self._snapshot(item_id), delta={"arguments": delta})
