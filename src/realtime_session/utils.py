"""
Utility functions for PCM16 audio, base64 conversion and event ids.
"""

import base64
import copy
import math
import uuid
from typing import Any, Dict, Union

import numpy as np

from utils.ml_logging import get_logger

logger = get_logger(__name__)

AudioLike = Union[np.ndarray, bytes, bytearray, memoryview]

PCM16_DTYPE = np.dtype("<i2")


def float_to_16bit_pcm(float32_array: np.ndarray) -> np.ndarray:
    """
    Convert a float32 numpy array to int16 PCM format.

    Args:
        float32_array (np.ndarray): Input array of amplitudes in [-1, 1].

    Returns:
        np.ndarray: Output array of dtype int16.
    """
    if float32_array.dtype != np.float32:
        logger.warning("Input array is not float32, attempting conversion.")
        float32_array = float32_array.astype(np.float32)

    clipped = np.clip(float32_array, -1, 1)
    # Negative samples scale to -32768, positive to 32767
    int16_array = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return int16_array.astype(np.int16)


def to_int16_array(audio: AudioLike) -> np.ndarray:
    """
    Coerce raw bytes or a numpy array into a little-endian int16 sample array.

    Float arrays are treated as amplitudes and converted with float_to_16bit_pcm.
    """
    if isinstance(audio, np.ndarray):
        if audio.dtype in (np.float32, np.float64):
            return float_to_16bit_pcm(audio.astype(np.float32, copy=False))
        if audio.dtype == np.int16:
            return audio
        if audio.dtype == np.uint8:
            return np.frombuffer(audio.tobytes(), dtype=PCM16_DTYPE).astype(np.int16)
        raise TypeError(f"Unsupported audio dtype: {audio.dtype}")

    if isinstance(audio, (bytes, bytearray, memoryview)):
        raw = bytes(audio)
        if len(raw) % 2:
            raise ValueError("PCM16 audio must contain an even number of bytes.")
        return np.frombuffer(raw, dtype=PCM16_DTYPE).astype(np.int16)

    raise TypeError(f"Unsupported audio buffer type: {type(audio).__name__}")


def base64_to_array_buffer(base64_string: str) -> np.ndarray:
    """
    Decode a base64 string into a numpy uint8 array buffer.
    """
    try:
        binary_data = base64.b64decode(base64_string)
        return np.frombuffer(binary_data, dtype=np.uint8)
    except Exception as e:
        logger.error(f"Failed to decode base64 string: {e}")
        raise


def base64_to_int16(base64_string: str) -> np.ndarray:
    """
    Decode base64 PCM16 little-endian audio into int16 samples.
    """
    return to_int16_array(base64_to_array_buffer(base64_string))


def array_buffer_to_base64(array_buffer: AudioLike) -> str:
    """
    Encode audio (int16/float32 array or raw PCM16 bytes) as base64.

    Args:
        array_buffer: Samples or raw little-endian PCM16 bytes.

    Returns:
        str: Base64-encoded string.
    """
    if isinstance(array_buffer, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(array_buffer)).decode("utf-8")
    samples = to_int16_array(array_buffer)
    return base64.b64encode(samples.astype(PCM16_DTYPE).tobytes()).decode("utf-8")


def merge_int16_arrays(left: AudioLike, right: AudioLike) -> np.ndarray:
    """
    Merge two PCM16 buffers into a single read-only int16 array.

    Raises:
        ValueError: If an ndarray input is not int16.
    """
    for side in (left, right):
        if isinstance(side, np.ndarray) and side.dtype != np.int16:
            logger.error("Attempted to merge arrays that are not int16.")
            raise ValueError("Both arrays must have dtype int16.")
    merged = np.concatenate((to_int16_array(left), to_int16_array(right)))
    merged.flags.writeable = False
    return merged


def empty_audio() -> np.ndarray:
    audio = np.zeros(0, dtype=np.int16)
    audio.flags.writeable = False
    return audio


def ms_to_samples(ms: float, frequency: int) -> int:
    """Sample index for a millisecond offset: floor(ms * frequency / 1000)."""
    return math.floor(ms * frequency / 1000)


def samples_to_ms(sample_count: int, frequency: int) -> int:
    return math.floor(sample_count / frequency * 1000)


def generate_id(prefix: str, size: int = 21) -> str:
    """
    Generate a locally unique id for outbound events.

    Args:
        prefix (str): Prefix to prepend to the ID.
        size (int): Number of random hex characters.
    """
    return f"{prefix}{uuid.uuid4().hex[:size]}"


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge ``override`` into a copy of ``base``.

    Nested dicts merge key by key; any other value (including None) replaces.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def trim_debug_event(event: Any, max_limit: int = 200) -> Any:
    """
    Copy of an event that is safe to log: audio payloads redacted, long deltas cut.
    """
    if not isinstance(event, dict):
        return event

    trimmed = dict(event)
    item = trimmed.get("item")
    if isinstance(item, dict) and isinstance(item.get("content"), list):
        item = dict(item)
        item["content"] = [
            {**part, "audio": "<base64 redacted...>"}
            if isinstance(part, dict) and part.get("audio")
            else part
            for part in item["content"]
        ]
        trimmed["item"] = item

    audio = trimmed.get("audio")
    if isinstance(audio, str) and len(audio) > max_limit:
        trimmed["audio"] = "<base64 redacted...>"

    delta = trimmed.get("delta")
    if isinstance(delta, str) and len(delta) > max_limit:
        trimmed["delta"] = delta[:max_limit] + "... (truncated)"

    return trimmed
