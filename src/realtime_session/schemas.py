"""
Session Configuration Schemas
=============================

Pydantic models validating the session configuration pushed with
``session.update``. Unknown keys are kept so newer service options pass
through untouched.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class InputAudioTranscription(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = Field(default="whisper-1", description="Transcription model")


class TurnDetection(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["server_vad"] = "server_vad"
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    prefix_padding_ms: Optional[int] = Field(default=None, ge=0)
    silence_duration_ms: Optional[int] = Field(default=None, ge=0)


class ToolDefinition(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["function"] = "function"
    name: str = Field(..., min_length=1)
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class SessionConfig(BaseModel):
    """
    Locally negotiated session configuration.

    ``turn_detection`` set to None disables server VAD; the caller then marks
    turns by committing the input audio buffer.
    """

    model_config = ConfigDict(extra="allow")

    modalities: List[Literal["text", "audio"]] = Field(default_factory=lambda: ["text", "audio"])
    instructions: Optional[str] = None
    voice: Optional[str] = None
    input_audio_format: Literal["pcm16", "g711_ulaw", "g711_alaw"] = "pcm16"
    output_audio_format: Literal["pcm16", "g711_ulaw", "g711_alaw"] = "pcm16"
    input_audio_transcription: Optional[InputAudioTranscription] = None
    turn_detection: Optional[TurnDetection] = None
    tools: List[ToolDefinition] = Field(default_factory=list)
    tool_choice: Union[Literal["auto", "none", "required"], Dict[str, Any]] = "auto"
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_response_output_tokens: Optional[Union[int, Literal["inf"]]] = None


def validate_session_config(config: Dict[str, Any]) -> SessionConfig:
    """Validate a merged session config dict, raising pydantic.ValidationError."""
    return SessionConfig.model_validate(config)
