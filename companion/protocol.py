"""Live voice agent wire format.

Client messages are built as plain dicts. Server messages are validated into
:class:`ServerMessage`; anything the agent adds that we do not use is
ignored.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from audio.pcm import b64_encode
from common.types import ToolResult

INPUT_MIME = "audio/pcm;rate=16000"


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Transcription(_Wire):
    text: str = ""


class InlineData(_Wire):
    mime_type: str = Field(default="", alias="mimeType")
    data: str


class Part(_Wire):
    text: Optional[str] = None
    inline_data: Optional[InlineData] = Field(default=None, alias="inlineData")


class ModelTurn(_Wire):
    parts: List[Part] = Field(default_factory=list)


class ServerContent(_Wire):
    model_turn: Optional[ModelTurn] = Field(default=None, alias="modelTurn")
    input_transcription: Optional[Transcription] = Field(default=None, alias="inputTranscription")
    output_transcription: Optional[Transcription] = Field(default=None, alias="outputTranscription")
    turn_complete: bool = Field(default=False, alias="turnComplete")


class ToolCallBatch(_Wire):
    """Calls stay raw here so one bad call cannot sink its siblings."""

    function_calls: List[Any] = Field(default_factory=list, alias="functionCalls")


class ServerMessage(_Wire):
    setup_complete: Optional[Dict[str, Any]] = Field(default=None, alias="setupComplete")
    server_content: Optional[ServerContent] = Field(default=None, alias="serverContent")
    tool_call: Optional[ToolCallBatch] = Field(default=None, alias="toolCall")
    go_away: Optional[Dict[str, Any]] = Field(default=None, alias="goAway")

    @property
    def audio_chunks(self) -> List[str]:
        if self.server_content is None or self.server_content.model_turn is None:
            return []
        return [p.inline_data.data for p in self.server_content.model_turn.parts
                if p.inline_data is not None and p.inline_data.data]


def parse_server_message(raw: Union[str, bytes]) -> ServerMessage:
    """Decode one frame; raises ``ValueError`` (incl. ``ValidationError``)."""

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("server message is not an object")
    return ServerMessage.model_validate(payload)


def setup_message(model: str, voice: str, system_instruction: str,
                  function_declarations: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "setup": {
            "model": model,
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}}},
            },
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "tools": [{"functionDeclarations": function_declarations}],
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
    }


def realtime_audio(pcm: bytes, mime_type: str = INPUT_MIME) -> Dict[str, Any]:
    return {"realtimeInput": {"mediaChunks": [{"mimeType": mime_type, "data": b64_encode(pcm)}]}}


def text_input(text: str) -> Dict[str, Any]:
    return {
        "clientContent": {
            "turns": [{"role": "user", "parts": [{"text": text}]}],
            "turnComplete": True,
        }
    }


def tool_response(result: ToolResult) -> Dict[str, Any]:
    return {
        "toolResponse": {
            "functionResponses": [
                {"id": result.id, "name": result.name, "response": {"result": result.result}}
            ]
        }
    }
