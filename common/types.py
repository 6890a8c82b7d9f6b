"""Pydantic models shared across driva components.

Field aliases follow the camelCase names used by the external detector and
the voice agent wire format, so the same models validate inbound JSON.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DriverState(str, Enum):
    MONITORING = "MONITORING"
    DROWSY = "DROWSY"
    UNRESPONSIVE = "UNRESPONSIVE"
    ENGAGED = "ENGAGED"


class CompanionState(str, Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    THINKING = "THINKING"
    SPEAKING = "SPEAKING"


class Speaker(str, Enum):
    USER = "USER"
    MIRA = "MIRA"


class LandmarkPoint(BaseModel):
    """One facial feature coordinate in frame space."""

    x: float
    y: float


class DetectionSample(BaseModel):
    """One 200 ms observation from the landmark detector."""

    model_config = ConfigDict(populate_by_name=True)

    face_found: bool = Field(alias="faceFound")
    left_eye: Optional[List[LandmarkPoint]] = Field(default=None, alias="leftEye")
    right_eye: Optional[List[LandmarkPoint]] = Field(default=None, alias="rightEye")


class EmergencyCountdown(BaseModel):
    active: bool = True
    seconds_remaining: int


class ConversationTurn(BaseModel):
    """Transcript text accumulated since the last turn-complete marker."""

    input_text: str = ""
    output_text: str = ""


class TranscriptionEntry(BaseModel):
    speaker: Speaker
    text: str


class Location(BaseModel):
    latitude: float
    longitude: float


class Song(BaseModel):
    title: str
    artist: str
    album_art_url: str


class AudioFrame(BaseModel):
    """Block of signed 16-bit PCM audio."""

    id: int
    ts: float
    rms_db: float
    pcm: bytes
    sample_rate: int
    channels: int = 1


class ToolCall(BaseModel):
    id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    id: str
    name: str
    result: str
