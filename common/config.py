"""Runtime settings read from ``DRIVA_*`` environment variables.

A JSON profile (path in ``DRIVA_PROFILE``) may override any field; keys are
the field names below. Environment variables win over the profile.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel

LIVE_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)

SYSTEM_INSTRUCTION = (
    "You are Mira, a friendly and alert AI co-passenger for a driver. Your primary "
    "goal is to keep the driver engaged and awake, especially if they seem tired. "
    "Be conversational, tell short jokes, or ask questions about their trip. You can "
    "also help with hands-free tasks like finding nearby places or playing music. "
    "Keep your responses concise and helpful."
)


class Settings(BaseModel):
    api_key: Optional[str] = None
    live_url: str = LIVE_URL
    model: str = "models/gemini-2.5-flash-native-audio-preview-09-2025"
    voice: str = "Zephyr"
    system_instruction: str = SYSTEM_INSTRUCTION
    emergency_contact: Optional[str] = None

    ear_threshold: float = 0.25
    drowsy_frames: int = 10
    unresponsive_frames: int = 25
    detect_period_s: float = 0.2
    countdown_s: int = 15
    idle_timeout_s: float = 120.0

    input_rate: int = 16000
    capture_rate: int = 16000
    capture_block: int = 4096
    output_rate: int = 24000

    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        profile = env.get("DRIVA_PROFILE")
        if profile:
            values.update(json.loads(Path(profile).read_text()))
        for name in cls.model_fields:
            raw = env.get(f"DRIVA_{name.upper()}")
            if raw is not None:
                values[name] = raw
        if "api_key" not in values and env.get("GEMINI_API_KEY"):
            values["api_key"] = env["GEMINI_API_KEY"]
        return cls.model_validate(values)
