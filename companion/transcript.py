from __future__ import annotations

from typing import Callable, List

from common.log import emit
from common.types import Speaker, TranscriptionEntry


class ConversationLog:
    """Finalized transcript entries, oldest first."""

    def __init__(self) -> None:
        self.entries: List[TranscriptionEntry] = []
        self._listeners: List[Callable[[TranscriptionEntry], None]] = []

    def subscribe(self, listener: Callable[[TranscriptionEntry], None]) -> None:
        self._listeners.append(listener)

    def append(self, speaker: Speaker, text: str) -> TranscriptionEntry:
        entry = TranscriptionEntry(speaker=speaker, text=text)
        self.entries.append(entry)
        emit("session.transcript", speaker=speaker.value, text=text)
        for listener in list(self._listeners):
            listener(entry)
        return entry
