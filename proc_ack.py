"""Steering-wheel acknowledgement button ("I'm okay")."""

from __future__ import annotations

import json
import time
from typing import Callable

from pynput import keyboard

ACK_KEY = keyboard.Key.f24


def run(on_ack: Callable[[], None]) -> keyboard.Listener:
    """Start listening for F24 presses and call ``on_ack`` for each.

    ``on_ack`` runs on the listener thread; pass something that hands off to
    the event loop.
    """

    def on_press(key: keyboard.Key | keyboard.KeyCode) -> None:  # pragma: no cover - hardware path
        if key == ACK_KEY:
            msg = {"topic": "control.ack", "ts": time.time()}
            print(json.dumps(msg, separators=(",", ":")))
            on_ack()

    listener = keyboard.Listener(on_press=on_press)
    listener.start()
    return listener
