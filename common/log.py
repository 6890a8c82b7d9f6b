"""One-line JSON event output used by every component."""

from __future__ import annotations

import json
import time
from typing import Any


def emit(topic: str, **fields: Any) -> dict[str, Any]:
    """Print a ``{"topic": ..., "ts": ...}`` event and return it."""

    msg = {"topic": topic, **fields, "ts": time.time()}
    print(json.dumps(msg, separators=(",", ":"), default=str))
    return msg
