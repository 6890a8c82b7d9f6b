"""Emergency escalation countdown.

Started when the driver becomes unresponsive. ``tick`` is driven once per
second by a periodic task; tests call it directly. Expiry and cancellation
both go through :meth:`_finish`, which only lets the first caller act.
"""

from __future__ import annotations

from typing import Callable, Optional, Protocol

from common.log import emit
from common.types import EmergencyCountdown, Location

COUNTDOWN_SECONDS = 15
ACK_TEXT = "I'm okay."


class EmergencyNotifier(Protocol):
    def __call__(self, contact: Optional[str], location: Optional[Location]) -> None: ...


def log_notifier(contact: Optional[str], location: Optional[Location]) -> None:
    """Default sink: record the alert as an event line."""
    emit("emergency.notify", contact=contact,
         location=location.model_dump() if location is not None else None)


class EmergencyEscalationTimer:
    def __init__(self, notify: EmergencyNotifier = log_notifier,
                 contact: Optional[str] = None,
                 location: Callable[[], Optional[Location]] = lambda: None,
                 seconds: int = COUNTDOWN_SECONDS,
                 on_expired: Optional[Callable[[], None]] = None,
                 on_cancelled: Optional[Callable[[], None]] = None) -> None:
        self._notify = notify
        self._contact = contact
        self._location = location
        self.seconds = seconds
        self.on_expired = on_expired
        self.on_cancelled = on_cancelled
        self.countdown: Optional[EmergencyCountdown] = None
        self.notifications = 0

    @property
    def active(self) -> bool:
        return self.countdown is not None

    def start(self) -> bool:
        """Begin a countdown; a no-op while one is already running."""

        if self.countdown is not None:
            return False
        self.countdown = EmergencyCountdown(active=True, seconds_remaining=self.seconds)
        emit("emergency.start", seconds=self.seconds)
        return True

    def tick(self) -> None:
        if self.countdown is None:
            return
        self.countdown.seconds_remaining -= 1
        emit("emergency.tick", remaining=self.countdown.seconds_remaining)
        if self.countdown.seconds_remaining <= 0 and self._finish():
            try:
                self._notify(self._contact, self._location())
                self.notifications += 1
            except Exception as exc:
                emit("emergency.error", error=repr(exc))
            if self.on_expired is not None:
                self.on_expired()

    def cancel(self) -> bool:
        """Driver acknowledged; stop without notifying anyone."""

        if not self._finish():
            return False
        emit("emergency.cancel", text=ACK_TEXT)
        if self.on_cancelled is not None:
            self.on_cancelled()
        return True

    def _finish(self) -> bool:
        if self.countdown is None:
            return False
        self.countdown = None
        return True
