"""Driver attention state machine.

The machine is the only writer of :class:`DriverState`. Everything else asks
for a transition through one of the ``request_*`` methods and learns about the
outcome through subscribed listeners. Requests that do not apply to the
current state are ignored, never queued.
"""

from __future__ import annotations

from typing import Callable, List, Optional

from common.log import emit
from common.types import DriverState

Listener = Callable[[DriverState, DriverState], None]


class DriverAttentionStateMachine:
    def __init__(self, on_drowsy: Optional[Callable[[], None]] = None) -> None:
        self._state = DriverState.MONITORING
        self._on_drowsy = on_drowsy
        self._listeners: List[Listener] = []

    @property
    def state(self) -> DriverState:
        return self._state

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def request_drowsy(self) -> bool:
        """MONITORING -> DROWSY -> ENGAGED, starting the companion session.

        The session start hook runs between the two transitions. If it
        raises, the machine falls back to MONITORING.
        """

        if self._state is not DriverState.MONITORING:
            return False
        self._set(DriverState.DROWSY, "drowsy")
        if self._on_drowsy is not None:
            try:
                self._on_drowsy()
            except Exception as exc:
                emit("driver.error", error=repr(exc), during="session_start")
                self._set(DriverState.MONITORING, "session_start_failed")
                return False
        self._set(DriverState.ENGAGED, "session_started")
        return True

    def request_unresponsive(self) -> bool:
        if self._state is not DriverState.MONITORING:
            return False
        self._set(DriverState.UNRESPONSIVE, "unresponsive")
        return True

    def emergency_resolved(self, reason: str = "resolved") -> bool:
        """UNRESPONSIVE -> MONITORING after expiry or acknowledgement."""

        if self._state is not DriverState.UNRESPONSIVE:
            return False
        self._set(DriverState.MONITORING, reason)
        return True

    def conversation_ended(self, reason: str = "session_closed") -> bool:
        if self._state is not DriverState.ENGAGED:
            return False
        self._set(DriverState.MONITORING, reason)
        return True

    def _set(self, new: DriverState, reason: str) -> None:
        old = self._state
        self._state = new
        emit("driver.state", old=old.value, new=new.value, reason=reason)
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception as exc:
                emit("driver.error", error=repr(exc), during="listener")
