from __future__ import annotations

from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class Latest(Generic[T]):
    """Last-value-wins slot fed by an external collaborator."""

    def __init__(self) -> None:
        self._value: Optional[T] = None

    def set(self, value: T) -> None:
        self._value = value

    def get(self) -> Optional[T]:
        return self._value

    def take(self) -> Optional[T]:
        """Return the value and clear the slot so it is consumed once."""
        value, self._value = self._value, None
        return value
