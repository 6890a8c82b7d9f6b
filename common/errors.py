"""Error taxonomy shared across driva components."""

from __future__ import annotations


class DrivaError(Exception):
    """Base class for all driva errors."""


class InvalidLandmarkSet(DrivaError):
    """Eye landmark geometry is malformed; the sample is rejected."""


class TransportError(DrivaError):
    """Session-level network or protocol failure."""


class ToolHandlerFailure(DrivaError):
    """A single tool invocation raised."""

    def __init__(self, name: str, cause: BaseException) -> None:
        super().__init__(f"{name}: {cause}")
        self.name = name
        self.cause = cause


class PermissionDenied(DrivaError):
    """Camera, microphone or location is unavailable."""
