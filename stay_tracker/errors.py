"""Exception types raised by the tracking engine and its collaborators."""

from __future__ import annotations

from typing import Final

PERMISSION_DENIED: Final[str] = "permission_denied"
LOW_ACCURACY: Final[str] = "low_accuracy"
PROVIDER_FAILURE: Final[str] = "provider_failure"
NO_RESULT: Final[str] = "no_result"
SAVE_FAILED: Final[str] = "save_failed"


class StayTrackerError(Exception):
    """Base class. `kind` names the failure within its category."""

    kinds: tuple[str, ...] = ()

    def __init__(self, kind: str, message: str = "") -> None:
        if self.kinds and kind not in self.kinds:
            raise ValueError(f"unknown {type(self).__name__} kind: {kind!r}")
        self.kind = kind
        super().__init__(message or kind)


class SensorError(StayTrackerError):
    kinds = (PERMISSION_DENIED, LOW_ACCURACY)


class ResolutionError(StayTrackerError):
    kinds = (PROVIDER_FAILURE, NO_RESULT)


class PersistenceError(StayTrackerError):
    kinds = (SAVE_FAILED,)
