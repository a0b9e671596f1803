"""Collaborator contracts and the events they deliver to the engine.

Collaborators never call back into the engine's components directly. A position
source (or the activity query the engine issues) posts one of the event
dataclasses below to `SamplingEngine.post`, and the engine handles events one at
a time in delivery order.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal, Protocol, Sequence, Union

from stay_tracker.models import ActivityType, Address, Geofence, LocationSample, Place


class AuthorizationStatus(str, Enum):
    NOT_DETERMINED = "not_determined"
    DENIED = "denied"
    AUTHORIZED = "authorized"


class PositionErrorKind(str, Enum):
    ACCURACY_UNAVAILABLE = "accuracy_unavailable"
    PERMISSION_DENIED = "permission_denied"
    TRANSIENT = "transient"


class PositionSource(Protocol):
    """The positioning sensor.

    `start_continuous` and `start_significant_change_only` switch the acquisition
    mode: starting one stops the other.
    """

    @property
    def authorization_status(self) -> AuthorizationStatus: ...

    def request_authorization(self) -> None: ...

    def start_continuous(self) -> None: ...

    def start_significant_change_only(self) -> None: ...

    def arm_geofence(self, geofence: Geofence) -> None: ...

    def disarm_geofence(self) -> None: ...

    def stop_all(self) -> None: ...


class ActivityClassifier(Protocol):
    def classify(self, window_start: float, window_end: float) -> ActivityType:
        """Classify motion in [window_start, window_end]; UNAVAILABLE when unknown."""
        ...


RecordKind = Literal["places", "samples"]


class Store(Protocol):
    """Durable store for samples and finalized places.

    `save` is transactional: on failure the store rolls back and raises
    `PersistenceError`.
    """

    def save(self, record: Place | LocationSample) -> None: ...

    def rollback(self) -> None: ...

    def most_recent(
        self,
        n: int,
        kind: RecordKind = "places",
        start: float | None = None,
        end: float | None = None,
    ) -> Sequence[Place] | Sequence[LocationSample]: ...


class GeocodeProvider(Protocol):
    def reverse_geocode(self, latitude: float, longitude: float) -> Address:
        """Resolve a coordinate to an address. Raises ResolutionError."""
        ...


@dataclass(frozen=True, slots=True)
class SampleEvent:
    sample: LocationSample


@dataclass(frozen=True, slots=True)
class PositionErrorEvent:
    kind: PositionErrorKind
    message: str = ""


@dataclass(frozen=True, slots=True)
class GeofenceExitEvent:
    timestamp: float
    geofence: Geofence


@dataclass(frozen=True, slots=True)
class AuthorizationEvent:
    status: AuthorizationStatus


@dataclass(frozen=True, slots=True)
class ActivityEvent:
    """Result of an activity query issued by the engine.

    `session` identifies the tracking session that issued the query; results from
    an earlier session are ignored.
    """

    activity: ActivityType
    window_end: float
    session: int


@dataclass(frozen=True, slots=True)
class PlaceResolvedEvent:
    """A finalized place whose address fields changed and must be saved again."""

    place: Place


EngineEvent = Union[
    SampleEvent,
    PositionErrorEvent,
    GeofenceExitEvent,
    AuthorizationEvent,
    ActivityEvent,
    PlaceResolvedEvent,
]
