"""Data models for location samples, places and sampling state."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Final


@dataclass(frozen=True, slots=True)
class LocationSample:
    """A single position fix delivered by the position source.

    Attributes:
        timestamp: Unix epoch seconds.
        latitude: Latitude in decimal degrees.
        longitude: Longitude in decimal degrees.
        horizontal_accuracy: Horizontal accuracy in meters. Negative means invalid.
        speed: Speed in meters/second. Negative values are the "unknown" sentinel.
    """

    timestamp: float
    latitude: float
    longitude: float
    horizontal_accuracy: float
    speed: float = -1.0

    @property
    def known_speed(self) -> float:
        """Speed with the unknown sentinel mapped to 0.0."""

        return self.speed if self.speed > 0 else 0.0


@dataclass(frozen=True, slots=True)
class Address:
    """A reverse geocoded postal address."""

    name: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = ""

    @property
    def formatted(self) -> str:
        """Non-empty fields joined with ", " (name, street, city, state, country, postal code)."""

        parts = [self.name, self.street, self.city, self.state, self.country, self.postal_code]
        return ", ".join(p for p in parts if p)

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "country": self.country,
            "postal_code": self.postal_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> Address:
        return cls(
            name=str(data.get("name", "") or ""),
            street=str(data.get("street", "") or ""),
            city=str(data.get("city", "") or ""),
            state=str(data.get("state", "") or ""),
            country=str(data.get("country", "") or ""),
            postal_code=str(data.get("postal_code", "") or ""),
        )


def _new_place_id() -> str:
    return str(uuid.uuid4())


@dataclass(slots=True)
class Place:
    """A stay: an interval during which samples clustered within a small radius.

    The latitude/longitude pair is the running centroid of every sample folded
    into the place while it was open. Once finalized only the address fields
    change.
    """

    start_time: float
    end_time: float
    latitude: float
    longitude: float
    sample_count: int = 1
    id: str = field(default_factory=_new_place_id)
    name: str | None = None
    street: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    postal_code: str | None = None
    formatted_address: str | None = None

    @classmethod
    def seeded(cls, sample: LocationSample) -> Place:
        """Open a new place from its first sample."""

        return cls(
            start_time=sample.timestamp,
            end_time=sample.timestamp,
            latitude=sample.latitude,
            longitude=sample.longitude,
            sample_count=1,
        )

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.end_time - self.start_time)

    @property
    def is_resolved(self) -> bool:
        return self.formatted_address is not None

    def apply_address(self, address: Address) -> None:
        """Copy all address fields onto the place."""

        self.name = address.name
        self.street = address.street
        self.city = address.city
        self.state = address.state
        self.country = address.country
        self.postal_code = address.postal_code
        self.formatted_address = address.formatted

    @property
    def display_address(self) -> str:
        """Human-readable label: formatted address, partial address, or the coordinate."""

        if self.formatted_address:
            return self.formatted_address
        parts = [p for p in (self.street, self.city, self.state, self.country) if p]
        if not parts:
            return f"{self.latitude:.5f}, {self.longitude:.5f}"
        return ", ".join(parts)


class SamplingMode(str, Enum):
    """Acquisition mode of the position source."""

    CONTINUOUS = "continuous"
    SIGNIFICANT_CHANGE_ONLY = "significant_change_only"
    GEOFENCED = "geofenced"


class ActivityType(str, Enum):
    """Motion classification for a recent time window."""

    STATIONARY = "stationary"
    WALKING = "walking"
    RUNNING = "running"
    CYCLING = "cycling"
    AUTOMOTIVE = "automotive"
    UNAVAILABLE = "unavailable"

    @property
    def is_moving(self) -> bool:
        """Ambulatory or vehicular activity."""

        return self in (ActivityType.WALKING, ActivityType.RUNNING, ActivityType.CYCLING, ActivityType.AUTOMOTIVE)


@dataclass(frozen=True, slots=True)
class Geofence:
    """A circular stay-region (center + radius)."""

    latitude: float
    longitude: float
    radius_m: float
    notify_on_exit: bool = True
    notify_on_entry: bool = False


DEFAULT_TZ: Final[str] = "Asia/Shanghai"
