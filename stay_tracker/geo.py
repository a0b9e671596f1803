"""Geospatial utilities (no external dependencies)."""

from __future__ import annotations

import math

from stay_tracker.models import Geofence, LocationSample, Place


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute Haversine distance in meters between two lat/lon points.

    Args:
        lat1: Latitude 1 in degrees.
        lon1: Longitude 1 in degrees.
        lat2: Latitude 2 in degrees.
        lon2: Longitude 2 in degrees.

    Returns:
        Distance in meters.
    """

    r = 6_371_000.0  # mean Earth radius in meters
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return r * c


def sample_distance_m(a: LocationSample, b: LocationSample) -> float:
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def distance_to_place_m(sample: LocationSample, place: Place) -> float:
    """Distance from a sample to the centroid of a place."""

    return haversine_m(sample.latitude, sample.longitude, place.latitude, place.longitude)


def is_inside_geofence(lat: float, lon: float, geofence: Geofence) -> bool:
    """Check whether a point is inside or on the boundary of a circle geofence."""

    return haversine_m(lat, lon, geofence.latitude, geofence.longitude) <= geofence.radius_m


def offset_m(lat: float, lon: float, north_m: float, east_m: float) -> tuple[float, float]:
    """Move a coordinate by a small north/east offset in meters (local flat-earth approximation)."""

    d_lat = north_m / 111_320.0
    d_lon = east_m / (111_320.0 * math.cos(math.radians(lat)))
    return lat + d_lat, lon + d_lon
