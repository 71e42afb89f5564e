"""Distance checks for driver location throttling."""

from math import asin, cos, radians, sin, sqrt

EARTH_RADIUS_M = 6_371_000

LatLng = tuple[float, float]


def haversine_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two lat/lng pairs given in degrees."""
    phi1, phi2 = radians(lat1), radians(lat2)
    half_dphi = (phi2 - phi1) / 2
    half_dlambda = radians(lon2 - lon1) / 2

    h = sin(half_dphi) ** 2 + cos(phi1) * cos(phi2) * sin(half_dlambda) ** 2
    return 2 * EARTH_RADIUS_M * asin(min(1.0, sqrt(h)))


def has_moved(previous: LatLng | None, current: LatLng, threshold_m: float) -> bool:
    """True when ``current`` is at least ``threshold_m`` meters from ``previous``.

    With no previous position every fix counts as movement.
    """
    if previous is None:
        return True
    return haversine_distance_m(*previous, *current) >= threshold_m
