"""Maidenhead locator conversion and great-circle distance."""

from __future__ import annotations

import math

EARTH_RADIUS_KM = 6371.0


def maidenhead_to_latlon(locator: str | None) -> tuple[float, float] | None:
    """Return the centre (lat, lon) of a 4- or 6-character Maidenhead square.

    Returns None for locators that are too short or malformed.
    """
    if not locator or len(locator) < 4:
        return None
    loc = locator.strip()
    field_lon, field_lat = loc[0].upper(), loc[1].upper()
    square_lon, square_lat = loc[2], loc[3]
    if not ("A" <= field_lon <= "R" and "A" <= field_lat <= "R"):
        return None
    if not (square_lon.isdigit() and square_lat.isdigit()):
        return None

    lon = (ord(field_lon) - ord("A")) * 20.0 + int(square_lon) * 2.0 - 180.0
    lat = (ord(field_lat) - ord("A")) * 10.0 + int(square_lat) * 1.0 - 90.0

    if len(loc) >= 6:
        sub_lon, sub_lat = loc[4].lower(), loc[5].lower()
        if not ("a" <= sub_lon <= "x" and "a" <= sub_lat <= "x"):
            return None
        lon += (ord(sub_lon) - ord("a")) * (2.0 / 24.0) + 1.0 / 24.0
        lat += (ord(sub_lat) - ord("a")) * (1.0 / 24.0) + 1.0 / 48.0
    else:
        lon += 1.0
        lat += 0.5
    return lat, lon


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
