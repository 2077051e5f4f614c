"""Great-circle distance helpers."""

import math
from typing import Optional

EARTH_RADIUS_MILES = 3959.0


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in miles between two (lat, lon) points."""
    lat1_rad, lon1_rad = math.radians(lat1), math.radians(lon1)
    lat2_rad, lon2_rad = math.radians(lat2), math.radians(lon2)

    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_MILES * math.asin(math.sqrt(a))


def distance_from(
    origin: Optional[tuple[float, float]],
    latitude: Optional[float],
    longitude: Optional[float],
) -> Optional[float]:
    """Distance from origin, or None when either side has no coordinates."""
    if origin is None or latitude is None or longitude is None:
        return None
    return haversine_miles(origin[0], origin[1], latitude, longitude)


def zip_prefixes(zip_code: str, shortest: int = 3) -> list[str]:
    """ZIP prefixes from the full code down to ``shortest`` digits: 07001, 0700, 070."""
    return [zip_code[:length] for length in range(len(zip_code), shortest - 1, -1)]
