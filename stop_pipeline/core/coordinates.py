"""
Coordinate parsing and validation.

Spreadsheet coordinates arrive as loosely formatted text ("-23,550520",
" -46.63 ", 0, "") and must be turned into floats without ever raising.
"""

import logging
import math
from math import radians, sin, cos, sqrt, atan2
from typing import Any, Optional

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0


def normalize_coordinate(value: Any) -> Optional[float]:
    """Parse a coordinate that may use a comma as decimal separator.

    Args:
        value: String, number or None

    Returns:
        Parsed float, or None if the value is absent or unparseable
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", ".")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            logger.debug(f"Unparseable coordinate: {value!r}")
            return None

    if math.isnan(number) or math.isinf(number):
        return None
    return number


def is_valid_coordinate(lat: Optional[float], lng: Optional[float]) -> bool:
    """Check that a latitude/longitude pair is usable.

    (0, 0) is treated as "no data" rather than a real location.
    """
    if lat is None or lng is None:
        return False
    try:
        if math.isnan(lat) or math.isnan(lng):
            return False
    except TypeError:
        return False

    if lat < -90 or lat > 90:
        return False
    if lng < -180 or lng > 180:
        return False

    if lat == 0 and lng == 0:
        return False

    return True


def format_coordinate(value: float) -> str:
    """Format a coordinate with six decimal places."""
    return f"{value:.6f}"


def haversine_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance in metres between two points."""
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))

    return EARTH_RADIUS_M * c
