import math
from datetime import datetime, timedelta
from typing import NamedTuple, Optional, Tuple

from .config import settings
from .exceptions import ValidationError

EARTH_RADIUS_KM = 6371.0


class Point(NamedTuple):
    latitude: float
    longitude: float


def validate_point(point: Point) -> Point:
    if not -90 <= point.latitude <= 90:
        raise ValidationError("Latitude must be between -90 and 90", field="latitude")
    if not -180 <= point.longitude <= 180:
        raise ValidationError("Longitude must be between -180 and 180", field="longitude")
    return point


def distance_km(a: Point, b: Point) -> float:
    """
    Great-circle distance between two points in kilometers (Haversine).
    Coordinates are not validated here.
    """
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    delta_lat = math.radians(b.latitude - a.latitude)
    delta_lon = math.radians(b.longitude - a.longitude)

    h = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1) * math.cos(lat2) *
         math.sin(delta_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return EARTH_RADIUS_KM * c


def bounding_box(center: Point, radius_km: float) -> Tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lon, max_lon) enclosing a circle around center."""
    delta_lat = math.degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = math.cos(math.radians(center.latitude))
    if cos_lat < 1e-9 or delta_lat >= 90:
        delta_lon = 180.0
    else:
        delta_lon = min(180.0, math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat)))
    return (
        max(-90.0, center.latitude - delta_lat),
        min(90.0, center.latitude + delta_lat),
        max(-180.0, center.longitude - delta_lon),
        min(180.0, center.longitude + delta_lon),
    )


def estimated_delivery_time(
    now: datetime,
    pickup: Optional[Point] = None,
    dropoff: Optional[Point] = None,
) -> datetime:
    """
    Coarse ETA: fixed preparation time plus fixed transit time.
    The points are accepted for signature stability; no routing is done.
    """
    return now + timedelta(minutes=settings.PREP_MINUTES + settings.TRANSIT_MINUTES)


def point_from_coordinates(value) -> Optional[Point]:
    """
    Read a point from a collaborator payload.

    Accepts GeoJSON order [lon, lat] or a {latitude, longitude} mapping.
    Missing, malformed or out-of-range values give None.
    """
    if value is None:
        return None
    try:
        if isinstance(value, (list, tuple)):
            if len(value) != 2:
                return None
            point = Point(float(value[1]), float(value[0]))
        elif isinstance(value, dict):
            lat = value.get("latitude", value.get("lat"))
            lon = value.get("longitude", value.get("lng", value.get("lon")))
            if lat is None or lon is None:
                return None
            point = Point(float(lat), float(lon))
        else:
            return None
        return validate_point(point)
    except (TypeError, ValueError, ValidationError):
        return None
