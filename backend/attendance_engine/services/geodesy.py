import math

from attendance_engine.schemas.location import Coordinate

EARTH_RADIUS_METERS = 6371000


def distance_meters(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in meters between two GPS coordinates (Haversine)."""
    phi1, phi2 = math.radians(a.latitude), math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlambda = math.radians(b.longitude - a.longitude)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    h = min(1.0, h)  # float drift near antipodal points
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
