import math
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from guardtrack.config import settings

EARTH_RADIUS_METERS = 6371000

def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points using Haversine formula
    Returns distance in meters
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat/2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon/2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c

@dataclass(frozen=True)
class GeofenceResult:
    distance_meters: float
    is_inside: bool

def evaluate_geofence(
    point: Tuple[float, float],
    center: Tuple[float, float],
    radius_meters: float = settings.GEOFENCE_RADIUS_METERS
) -> GeofenceResult:
    """
    Point-in-circle check against a site center.
    The boundary is inclusive: a point exactly radius_meters away is inside.
    """
    distance = calculate_distance(point[0], point[1], center[0], center[1])
    return GeofenceResult(distance_meters=distance, is_inside=distance <= radius_meters)

def validate_coordinates(latitude: float, longitude: float) -> Dict[str, Any]:
    """Basic coordinate validation"""
    result: Dict[str, Any] = {"valid": False, "errors": []}

    if not (-90 <= latitude <= 90):
        result["errors"].append("Invalid latitude: must be between -90 and 90")

    if not (-180 <= longitude <= 180):
        result["errors"].append("Invalid longitude: must be between -180 and 180")

    result["valid"] = not result["errors"]
    return result
