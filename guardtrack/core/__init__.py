"""
Core modules for the GuardTrack realtime backend

This package contains the core business logic:
- geofencing: Haversine distance and circular geofence evaluation
- tenancy: Guard lookups and security-company scoping
- tracking: Location store, geofence events and transitions
- emergency_alert: Emergency alert lifecycle and notification fan-out
- realtime: Connection registry and WebSocket broadcast service
"""

from .geofencing import (
    calculate_distance,
    evaluate_geofence,
    validate_coordinates,
    GeofenceResult
)

from .tracking import TrackingService

from .emergency_alert import EmergencyService

from .realtime import (
    ClientConnection,
    ConnectionRegistry,
    RealtimeService,
    MessagePriority
)

__all__ = [
    # Geofencing
    "calculate_distance",
    "evaluate_geofence",
    "validate_coordinates",
    "GeofenceResult",

    # Tracking
    "TrackingService",

    # Emergency
    "EmergencyService",

    # Realtime
    "ClientConnection",
    "ConnectionRegistry",
    "RealtimeService",
    "MessagePriority"
]
