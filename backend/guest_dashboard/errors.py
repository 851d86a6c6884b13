"""
Error taxonomy for the guest dashboard runtime.

All of these are recoverable at the intent level.
"""
from typing import Optional, Sequence


class DashboardError(Exception):
    """Base class; carries a short user-facing message."""

    user_message = "Something went wrong, please try again"

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class LocationUnavailable(DashboardError):
    """Geofencing cannot evaluate: no fix, invalid coordinates or a stale sample."""

    user_message = "Location is unavailable, nearby features are paused"


class CapacityExceeded(DashboardError):
    """
    Reservation or inventory conflict.

    For time-boxed resources `alternatives` lists free TimeWindows near the
    requested one.
    """

    user_message = "This item is no longer available"

    def __init__(self, message: str, resource_id: Optional[str] = None, user_message: Optional[str] = None,
                 alternatives: Sequence = ()):
        super().__init__(message, user_message)
        self.resource_id = resource_id
        self.alternatives = tuple(alternatives)


class InvalidMutation(DashboardError):
    """Malformed intent, unknown target, or a transition out of a terminal state."""

    user_message = "This request cannot be processed"


class StaleSnapshot(DashboardError):
    """A caller dispatched against an outdated snapshot version."""

    user_message = "The page is out of date, please refresh"

    def __init__(self, expected_version: int, current_version: int):
        super().__init__(
            f"Snapshot version {expected_version} is stale (current {current_version})"
        )
        self.expected_version = expected_version
        self.current_version = current_version


__all__ = [
    "DashboardError",
    "LocationUnavailable",
    "CapacityExceeded",
    "InvalidMutation",
    "StaleSnapshot",
]
