"""Activity log module for recording transfer lifecycle events."""

from .service import ActivityAction, ActivityLog

__all__ = [
    "ActivityAction",
    "ActivityLog",
]
