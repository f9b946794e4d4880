"""Cleanup scheduling for completed and abandoned transfers."""

from .scheduler import CleanupScheduler

__all__ = ["CleanupScheduler"]
