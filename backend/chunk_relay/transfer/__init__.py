"""Transfer session protocol: schemas, registries, engine and transport."""

from .engine import Delivery, HandlerResult, TransferEngine
from .manager import ConnectionManager
from .registry import ConnectionRegistry, SessionRegistry
from .router import router

__all__ = [
    "ConnectionManager",
    "ConnectionRegistry",
    "Delivery",
    "HandlerResult",
    "SessionRegistry",
    "TransferEngine",
    "router",
]
