"""Chunk relay: WebSocket file transfer relay between a sender and a receiver."""

__version__ = "0.1.0"
