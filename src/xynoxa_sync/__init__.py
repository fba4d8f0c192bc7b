"""xynoxa-sync - bidirectional folder synchronization with a Xynoxa server."""

__version__ = "0.3.0"
