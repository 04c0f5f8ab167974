from .stream import (
    Connection,
    InvalidCursor,
    ReplayServer,
    ServerClosed,
    TooManyConnections,
    format_event,
)

__all__ = [
    "Connection",
    "InvalidCursor",
    "ReplayServer",
    "ServerClosed",
    "TooManyConnections",
    "format_event",
]
