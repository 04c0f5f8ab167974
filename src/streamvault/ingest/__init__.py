"""Discovery of ended broadcasts.

The scheduler polls a ``BroadcastSource`` (Twitch Helix in production) and
queues each archived broadcast once, keyed on its source VOD id.
"""

from .helix import Broadcast, HelixClient, parse_twitch_duration
from .scheduler import BroadcastSource, IngestScheduler, TwitchBroadcastSource

__all__ = [
    "Broadcast",
    "BroadcastSource",
    "HelixClient",
    "IngestScheduler",
    "TwitchBroadcastSource",
    "parse_twitch_duration",
]
