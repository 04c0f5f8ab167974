from .fetcher import HttpRangeFetcher, MediaFetcher, YtDlpFetcher, partial_path, twitch_vod_url
from .worker import DownloadWorker, cleanup_stale_partials

__all__ = [
    "DownloadWorker",
    "HttpRangeFetcher",
    "MediaFetcher",
    "YtDlpFetcher",
    "cleanup_stale_partials",
    "partial_path",
    "twitch_vod_url",
]
