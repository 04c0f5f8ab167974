from .oauth import GoogleTokenRefresher, RefreshedToken, TokenManager
from .sanitize import UploadMetadata, build_metadata
from .worker import Uploader, UploadWorker
from .youtube import YouTubeUploader, published_url

__all__ = [
    "GoogleTokenRefresher",
    "RefreshedToken",
    "TokenManager",
    "UploadMetadata",
    "UploadWorker",
    "Uploader",
    "YouTubeUploader",
    "build_metadata",
    "published_url",
]
