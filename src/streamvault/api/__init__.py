from .app import create_app
from .routes import create_vod_router

__all__ = ["create_app", "create_vod_router"]
