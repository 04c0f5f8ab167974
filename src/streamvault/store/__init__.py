from .chat import ChatStore
from .tokens import InMemoryTokenStore, KeyringTokenStore, SqliteTokenStore, TokenStore, open_token_store
from .vods import VodStore

__all__ = [
    "ChatStore",
    "InMemoryTokenStore",
    "KeyringTokenStore",
    "SqliteTokenStore",
    "TokenStore",
    "VodStore",
    "open_token_store",
]
