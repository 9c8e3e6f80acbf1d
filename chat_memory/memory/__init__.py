from .calls import CallPolicy
from .chat_settings import SettingsStore, resolve_chat_settings
from .facade import StorageFacade
from .messages import MessageStore
from .profiles import ProfileStore

__all__ = [
    "CallPolicy",
    "MessageStore",
    "ProfileStore",
    "SettingsStore",
    "StorageFacade",
    "resolve_chat_settings",
]
