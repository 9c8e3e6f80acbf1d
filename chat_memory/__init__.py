from .errors import ChatMemoryError, ProviderError, StorageIOError, UnsupportedOperationError, ValidationError
from .memory.facade import StorageFacade
from .types import ChatMessage, ChatSettings, ChatSettingsDefaults, SettingsField, SettingsPatch, UserProfile

__all__ = [
    "ChatMemoryError",
    "ChatMessage",
    "ChatSettings",
    "ChatSettingsDefaults",
    "ProviderError",
    "SettingsField",
    "SettingsPatch",
    "StorageFacade",
    "StorageIOError",
    "UnsupportedOperationError",
    "UserProfile",
    "ValidationError",
]
