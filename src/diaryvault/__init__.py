"""diaryvault – encrypted local journal engine."""
from diaryvault.utils.core import VaultManager
from diaryvault.utils.dataModels import Entry, EntryInfo, TextEncryption, UnlockResponse
from diaryvault.utils.errors import VaultError, error_message

__version__ = "0.1.0"

__all__ = [
    "VaultManager",
    "Entry",
    "EntryInfo",
    "TextEncryption",
    "UnlockResponse",
    "VaultError",
    "error_message",
]
