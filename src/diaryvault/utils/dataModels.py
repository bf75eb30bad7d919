from __future__ import annotations

import json

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from diaryvault.utils.helper import format_ts, parse_ts, utc_now

# Argon2id cost parameters. Changing them requires a VAULT_VERSION bump.
ARGON2_M_COST_KiB = 32768
ARGON2_T_COST = 2
ARGON2_PARALLELISM = 4
KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12
IV_LEN = 16

VAULT_VERSION = 1
METADATA_VERSION = 1
ENTRY_VERSION = 1

IMAGE_MAGIC_PREFIX = b"VAULTIMG"

_TICK = timedelta(microseconds=1)

DEFAULT_ENTRY_TITLE = "Untitled entry"
MIN_PASSPHRASE_LEN = 6


class TextEncryption(str, Enum):
    AES256_GCM = "aes256_gcm"


class ImageEncryption(Enum):
    AES256_CTR = b":AES256CTR:"

    @property
    def marker(self) -> bytes:
        return self.value

    @classmethod
    def detect(cls, data: bytes) -> Optional[ImageEncryption]:
        for method in cls:
            if data.startswith(method.marker):
                return method
        return None


DEFAULT_TEXT_ENCRYPTION = TextEncryption.AES256_GCM
SUPPORTED_TEXT_ENCRYPTIONS = (TextEncryption.AES256_GCM,)
DEFAULT_IMAGE_ENCRYPTION = ImageEncryption.AES256_CTR


@dataclass
class EntryInfo:
    id: UUID
    title: str
    created_at: datetime
    updated_at: datetime
    folder: Optional[str] = None

    def touch(self) -> None:
        # updated_at never goes backwards, even if the wall clock does
        now = utc_now()
        if now <= self.updated_at:
            now = self.updated_at + _TICK
        self.updated_at = now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "title": self.title,
            "created_at": format_ts(self.created_at),
            "updated_at": format_ts(self.updated_at),
            "folder": self.folder,
        }

    @staticmethod
    def from_dict(obj: Dict[str, Any]) -> "EntryInfo":
        return EntryInfo(
            id=UUID(obj["id"]),
            title=obj["title"],
            created_at=parse_ts(obj["created_at"]),
            updated_at=parse_ts(obj["updated_at"]),
            folder=obj.get("folder"),
        )


@dataclass
class Entry:
    id: UUID
    title: str
    content: str
    created_at: datetime
    updated_at: datetime
    folder: Optional[str] = None

    @staticmethod
    def new(title: str, content: str) -> "Entry":
        now = utc_now()
        return Entry(id=uuid4(), title=title, content=content, created_at=now, updated_at=now)

    @staticmethod
    def from_info(info: EntryInfo, content: str) -> "Entry":
        return Entry(
            id=info.id,
            title=info.title,
            content=content,
            created_at=info.created_at,
            updated_at=info.updated_at,
            folder=info.folder,
        )

    def metadata(self) -> EntryInfo:
        return EntryInfo(
            id=self.id,
            title=self.title,
            created_at=self.created_at,
            updated_at=self.updated_at,
            folder=self.folder,
        )

    def to_dict(self) -> Dict[str, Any]:
        d = self.metadata().to_dict()
        d["content"] = self.content
        return d


@dataclass
class VaultMetadata:
    version: int
    entries: List[EntryInfo]
    text_encryption: TextEncryption = DEFAULT_TEXT_ENCRYPTION

    def to_bytes(self) -> bytes:
        obj = {
            "version": self.version,
            "entries": [e.to_dict() for e in self.entries],
            "text_encryption": self.text_encryption.value,
        }
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    @staticmethod
    def from_bytes(b: bytes) -> "VaultMetadata":
        """Parse decrypted metadata. Unknown algorithm tags are kept as raw strings
        so the caller can reject them explicitly."""
        obj = json.loads(b.decode("utf-8"))
        tag = obj.get("text_encryption", DEFAULT_TEXT_ENCRYPTION.value)
        try:
            text_encryption: Any = TextEncryption(tag)
        except ValueError:
            text_encryption = tag
        return VaultMetadata(
            version=obj["version"],
            entries=[EntryInfo.from_dict(e) for e in obj.get("entries", [])],
            text_encryption=text_encryption,
        )


@dataclass
class StoredVault:
    version: int
    salt: str
    nonce: str
    ciphertext: str
    updated_at: Optional[datetime] = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "salt": self.salt,
                "nonce": self.nonce,
                "ciphertext": self.ciphertext,
                "updated_at": format_ts(self.updated_at) if self.updated_at else None,
            },
            indent=2,
        )

    @staticmethod
    def from_dict(obj: Dict[str, Any]) -> "StoredVault":
        ts = obj.get("updated_at")
        return StoredVault(
            version=obj["version"],
            salt=obj["salt"],
            nonce=obj["nonce"],
            ciphertext=obj["ciphertext"],
            updated_at=parse_ts(ts) if ts else None,
        )


@dataclass
class StoredEntry:
    version: int
    nonce: str
    ciphertext: str

    def to_json(self) -> str:
        return json.dumps({"version": self.version, "nonce": self.nonce, "ciphertext": self.ciphertext}, indent=2)

    @staticmethod
    def from_dict(obj: Dict[str, Any]) -> "StoredEntry":
        return StoredEntry(version=obj["version"], nonce=obj["nonce"], ciphertext=obj["ciphertext"])


@dataclass
class UnlockResponse:
    entries: List[EntryInfo]
    created: bool
    last_saved: Optional[str]
    vault_root: str
    text_encryption: TextEncryption
    available_text_encryptions: List[TextEncryption] = field(
        default_factory=lambda: list(SUPPORTED_TEXT_ENCRYPTIONS)
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "created": self.created,
            "last_saved": self.last_saved,
            "vault_root": self.vault_root,
            "text_encryption": self.text_encryption.value,
            "available_text_encryptions": [t.value for t in self.available_text_encryptions],
        }
