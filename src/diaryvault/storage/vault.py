import binascii
import json
import logging
import os

from datetime import datetime
from pathlib import Path

from diaryvault.crypto.aead import aead_decrypt, aead_encrypt
from diaryvault.utils.dataModels import (
    METADATA_VERSION,
    NONCE_LEN,
    SALT_LEN,
    VAULT_VERSION,
    StoredVault,
    TextEncryption,
    VaultMetadata,
)
from diaryvault.utils.errors import MalformedEnvelope, UnsupportedVersion, VaultIOError
from diaryvault.utils.helper import b64d, b64e

logger = logging.getLogger(__name__)


def write_atomic(path: Path, data: bytes) -> None:
    """Write to a sibling temp file, then swap it into place."""
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tmp.open("wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError as e:
        raise VaultIOError(f"failed to write {path.name}: {e.strerror or e}") from e


def read_json(path: Path, what: str) -> dict:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise VaultIOError(f"failed to read {what}: {e.strerror or e}") from e
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedEnvelope(f"failed to parse {what}") from e
    if not isinstance(obj, dict):
        raise MalformedEnvelope(f"failed to parse {what}")
    return obj


def encode_vault(salt: bytes, key: bytes, metadata: VaultMetadata, timestamp: datetime) -> bytes:
    nonce, ct = aead_encrypt(key, metadata.to_bytes(), TextEncryption.AES256_GCM)
    stored = StoredVault(
        version=VAULT_VERSION,
        salt=b64e(salt),
        nonce=b64e(nonce),
        ciphertext=b64e(ct),
        updated_at=timestamp,
    )
    return stored.to_json().encode("utf-8")


def save_vault(path: Path, salt: bytes, key: bytes, metadata: VaultMetadata, timestamp: datetime) -> None:
    write_atomic(path, encode_vault(salt, key, metadata, timestamp))
    logger.debug("metadata saved (%d entries)", len(metadata.entries))


def load_vault(path: Path) -> StoredVault:
    obj = read_json(path, "vault")
    if obj.get("version") != VAULT_VERSION:
        raise UnsupportedVersion("unsupported vault version")
    try:
        return StoredVault.from_dict(obj)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MalformedEnvelope("failed to parse vault") from e


def vault_salt(stored: StoredVault) -> bytes:
    try:
        salt = b64d(stored.salt)
    except binascii.Error as e:
        raise MalformedEnvelope("invalid salt encoding") from e
    if len(salt) != SALT_LEN:
        raise MalformedEnvelope("invalid salt length")
    return salt


def decrypt_metadata(stored: StoredVault, key: bytes) -> VaultMetadata:
    """Open the metadata envelope.

    The payload is always sealed with AES-256-GCM at the container level; the
    ``text_encryption`` tag inside it is only known after decryption.
    """
    try:
        nonce = b64d(stored.nonce)
    except binascii.Error as e:
        raise MalformedEnvelope("invalid nonce encoding") from e
    if len(nonce) != NONCE_LEN:
        raise MalformedEnvelope("invalid nonce length")
    try:
        ct = b64d(stored.ciphertext)
    except binascii.Error as e:
        raise MalformedEnvelope("invalid ciphertext encoding") from e

    plaintext = aead_decrypt(key, nonce, ct, TextEncryption.AES256_GCM)
    try:
        metadata = VaultMetadata.from_bytes(plaintext)
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise MalformedEnvelope("invalid metadata") from e
    if metadata.version != METADATA_VERSION:
        raise UnsupportedVersion("unsupported metadata version")
    return metadata
