import binascii
import logging

from pathlib import Path
from uuid import UUID

from diaryvault.crypto.aead import aead_decrypt, aead_encrypt
from diaryvault.storage.vault import read_json, write_atomic
from diaryvault.utils.dataModels import ENTRY_VERSION, NONCE_LEN, StoredEntry, TextEncryption
from diaryvault.utils.errors import (
    EntryContentMissing,
    MalformedEnvelope,
    UnsupportedVersion,
    VaultIOError,
)
from diaryvault.utils.helper import b64d, b64e

logger = logging.getLogger(__name__)


def entry_file_path(entries_dir: Path, fid: UUID) -> Path:
    return entries_dir / f"{fid}.bin"


def encode_entry(key: bytes, method: TextEncryption, content: str) -> bytes:
    nonce, ct = aead_encrypt(key, content.encode("utf-8"), method)
    stored = StoredEntry(version=ENTRY_VERSION, nonce=b64e(nonce), ciphertext=b64e(ct))
    return stored.to_json().encode("utf-8")


def decode_entry(obj: dict, key: bytes, method: TextEncryption) -> str:
    if obj.get("version") != ENTRY_VERSION:
        raise UnsupportedVersion("unsupported entry version")
    try:
        stored = StoredEntry.from_dict(obj)
        nonce = b64d(stored.nonce)
        ct = b64d(stored.ciphertext)
    except (KeyError, TypeError, binascii.Error) as e:
        raise MalformedEnvelope("failed to parse entry") from e
    if len(nonce) != NONCE_LEN:
        raise MalformedEnvelope("invalid nonce length")

    plaintext = aead_decrypt(key, nonce, ct, method)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedEnvelope("invalid entry content") from e


def save_entry_content(entries_dir: Path, key: bytes, method: TextEncryption, fid: UUID, content: str) -> Path:
    path = entry_file_path(entries_dir, fid)
    write_atomic(path, encode_entry(key, method, content))
    logger.debug("entry %s written", fid)
    return path


def load_entry_content(entries_dir: Path, key: bytes, method: TextEncryption, fid: UUID) -> str:
    path = entry_file_path(entries_dir, fid)
    if not path.exists():
        raise EntryContentMissing()
    return decode_entry(read_json(path, "entry"), key, method)


def remove_entry_content(entries_dir: Path, fid: UUID) -> None:
    path = entry_file_path(entries_dir, fid)
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        raise VaultIOError(f"failed to remove entry file: {e.strerror or e}") from e
