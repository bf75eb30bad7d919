"""Passphrase rotation and plaintext export.

A passphrase change re-encrypts the metadata, every entry file and every
encrypted attachment. To keep it all-or-nothing across many files the new
envelopes are first written to ``<root>/.rekey/``; a ``COMMIT`` marker then
makes the change durable and the staged files are swapped into place.
``recover_pending_rekey`` finishes or discards an interrupted rotation
the next time the vault is opened.
"""
import logging
import os
import shutil

from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from diaryvault.crypto.attachment import decrypt_image_data, encrypt_image_data, is_encrypted
from diaryvault.storage.entries import encode_entry, load_entry_content
from diaryvault.storage.vault import encode_vault, write_atomic
from diaryvault.utils.dataModels import EntryInfo, TextEncryption, VaultMetadata
from diaryvault.utils.errors import VaultIOError
from diaryvault.utils.helper import repo_paths, utc_now

logger = logging.getLogger(__name__)

COMMIT_MARKER = "COMMIT"


def _discard(staging: Path) -> None:
    shutil.rmtree(staging, ignore_errors=True)


def _stage_attachments(attachments_dir: Path, staging_dir: Path, old_key: bytes, new_key: bytes) -> int:
    if not attachments_dir.is_dir():
        return 0
    count = 0
    for path in sorted(attachments_dir.rglob("*")):
        if not path.is_file():
            continue
        try:
            data = path.read_bytes()
        except OSError as e:
            raise VaultIOError(f"failed to read attachment {path.name}: {e.strerror or e}") from e
        if not is_encrypted(data):
            continue  # legacy plaintext stays as it is
        plaintext = decrypt_image_data(old_key, data)
        write_atomic(staging_dir / path.relative_to(attachments_dir), encrypt_image_data(new_key, plaintext))
        count += 1
    return count


def stage_rekey(
    root: Path,
    entries: Iterable[EntryInfo],
    old_key: bytes,
    new_key: bytes,
    new_salt: bytes,
    metadata: VaultMetadata,
    timestamp: datetime,
) -> int:
    """Write entries, encrypted attachments and the metadata, re-encrypted under
    ``new_key``, to the staging area. Returns the number of files staged."""
    p = repo_paths(root)
    staging = p["staging"]
    if (staging / COMMIT_MARKER).exists():
        raise VaultIOError("a committed passphrase change is still pending; unlock the vault again to finish it")
    _discard(staging)
    method: TextEncryption = metadata.text_encryption
    count = 0
    try:
        for info in entries:
            content = load_entry_content(p["entries"], old_key, method, info.id)
            write_atomic(staging / "entries" / f"{info.id}.bin", encode_entry(new_key, method, content))
            count += 1
        count += _stage_attachments(p["attachments"], staging / "attachments", old_key, new_key)
        write_atomic(staging / p["vault"].name, encode_vault(new_salt, new_key, metadata, timestamp))
    except Exception:
        _discard(staging)
        raise
    return count + 1


def commit_rekey(root: Path) -> None:
    staging = repo_paths(root)["staging"]
    try:
        write_atomic(staging / COMMIT_MARKER, utc_now().isoformat().encode("ascii"))
    except VaultIOError:
        _discard(staging)
        raise


def apply_staged_rekey(root: Path) -> None:
    """Move committed staged files into place. Safe to re-run after a crash."""
    p = repo_paths(root)
    staging = p["staging"]
    try:
        for sub in ("entries", "attachments"):
            staged_dir = staging / sub
            if not staged_dir.is_dir():
                continue
            for staged in sorted(staged_dir.rglob("*")):
                if staged.is_file():
                    target = p[sub] / staged.relative_to(staged_dir)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(staged, target)
        staged_vault = staging / p["vault"].name
        if staged_vault.exists():
            os.replace(staged_vault, p["vault"])
        shutil.rmtree(staging)
    except OSError as e:
        raise VaultIOError(f"failed to apply re-encrypted files: {e.strerror or e}") from e


def recover_pending_rekey(root: Path) -> Optional[str]:
    """Returns "rolled_forward", "discarded" or None when nothing was pending."""
    staging = repo_paths(root)["staging"]
    if not staging.exists():
        return None
    if (staging / COMMIT_MARKER).exists():
        apply_staged_rekey(root)
        logger.warning("completed an interrupted passphrase change in %s", root)
        return "rolled_forward"
    _discard(staging)
    logger.warning("discarded an uncommitted passphrase change in %s", root)
    return "discarded"


def write_export(root: Path, content: str, today: Optional[datetime] = None) -> Path:
    today = today or utc_now()
    target = repo_paths(root)["exports"] / f"diary-{today:%Y-%m-%d}.md"
    write_atomic(target, content.encode("utf-8"))
    return target
