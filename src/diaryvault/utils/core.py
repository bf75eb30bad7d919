"""Vault state machine.

``VaultManager`` is either locked or holds exactly one ``UnlockedVault``. Every
operation runs to completion under a single lock; the session key never leaves
this module.
"""
from __future__ import annotations

import hmac
import logging
import threading

from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import List, Optional
from uuid import UUID

from diaryvault.crypto.aead import ensure_supported
from diaryvault.crypto.kdf import derive_key, new_salt
from diaryvault.storage.attachments import (
    infer_image_extension,
    load_attachment,
    read_source,
    store_attachment,
)
from diaryvault.storage.entries import load_entry_content, remove_entry_content, save_entry_content
from diaryvault.storage.vault import decrypt_metadata, load_vault, save_vault, vault_salt
from diaryvault.utils.dataModels import (
    DEFAULT_ENTRY_TITLE,
    METADATA_VERSION,
    MIN_PASSPHRASE_LEN,
    Entry,
    EntryInfo,
    TextEncryption,
    UnlockResponse,
    VaultMetadata,
)
from diaryvault.utils.errors import (
    EmptyPassphrase,
    EntryNotFound,
    PassphraseMismatch,
    UnsupportedAlgorithm,
    VaultIOError,
    VaultLocked,
    WeakPassphrase,
)
from diaryvault.utils.helper import display_path, format_ts, repo_paths, utc_now
from diaryvault.utils.maintain import (
    apply_staged_rekey,
    commit_rekey,
    recover_pending_rekey,
    stage_rekey,
    write_export,
)

logger = logging.getLogger(__name__)

EXPORT_SEPARATOR = "\n---\n\n"


@dataclass
class UnlockedVault:
    key: bytes
    salt: bytes
    metadata: List[EntryInfo]
    root: Path
    path: Path
    entries_dir: Path
    attachments_dir: Path
    text_encryption: TextEncryption
    last_saved: datetime

    def find(self, fid: UUID) -> Optional[EntryInfo]:
        return next((e for e in self.metadata if e.id == fid), None)

    def snapshot(self) -> VaultMetadata:
        return VaultMetadata(version=METADATA_VERSION, entries=list(self.metadata), text_encryption=self.text_encryption)


def _as_uuid(value) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as e:
        raise EntryNotFound() from e


def _sorted_by_recent(entries: List[EntryInfo]) -> List[EntryInfo]:
    # stable sort: equal timestamps keep insertion order
    return sorted((replace(e) for e in entries), key=lambda e: e.updated_at, reverse=True)


class VaultManager:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._vault: Optional[UnlockedVault] = None

    @property
    def is_unlocked(self) -> bool:
        with self._lock:
            return self._vault is not None

    def _require(self) -> UnlockedVault:
        if self._vault is None:
            raise VaultLocked()
        return self._vault

    def _save_metadata(self, vault: UnlockedVault) -> None:
        timestamp = utc_now()
        save_vault(vault.path, vault.salt, vault.key, vault.snapshot(), timestamp)
        vault.last_saved = timestamp

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def unlock(self, passphrase: str, root_path, preferred_encryption=None) -> UnlockResponse:
        """Open the vault at ``root_path``, creating it when no metadata file exists.

        Raises:
            EmptyPassphrase: passphrase is empty.
            UnsupportedVersion / MalformedEnvelope: the metadata file is not readable.
            DecryptionFailed: wrong passphrase or damaged metadata (not distinguished).
            UnsupportedAlgorithm: requested or stored text encryption is not supported.
        """
        if not passphrase:
            raise EmptyPassphrase()
        root = Path(root_path)
        p = repo_paths(root)

        with self._lock:
            try:
                p["entries"].mkdir(parents=True, exist_ok=True)
                p["attachments"].mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise VaultIOError(f"failed to prepare vault directories: {e.strerror or e}") from e
            recover_pending_rekey(root)

            if not p["vault"].exists():
                text_encryption = ensure_supported(preferred_encryption)
                salt = new_salt()
                key = derive_key(passphrase, salt)
                now = utc_now()
                metadata = VaultMetadata(version=METADATA_VERSION, entries=[], text_encryption=text_encryption)
                save_vault(p["vault"], salt, key, metadata, now)
                self._vault = UnlockedVault(
                    key=key,
                    salt=salt,
                    metadata=[],
                    root=root,
                    path=p["vault"],
                    entries_dir=p["entries"],
                    attachments_dir=p["attachments"],
                    text_encryption=text_encryption,
                    last_saved=now,
                )
                logger.info("created new vault at %s", display_path(root))
                return UnlockResponse(
                    entries=[],
                    created=True,
                    last_saved=format_ts(now),
                    vault_root=display_path(root),
                    text_encryption=text_encryption,
                )

            stored = load_vault(p["vault"])
            salt = vault_salt(stored)
            key = derive_key(passphrase, salt)
            metadata = decrypt_metadata(stored, key)
            text_encryption = ensure_supported(metadata.text_encryption)

            self._vault = UnlockedVault(
                key=key,
                salt=salt,
                metadata=metadata.entries,
                root=root,
                path=p["vault"],
                entries_dir=p["entries"],
                attachments_dir=p["attachments"],
                text_encryption=text_encryption,
                last_saved=stored.updated_at or utc_now(),
            )
            logger.info("unlocked vault at %s (%d entries)", display_path(root), len(metadata.entries))
            return UnlockResponse(
                entries=[replace(e) for e in metadata.entries],
                created=False,
                last_saved=format_ts(stored.updated_at) if stored.updated_at else None,
                vault_root=display_path(root),
                text_encryption=text_encryption,
            )

    def lock(self) -> None:
        with self._lock:
            if self._vault is not None:
                logger.info("vault locked")
            self._vault = None

    def vault_root(self) -> Path:
        with self._lock:
            return self._require().root

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def list(self) -> List[EntryInfo]:
        with self._lock:
            return _sorted_by_recent(self._require().metadata)

    def load_entry(self, entry_id) -> Entry:
        fid = _as_uuid(entry_id)
        with self._lock:
            vault = self._require()
            info = vault.find(fid)
            if info is None:
                raise EntryNotFound()
            content = load_entry_content(vault.entries_dir, vault.key, vault.text_encryption, fid)
            return Entry.from_info(info, content)

    def create_entry(self, title: Optional[str] = None, content: Optional[str] = None, algorithm=None) -> Entry:
        with self._lock:
            vault = self._require()
            if algorithm is not None and ensure_supported(algorithm) != vault.text_encryption:
                raise UnsupportedAlgorithm(
                    f"vault is encrypted with {vault.text_encryption.value}; entries cannot use another method"
                )
            entry = Entry.new(DEFAULT_ENTRY_TITLE if title is None else title, content or "")
            save_entry_content(vault.entries_dir, vault.key, vault.text_encryption, entry.id, entry.content)
            vault.metadata.append(entry.metadata())
            try:
                self._save_metadata(vault)
            except Exception:
                vault.metadata.pop()
                raise
            logger.debug("created entry %s", entry.id)
            return entry

    def update_entry(self, entry: Entry) -> Entry:
        fid = _as_uuid(entry.id)
        with self._lock:
            vault = self._require()
            info = vault.find(fid)
            if info is None:
                raise EntryNotFound()
            previous = replace(info)
            info.title = entry.title
            info.folder = entry.folder
            info.touch()
            try:
                save_entry_content(vault.entries_dir, vault.key, vault.text_encryption, fid, entry.content)
                self._save_metadata(vault)
            except Exception:
                info.title, info.folder, info.updated_at = previous.title, previous.folder, previous.updated_at
                raise
            logger.debug("updated entry %s", fid)
            return Entry.from_info(info, entry.content)

    def delete_entry(self, entry_id) -> None:
        fid = _as_uuid(entry_id)
        with self._lock:
            vault = self._require()
            info = vault.find(fid)
            if info is None:
                raise EntryNotFound()
            position = vault.metadata.index(info)
            del vault.metadata[position]
            try:
                self._save_metadata(vault)
            except Exception:
                vault.metadata.insert(position, info)
                raise
            remove_entry_content(vault.entries_dir, fid)
            logger.debug("deleted entry %s", fid)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def _render_export(self, vault: UnlockedVault) -> str:
        blocks = []
        for info in _sorted_by_recent(vault.metadata):
            content = load_entry_content(vault.entries_dir, vault.key, vault.text_encryption, info.id)
            blocks.append(
                f"# {info.title}\n"
                f"Created: {format_ts(info.created_at)}\n"
                f"Updated: {format_ts(info.updated_at)}\n"
                f"\n{content}\n"
            )
        return EXPORT_SEPARATOR.join(blocks)

    def export_plaintext(self) -> str:
        with self._lock:
            return self._render_export(self._require())

    def export_plaintext_file(self) -> Path:
        """Write the plaintext export to ``exports/diary-<date>.md`` and return its path."""
        with self._lock:
            vault = self._require()
            target = write_export(vault.root, self._render_export(vault))
            logger.info("exported %d entries to %s", len(vault.metadata), display_path(target))
            return target

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def store_image(self, source_path) -> str:
        source = Path(source_path)
        with self._lock:
            vault = self._require()
            data = read_source(source)
            extension = infer_image_extension(source.name, None)
            return store_attachment(vault.root, vault.attachments_dir, vault.key, data, extension)

    def store_image_bytes(self, name: Optional[str], mime: Optional[str], data: bytes) -> str:
        with self._lock:
            vault = self._require()
            extension = infer_image_extension(name, mime)
            return store_attachment(vault.root, vault.attachments_dir, vault.key, bytes(data), extension)

    def decrypt_image(self, path: str) -> bytes:
        with self._lock:
            vault = self._require()
            return load_attachment(vault.root, vault.key, path)

    # ------------------------------------------------------------------
    # Passphrase
    # ------------------------------------------------------------------

    def change_passphrase(self, old_passphrase: str, new_passphrase: str) -> None:
        """Re-encrypt metadata and all entries under a key derived from ``new_passphrase``.

        Encrypted attachments are re-encrypted too. The new files are staged and
        committed as one unit; see ``utils.maintain``.
        """
        if not new_passphrase or not new_passphrase.strip():
            raise EmptyPassphrase("new passphrase must not be empty")
        if len(new_passphrase) < MIN_PASSPHRASE_LEN:
            raise WeakPassphrase(f"new passphrase must be at least {MIN_PASSPHRASE_LEN} characters")

        with self._lock:
            vault = self._require()
            if not hmac.compare_digest(derive_key(old_passphrase, vault.salt), vault.key):
                raise PassphraseMismatch()

            salt = new_salt()
            key = derive_key(new_passphrase, salt)
            timestamp = utc_now()
            count = stage_rekey(vault.root, vault.metadata, vault.key, key, salt, vault.snapshot(), timestamp)
            commit_rekey(vault.root)
            # committed: from here the new passphrase is authoritative
            vault.key, vault.salt, vault.last_saved = key, salt, timestamp
            try:
                apply_staged_rekey(vault.root)
            except VaultIOError:
                # unlock rolls the committed files forward
                self._vault = None
                logger.error("passphrase change committed but not applied; vault locked")
                raise
            logger.info("passphrase changed, %d files re-encrypted", count)

