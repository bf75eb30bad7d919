"""Tests for the VaultManager state machine."""
import json
import time

import pytest

from diaryvault.storage.entries import entry_file_path
from diaryvault.utils.core import VaultManager
from diaryvault.utils.dataModels import Entry, TextEncryption
from diaryvault.utils.errors import (
    AttachmentNotFound,
    DecryptionFailed,
    EmptyAttachment,
    EmptyPassphrase,
    EntryContentMissing,
    EntryNotFound,
    MalformedEnvelope,
    PassphraseMismatch,
    SourceNotFound,
    UnsupportedAlgorithm,
    UnsupportedVersion,
    VaultIOError,
    VaultLocked,
    WeakPassphrase,
)
from diaryvault.utils.helper import utc_now

PASSPHRASE = "correct-horse"


class TestUnlock:
    def test_creates_vault(self, manager, vault_root):
        resp = manager.unlock(PASSPHRASE, vault_root)
        assert resp.created is True
        assert resp.entries == []
        assert resp.last_saved is not None
        assert resp.text_encryption is TextEncryption.AES256_GCM
        assert resp.available_text_encryptions == [TextEncryption.AES256_GCM]
        assert resp.vault_root == str(vault_root).replace("\\", "/")
        assert (vault_root / "vault.json").exists()
        assert (vault_root / "entries").is_dir()
        assert (vault_root / "attachments").is_dir()
        assert manager.is_unlocked

    def test_reopens_existing_vault(self, unlocked, vault_root):
        unlocked.create_entry("Day 1", "Hello")
        unlocked.lock()
        resp = unlocked.unlock(PASSPHRASE, vault_root)
        assert resp.created is False
        assert [e.title for e in resp.entries] == ["Day 1"]
        assert resp.last_saved is not None

    def test_wrong_passphrase(self, unlocked, vault_root):
        unlocked.create_entry("Day 1", "Hello")
        unlocked.lock()
        with pytest.raises(DecryptionFailed):
            unlocked.unlock("wrong", vault_root)
        assert not unlocked.is_unlocked

    def test_empty_passphrase(self, manager, vault_root):
        with pytest.raises(EmptyPassphrase):
            manager.unlock("", vault_root)
        assert not (vault_root / "vault.json").exists()

    def test_unsupported_preferred_algorithm(self, manager, vault_root):
        with pytest.raises(UnsupportedAlgorithm):
            manager.unlock(PASSPHRASE, vault_root, "rot13")
        assert not (vault_root / "vault.json").exists()
        assert not manager.is_unlocked

    def test_stored_algorithm_must_be_supported(self, manager, vault_root, monkeypatch):
        from diaryvault.utils import dataModels

        manager.unlock(PASSPHRASE, vault_root)
        manager.lock()
        real_to_bytes = dataModels.VaultMetadata.to_bytes

        def future_tag(self):
            obj = json.loads(real_to_bytes(self))
            obj["text_encryption"] = "xchacha20_poly1305"
            return json.dumps(obj).encode("utf-8")

        # rewrite the metadata as a newer engine would
        monkeypatch.setattr(dataModels.VaultMetadata, "to_bytes", future_tag)
        manager.unlock(PASSPHRASE, vault_root)
        manager.create_entry("x", "y")
        manager.lock()
        monkeypatch.undo()

        with pytest.raises(UnsupportedAlgorithm):
            manager.unlock(PASSPHRASE, vault_root)
        assert not manager.is_unlocked

    def test_unsupported_container_version(self, manager, vault_root):
        manager.unlock(PASSPHRASE, vault_root)
        manager.lock()
        path = vault_root / "vault.json"
        obj = json.loads(path.read_text())
        obj["version"] = 7
        path.write_text(json.dumps(obj))
        with pytest.raises(UnsupportedVersion):
            manager.unlock(PASSPHRASE, vault_root)

    @pytest.mark.parametrize("field,value", [("updated_at", 12345), ("updated_at", ["2024"]), ("salt", 7)])
    def test_malformed_container_field(self, manager, vault_root, field, value):
        manager.unlock(PASSPHRASE, vault_root)
        manager.lock()
        path = vault_root / "vault.json"
        obj = json.loads(path.read_text())
        obj[field] = value
        path.write_text(json.dumps(obj))
        with pytest.raises(MalformedEnvelope):
            manager.unlock(PASSPHRASE, vault_root)
        assert not manager.is_unlocked

    def test_salt_is_not_regenerated(self, unlocked, vault_root):
        salt = json.loads((vault_root / "vault.json").read_text())["salt"]
        unlocked.create_entry("a", "b")
        unlocked.lock()
        unlocked.unlock(PASSPHRASE, vault_root)
        assert json.loads((vault_root / "vault.json").read_text())["salt"] == salt


class TestLocked:
    @pytest.mark.parametrize(
        "call",
        [
            lambda m: m.list(),
            lambda m: m.load_entry("00000000-0000-0000-0000-000000000000"),
            lambda m: m.create_entry("t", "c"),
            lambda m: m.update_entry(Entry.new("t", "c")),
            lambda m: m.delete_entry("00000000-0000-0000-0000-000000000000"),
            lambda m: m.export_plaintext(),
            lambda m: m.export_plaintext_file(),
            lambda m: m.store_image_bytes(None, "image/png", b"x"),
            lambda m: m.store_image("picture.png"),
            lambda m: m.decrypt_image("attachments/x.png"),
            lambda m: m.change_passphrase("correct-horse", "new-passphrase"),
            lambda m: m.vault_root(),
        ],
    )
    def test_operations_require_unlock(self, manager, call):
        with pytest.raises(VaultLocked):
            call(manager)

    def test_lock_is_idempotent(self, unlocked):
        unlocked.lock()
        unlocked.lock()
        assert not unlocked.is_unlocked
        with pytest.raises(VaultLocked):
            unlocked.list()


class TestEntries:
    def test_create_then_load(self, unlocked, vault_root):
        entry = unlocked.create_entry("T", "C")
        loaded = unlocked.load_entry(entry.id)
        assert loaded.content == "C"
        assert loaded.created_at == loaded.updated_at
        rows = [e for e in unlocked.list() if e.id == entry.id]
        assert len(rows) == 1
        assert entry_file_path(vault_root / "entries", entry.id).exists()

    def test_load_accepts_string_id(self, unlocked):
        entry = unlocked.create_entry("T", "C")
        assert unlocked.load_entry(str(entry.id)).title == "T"

    def test_create_defaults(self, unlocked):
        entry = unlocked.create_entry()
        assert entry.title == "Untitled entry"
        assert unlocked.load_entry(entry.id).content == ""

    def test_create_with_vault_algorithm(self, unlocked):
        entry = unlocked.create_entry("T", "C", "aes256_gcm")
        assert unlocked.load_entry(entry.id).content == "C"

    def test_create_with_unsupported_algorithm(self, unlocked):
        with pytest.raises(UnsupportedAlgorithm):
            unlocked.create_entry("T", "C", "rot13")
        assert unlocked.list() == []

    def test_load_unknown(self, unlocked):
        with pytest.raises(EntryNotFound):
            unlocked.load_entry("00000000-0000-0000-0000-000000000000")
        with pytest.raises(EntryNotFound):
            unlocked.load_entry("not-a-uuid")

    def test_load_missing_content(self, unlocked, vault_root):
        entry = unlocked.create_entry("T", "C")
        entry_file_path(vault_root / "entries", entry.id).unlink()
        with pytest.raises(EntryContentMissing):
            unlocked.load_entry(entry.id)

    def test_update_bumps_timestamp_and_keeps_created(self, unlocked):
        entry = unlocked.create_entry("T", "C")
        time.sleep(0.002)
        entry.title = "T2"
        entry.content = "C2"
        entry.folder = "travel"
        entry.created_at = utc_now()  # ignored
        updated = unlocked.update_entry(entry)
        assert updated.updated_at > entry.updated_at
        stored = unlocked.load_entry(entry.id)
        assert stored.created_at == unlocked.list()[0].created_at
        assert stored.created_at < stored.updated_at
        assert (stored.title, stored.content, stored.folder) == ("T2", "C2", "travel")

    def test_update_preserves_created_at(self, unlocked):
        entry = unlocked.create_entry("T", "C")
        created = entry.created_at
        entry.created_at = utc_now()
        assert unlocked.update_entry(entry).created_at == created

    def test_back_to_back_updates_are_strictly_ordered(self, unlocked):
        entry = unlocked.create_entry("T", "C")
        first = unlocked.update_entry(entry)
        second = unlocked.update_entry(first)
        assert second.updated_at > first.updated_at > entry.updated_at

    def test_update_unknown(self, unlocked):
        entry = unlocked.create_entry("T", "C")
        unlocked.delete_entry(entry.id)
        with pytest.raises(EntryNotFound):
            unlocked.update_entry(entry)

    def test_list_sorted_by_recent_update(self, unlocked):
        a = unlocked.create_entry("a", "")
        b = unlocked.create_entry("b", "")
        unlocked.update_entry(b)
        time.sleep(0.002)
        unlocked.update_entry(a)
        assert [e.title for e in unlocked.list()] == ["a", "b"]
        time.sleep(0.002)
        unlocked.update_entry(unlocked.load_entry(b.id))
        assert [e.title for e in unlocked.list()] == ["b", "a"]

    def test_list_returns_copies(self, unlocked):
        unlocked.create_entry("a", "")
        unlocked.list()[0].title = "mutated"
        assert unlocked.list()[0].title == "a"

    def test_delete_is_total(self, unlocked, vault_root):
        entry = unlocked.create_entry("T", "C")
        unlocked.delete_entry(entry.id)
        with pytest.raises(EntryNotFound):
            unlocked.load_entry(entry.id)
        assert not entry_file_path(vault_root / "entries", entry.id).exists()
        assert unlocked.list() == []

    def test_delete_tolerates_missing_file(self, unlocked, vault_root):
        entry = unlocked.create_entry("T", "C")
        entry_file_path(vault_root / "entries", entry.id).unlink()
        unlocked.delete_entry(entry.id)
        assert unlocked.list() == []

    def test_delete_unknown(self, unlocked):
        with pytest.raises(EntryNotFound):
            unlocked.delete_entry("00000000-0000-0000-0000-000000000000")

    def test_changes_persist_across_sessions(self, unlocked, vault_root):
        keep = unlocked.create_entry("keep", "body")
        gone = unlocked.create_entry("gone", "body")
        unlocked.delete_entry(gone.id)
        unlocked.lock()
        unlocked.unlock(PASSPHRASE, vault_root)
        assert [e.id for e in unlocked.list()] == [keep.id]
        assert unlocked.load_entry(keep.id).content == "body"

    def test_failed_metadata_write_leaves_no_index_row(self, unlocked, vault_root, monkeypatch):
        from diaryvault.utils import core
        from diaryvault.utils.errors import VaultIOError

        def boom(*args, **kwargs):
            raise VaultIOError("disk full")

        monkeypatch.setattr(core, "save_vault", boom)
        with pytest.raises(VaultIOError):
            unlocked.create_entry("T", "C")
        assert unlocked.list() == []
        # the orphaned content file is the accepted leftover
        assert len(list((vault_root / "entries").glob("*.bin"))) == 1


class TestExport:
    def test_export_plaintext(self, unlocked):
        unlocked.create_entry("older", "first body")
        time.sleep(0.002)
        unlocked.create_entry("newer", "second body")
        text = unlocked.export_plaintext()
        assert text.index("# newer") < text.index("# older")
        assert "first body" in text and "second body" in text
        assert "Created: " in text and "Updated: " in text
        assert text.count("\n---\n") == 1

    def test_export_empty_vault(self, unlocked):
        assert unlocked.export_plaintext() == ""

    def test_export_file(self, unlocked, vault_root):
        unlocked.create_entry("Day 1", "Hello")
        target = unlocked.export_plaintext_file()
        assert target.parent == vault_root / "exports"
        assert target.name == f"diary-{utc_now():%Y-%m-%d}.md"
        assert "Hello" in target.read_text(encoding="utf-8")


class TestAttachments:
    def test_store_and_decrypt_file(self, unlocked, tmp_path, vault_root):
        source = tmp_path / "cat.jpeg"
        source.write_bytes(b"\xff\xd8\xff" + b"meow" * 100)
        rel = unlocked.store_image(source)
        assert rel.startswith("attachments/") and rel.endswith(".jpeg")
        assert b"meow" not in (vault_root / rel).read_bytes()
        assert unlocked.decrypt_image(rel) == source.read_bytes()
        assert unlocked.decrypt_image(str(vault_root / rel)) == source.read_bytes()

    def test_store_bytes_uses_mime(self, unlocked):
        rel = unlocked.store_image_bytes(None, "image/png", b"\x89PNG data")
        assert rel.endswith(".png")
        assert unlocked.decrypt_image(rel) == b"\x89PNG data"

    def test_store_bytes_prefers_name(self, unlocked):
        assert unlocked.store_image_bytes("paste.GIF", "image/png", b"x").endswith(".gif")

    def test_empty_bytes(self, unlocked):
        with pytest.raises(EmptyAttachment):
            unlocked.store_image_bytes("a.png", None, b"")

    def test_empty_source_file(self, unlocked, tmp_path):
        source = tmp_path / "empty.png"
        source.write_bytes(b"")
        with pytest.raises(EmptyAttachment):
            unlocked.store_image(source)

    def test_missing_source(self, unlocked, tmp_path):
        with pytest.raises(SourceNotFound):
            unlocked.store_image(tmp_path / "nope.png")

    def test_missing_attachment(self, unlocked):
        with pytest.raises(AttachmentNotFound):
            unlocked.decrypt_image("attachments/2020/01/nope.png")

    def test_legacy_plaintext_attachment(self, unlocked, vault_root):
        legacy = vault_root / "attachments" / "old.png"
        legacy.write_bytes(b"\x89PNG legacy bytes that were never encrypted")
        assert unlocked.decrypt_image("attachments/old.png") == legacy.read_bytes()


class TestChangePassphrase:
    def test_reencrypts_everything(self, unlocked, vault_root):
        entry = unlocked.create_entry("Day 1", "Hello")
        rel = unlocked.store_image_bytes(None, "image/png", b"picture")
        old_salt = json.loads((vault_root / "vault.json").read_text())["salt"]

        unlocked.change_passphrase(PASSPHRASE, "battery-staple")
        # still usable in the same session
        assert unlocked.load_entry(entry.id).content == "Hello"
        assert unlocked.decrypt_image(rel) == b"picture"
        assert not (vault_root / ".rekey").exists()
        assert json.loads((vault_root / "vault.json").read_text())["salt"] != old_salt

        unlocked.lock()
        with pytest.raises(DecryptionFailed):
            unlocked.unlock(PASSPHRASE, vault_root)
        unlocked.unlock("battery-staple", vault_root)
        assert unlocked.load_entry(entry.id).content == "Hello"
        assert unlocked.decrypt_image(rel) == b"picture"

    def test_wrong_old_passphrase(self, unlocked):
        with pytest.raises(PassphraseMismatch):
            unlocked.change_passphrase("not-it", "battery-staple")

    @pytest.mark.parametrize("new,exc", [("", EmptyPassphrase), ("   ", EmptyPassphrase), ("short", WeakPassphrase)])
    def test_new_passphrase_rules(self, unlocked, new, exc):
        with pytest.raises(exc):
            unlocked.change_passphrase(PASSPHRASE, new)

    def test_failure_before_commit_keeps_old_passphrase(self, unlocked, vault_root):
        entry = unlocked.create_entry("Day 1", "Hello")
        unlocked.create_entry("broken", "x")
        broken = [e for e in unlocked.list() if e.title == "broken"][0]
        entry_file_path(vault_root / "entries", broken.id).unlink()

        with pytest.raises(EntryContentMissing):
            unlocked.change_passphrase(PASSPHRASE, "battery-staple")
        assert not (vault_root / ".rekey").exists()
        assert unlocked.load_entry(entry.id).content == "Hello"
        unlocked.lock()
        unlocked.unlock(PASSPHRASE, vault_root)

    def test_interrupted_after_commit_rolls_forward(self, unlocked, vault_root, monkeypatch):
        from diaryvault.utils import core

        entry = unlocked.create_entry("Day 1", "Hello")
        monkeypatch.setattr(core, "apply_staged_rekey", lambda root: None)
        unlocked.change_passphrase(PASSPHRASE, "battery-staple")
        assert (vault_root / ".rekey" / "COMMIT").exists()
        monkeypatch.undo()

        other = VaultManager()
        other.unlock("battery-staple", vault_root)
        assert not (vault_root / ".rekey").exists()
        assert other.load_entry(entry.id).content == "Hello"
        other.lock()

    def test_failed_swap_after_commit_locks_session(self, unlocked, vault_root, monkeypatch):
        from diaryvault.utils import core

        entry = unlocked.create_entry("Day 1", "Hello")

        def swap_fails(root):
            raise VaultIOError("disk full")

        monkeypatch.setattr(core, "apply_staged_rekey", swap_fails)
        with pytest.raises(VaultIOError):
            unlocked.change_passphrase(PASSPHRASE, "battery-staple")
        assert not unlocked.is_unlocked
        with pytest.raises(VaultLocked):
            unlocked.create_entry("Day 2", "lost?")
        monkeypatch.undo()

        unlocked.unlock("battery-staple", vault_root)
        assert not (vault_root / ".rekey").exists()
        assert [e.id for e in unlocked.list()] == [entry.id]
        assert unlocked.load_entry(entry.id).content == "Hello"

        unlocked.create_entry("Day 2", "kept")
        unlocked.lock()
        unlocked.unlock("battery-staple", vault_root)
        assert sorted(e.title for e in unlocked.list()) == ["Day 1", "Day 2"]

    def test_pending_commit_blocks_new_rotation(self, unlocked, vault_root):
        entry = unlocked.create_entry("Day 1", "Hello")
        staging = vault_root / ".rekey"
        staging.mkdir()
        (staging / "COMMIT").write_text("pending")
        (staging / "entries").mkdir()
        (staging / "entries" / "keep.bin").write_text("{}")

        with pytest.raises(VaultIOError):
            unlocked.change_passphrase(PASSPHRASE, "battery-staple")
        assert (staging / "COMMIT").exists()
        assert (staging / "entries" / "keep.bin").exists()
        assert unlocked.load_entry(entry.id).content == "Hello"

    def test_uncommitted_staging_is_discarded(self, unlocked, vault_root, monkeypatch):
        from diaryvault.utils import core

        entry = unlocked.create_entry("Day 1", "Hello")

        def crash(root):
            raise KeyboardInterrupt

        monkeypatch.setattr(core, "commit_rekey", crash)
        with pytest.raises(KeyboardInterrupt):
            unlocked.change_passphrase(PASSPHRASE, "battery-staple")
        assert (vault_root / ".rekey").exists()
        monkeypatch.undo()

        other = VaultManager()
        other.unlock(PASSPHRASE, vault_root)
        assert not (vault_root / ".rekey").exists()
        assert other.load_entry(entry.id).content == "Hello"
        other.lock()


def test_journal_scenario(tmp_path):
    root = tmp_path / "journal"
    vault = VaultManager()

    resp = vault.unlock("correct-horse", root)
    assert resp.created is True
    assert resp.entries == []

    vault.create_entry("Day 1", "Hello")
    vault.lock()

    resp = vault.unlock("correct-horse", root)
    assert resp.created is False
    assert [e.title for e in resp.entries] == ["Day 1"]

    attempt = VaultManager()
    with pytest.raises(DecryptionFailed):
        attempt.unlock("wrong", root)

    text = vault.export_plaintext()
    assert "Day 1" in text
    assert "Hello" in text
    vault.lock()
