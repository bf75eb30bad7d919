"""Shared fixtures for vault tests."""
import pytest

from diaryvault.utils.core import VaultManager

PASSPHRASE = "correct-horse"


@pytest.fixture
def vault_root(tmp_path):
    return tmp_path / "vault"


@pytest.fixture
def manager():
    m = VaultManager()
    yield m
    m.lock()


@pytest.fixture
def unlocked(manager, vault_root):
    """A freshly created, unlocked vault."""
    manager.unlock(PASSPHRASE, vault_root)
    return manager


@pytest.fixture
def key():
    return bytes(range(32))
