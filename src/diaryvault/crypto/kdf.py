import logging
import os

from argon2.exceptions import HashingError
from argon2.low_level import hash_secret_raw, Type as Argon2Type

from diaryvault.utils.dataModels import (
    ARGON2_M_COST_KiB,
    ARGON2_PARALLELISM,
    ARGON2_T_COST,
    KEY_LEN,
    SALT_LEN,
)
from diaryvault.utils.errors import KeyDerivationError

logger = logging.getLogger(__name__)


def new_salt() -> bytes:
    return os.urandom(SALT_LEN)


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Key = Argon2id(passphrase, salt) -> 32 bytes, with the fixed engine parameters."""
    if len(salt) != SALT_LEN:
        raise KeyDerivationError(f"invalid salt length: {len(salt)}")
    try:
        secret = passphrase.encode("utf-8")
    except UnicodeEncodeError as e:
        raise KeyDerivationError("passphrase is not valid text") from e
    try:
        return hash_secret_raw(
            secret=secret,
            salt=salt,
            time_cost=ARGON2_T_COST,
            memory_cost=ARGON2_M_COST_KiB,
            parallelism=ARGON2_PARALLELISM,
            hash_len=KEY_LEN,
            type=Argon2Type.ID,
        )
    except HashingError as e:
        logger.error("argon2 key derivation failed: %s", e)
        raise KeyDerivationError() from e
