import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from typing import Callable, Dict, Tuple

from diaryvault.utils.dataModels import (
    DEFAULT_TEXT_ENCRYPTION,
    NONCE_LEN,
    SUPPORTED_TEXT_ENCRYPTIONS,
    TextEncryption,
)
from diaryvault.utils.errors import (
    DecryptionFailed,
    EncryptionFailed,
    MalformedEnvelope,
    UnsupportedAlgorithm,
)

# algorithm tag -> AEAD class taking a 32-byte key
_CIPHERS: Dict[TextEncryption, Callable[[bytes], AESGCM]] = {
    TextEncryption.AES256_GCM: AESGCM,
}


def ensure_supported(method) -> TextEncryption:
    """Return ``method`` as a TextEncryption, or raise UnsupportedAlgorithm."""
    if method is None:
        return DEFAULT_TEXT_ENCRYPTION
    try:
        method = TextEncryption(method)
    except ValueError as e:
        raise UnsupportedAlgorithm(f"unsupported text encryption method: {method}") from e
    if method not in SUPPORTED_TEXT_ENCRYPTIONS:
        raise UnsupportedAlgorithm(f"unsupported text encryption method: {method.value}")
    return method


def aead_encrypt(
    key: bytes,
    plaintext: bytes,
    method: TextEncryption = DEFAULT_TEXT_ENCRYPTION,
    aad: bytes | None = None,
) -> Tuple[bytes, bytes]:
    nonce = os.urandom(NONCE_LEN)
    try:
        cipher = _CIPHERS[ensure_supported(method)](key)
        ct = cipher.encrypt(nonce, plaintext, aad)
    except (ValueError, OverflowError) as e:
        raise EncryptionFailed() from e
    return nonce, ct


def aead_decrypt(
    key: bytes,
    nonce: bytes,
    ct: bytes,
    method: TextEncryption = DEFAULT_TEXT_ENCRYPTION,
    aad: bytes | None = None,
) -> bytes:
    if len(nonce) != NONCE_LEN:
        raise MalformedEnvelope("invalid nonce length")
    try:
        cipher = _CIPHERS[ensure_supported(method)](key)
        return cipher.decrypt(nonce, ct, aad)
    except (InvalidTag, ValueError) as e:
        # wrong key, truncation and tampering are indistinguishable on purpose
        raise DecryptionFailed() from e
