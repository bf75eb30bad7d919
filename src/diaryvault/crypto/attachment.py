"""AES-256-CTR envelope for image attachments.

Layout: ``VAULTIMG || marker || IV(16) || ciphertext``. Files without the magic
prefix predate attachment encryption and are handed back as-is.
"""
import os

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from diaryvault.utils.dataModels import (
    DEFAULT_IMAGE_ENCRYPTION,
    IMAGE_MAGIC_PREFIX,
    IV_LEN,
    ImageEncryption,
)
from diaryvault.utils.errors import EncryptionFailed, TruncatedAttachment


def _ctr_keystream(key: bytes, iv: bytes, data: bytes) -> bytes:
    try:
        ctx = Cipher(algorithms.AES(key), modes.CTR(iv)).encryptor()
    except ValueError as e:
        raise EncryptionFailed("invalid attachment key") from e
    return ctx.update(data) + ctx.finalize()


_STREAMS = {
    ImageEncryption.AES256_CTR: _ctr_keystream,
}


def is_encrypted(data: bytes) -> bool:
    return data.startswith(IMAGE_MAGIC_PREFIX)


def encrypt_image_data(key: bytes, data: bytes, method: ImageEncryption = DEFAULT_IMAGE_ENCRYPTION) -> bytes:
    iv = os.urandom(IV_LEN)
    body = _STREAMS[method](key, iv, data)
    return IMAGE_MAGIC_PREFIX + method.marker + iv + body


def decrypt_image_data(key: bytes, data: bytes) -> bytes:
    if not is_encrypted(data):
        return data
    if len(data) < len(IMAGE_MAGIC_PREFIX) + IV_LEN:
        raise TruncatedAttachment()

    offset = len(IMAGE_MAGIC_PREFIX)
    method = ImageEncryption.detect(data[offset:])
    if method is None:
        # written before markers existed
        method = ImageEncryption.AES256_CTR
    else:
        offset += len(method.marker)

    if len(data) < offset + IV_LEN:
        raise TruncatedAttachment("invalid encrypted image: missing iv")
    iv = data[offset:offset + IV_LEN]
    return _STREAMS[method](key, iv, data[offset + IV_LEN:])
