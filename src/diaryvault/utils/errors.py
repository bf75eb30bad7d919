"""Error taxonomy for the vault engine.

Every failure surfaces as a ``VaultError`` subclass carrying a message that is
safe to show to the end user. ``DecryptionFailed`` deliberately does not say
whether the passphrase or the data was at fault.
"""


class VaultError(Exception):
    default_message = "vault operation failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class VaultLocked(VaultError):
    default_message = "vault is locked"


class NotFound(VaultError):
    default_message = "not found"


class EntryNotFound(NotFound):
    default_message = "entry not found"


class EntryContentMissing(NotFound):
    default_message = "entry content missing"


class AttachmentNotFound(NotFound):
    default_message = "attachment file does not exist"


class SourceNotFound(NotFound):
    default_message = "selected image does not exist"


class FormatError(VaultError):
    default_message = "malformed vault data"


class UnsupportedVersion(FormatError):
    default_message = "unsupported format version"


class MalformedEnvelope(FormatError):
    pass


class TruncatedAttachment(FormatError):
    default_message = "invalid encrypted image: too short"


class CryptoError(VaultError):
    default_message = "cryptographic operation failed"


class KeyDerivationError(CryptoError):
    default_message = "failed to derive key"


class DecryptionFailed(CryptoError):
    default_message = "decryption failed"


class EncryptionFailed(CryptoError):
    default_message = "encryption failed"


class VaultIOError(VaultError):
    default_message = "filesystem operation failed"


class ValidationError(VaultError):
    default_message = "invalid input"


class UnsupportedAlgorithm(ValidationError):
    default_message = "unsupported text encryption method"


class EmptyAttachment(ValidationError):
    default_message = "image data is empty"


class EmptyPassphrase(ValidationError):
    default_message = "passphrase must not be empty"


class WeakPassphrase(ValidationError):
    default_message = "new passphrase is too short"


class PassphraseMismatch(ValidationError):
    default_message = "current passphrase is incorrect"


def error_message(exc: BaseException) -> str:
    """Collapse any failure into the single display string shown to the user."""
    if isinstance(exc, VaultError):
        return str(exc)
    return f"unexpected error: {exc}"
