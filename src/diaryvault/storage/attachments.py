import logging
import uuid

from pathlib import Path, PurePath
from typing import Optional, Tuple

from diaryvault.crypto.attachment import decrypt_image_data, encrypt_image_data
from diaryvault.utils.errors import AttachmentNotFound, EmptyAttachment, SourceNotFound, VaultIOError
from diaryvault.utils.helper import display_path, utc_now

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "bin"

MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/svg+xml": "svg",
}


def _suffix(name: str) -> str:
    return PurePath(name).suffix.lstrip(".")


def infer_image_extension(name: Optional[str], mime: Optional[str]) -> str:
    if name:
        ext = _suffix(name).lower()
        if ext:
            return ext
    if mime:
        return MIME_EXTENSIONS.get(mime.strip().lower(), DEFAULT_EXTENSION)
    return DEFAULT_EXTENSION


def attachment_target(root: Path, attachments_dir: Path, extension: str) -> Tuple[Path, str]:
    """Allocate ``attachments/<yyyy>/<mm>/<uuid>.<ext>``; returns (absolute, vault-relative)."""
    now = utc_now()
    target_dir = attachments_dir / f"{now.year}" / f"{now.month:02d}"
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise VaultIOError(f"failed to prepare attachment directory: {e.strerror or e}") from e
    target = target_dir / f"{uuid.uuid4()}.{extension or DEFAULT_EXTENSION}"
    try:
        relative = target.relative_to(root)
    except ValueError:
        relative = target
    return target, display_path(relative)


def store_attachment(root: Path, attachments_dir: Path, key: bytes, data: bytes, extension: str) -> str:
    if not data:
        raise EmptyAttachment()
    target, relative = attachment_target(root, attachments_dir, extension)
    encrypted = encrypt_image_data(key, data)
    try:
        target.write_bytes(encrypted)
    except OSError as e:
        raise VaultIOError(f"failed to save encrypted image: {e.strerror or e}") from e
    logger.debug("attachment stored at %s (%d bytes)", relative, len(data))
    return relative


def read_source(source: Path) -> bytes:
    if not source.exists():
        raise SourceNotFound()
    try:
        return source.read_bytes()
    except OSError as e:
        raise VaultIOError(f"failed to read image file: {e.strerror or e}") from e


def resolve_attachment(root: Path, path: str) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return root / path.lstrip("/\\")


def load_attachment(root: Path, key: bytes, path: str) -> bytes:
    image_path = resolve_attachment(root, path)
    if not image_path.exists():
        raise AttachmentNotFound()
    try:
        data = image_path.read_bytes()
    except OSError as e:
        raise VaultIOError(f"failed to read image file: {e.strerror or e}") from e
    return decrypt_image_data(key, data)
