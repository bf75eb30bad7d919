import base64
import binascii
import datetime as _dt
import os

from pathlib import Path
from typing import Dict

VAULT_FILE_NAME = "vault.json"


def repo_paths(root: Path) -> Dict[str, Path]:
    return {
        "vault": root / VAULT_FILE_NAME,
        "entries": root / "entries",
        "attachments": root / "attachments",
        "exports": root / "exports",
        "staging": root / ".rekey",
    }


def default_vault_root() -> Path:
    env = os.environ.get("DIARYVAULT_HOME")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".diaryvault"


def display_path(path: Path) -> str:
    return str(path).replace("\\", "/")


def utc_now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def format_ts(ts: _dt.datetime) -> str:
    """RFC 3339 with a trailing Z."""
    return ts.astimezone(_dt.timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(value: str) -> _dt.datetime:
    if not isinstance(value, str):
        raise TypeError(f"expected a timestamp string, got {type(value).__name__}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    ts = _dt.datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=_dt.timezone.utc)
    return ts


def b64e(data: bytes) -> str:
    """Standard alphabet, no padding."""
    return base64.b64encode(data).decode("ascii").rstrip("=")


def b64d(value: str) -> bytes:
    """Accepts padded or unpadded standard base64. Raises binascii.Error on bad input."""
    if not isinstance(value, str):
        raise binascii.Error("expected a base64 string")
    stripped = value.rstrip("=")
    return base64.b64decode(stripped + "=" * (-len(stripped) % 4), validate=True)
