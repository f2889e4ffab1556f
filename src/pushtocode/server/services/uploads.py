"""Files uploaded by clients into a session's upload directory."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from pushtocode.server.services.errors import UploadError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass
class UploadedFile:
    filename: str
    path: Path
    mime_type: str
    size: int


def _safe_component(name: str, what: str) -> str:
    base = Path(name.replace("\\", "/")).name.strip()
    if base in ("", ".", ".."):
        raise UploadError(f"Invalid {what}: {name!r}")
    return base


def save_upload(
    upload_dir: Path,
    session_id: str,
    filename: str,
    data_b64: str,
    mime_type: str = "application/octet-stream",
    max_bytes: int = 25 * 1024 * 1024,
) -> UploadedFile:
    """Decode a base64 payload and write it to ``<upload_dir>/<session>/<basename>``.

    Raises:
        UploadError: bad filename, undecodable, empty or oversized payload
    """
    name = _safe_component(filename, "filename")
    session_dir = _UNSAFE_CHARS.sub("_", _safe_component(session_id, "session id"))

    # base64 inflates by 4/3; reject obviously oversized payloads before decoding
    if len(data_b64) > (max_bytes * 4) // 3 + 4:
        raise UploadError(f"File too large (limit {max_bytes} bytes)")
    try:
        content = base64.b64decode(data_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise UploadError(f"Invalid base64 data: {exc}") from exc
    if not content:
        raise UploadError("Empty file")
    if len(content) > max_bytes:
        raise UploadError(f"File too large (limit {max_bytes} bytes)")

    target_dir = Path(upload_dir) / session_dir
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / name
    path.write_bytes(content)
    logger.info("Saved upload %s (%d bytes, %s)", path, len(content), mime_type)
    return UploadedFile(filename=name, path=path, mime_type=mime_type, size=len(content))
