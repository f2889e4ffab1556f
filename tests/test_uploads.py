"""Tests for client file uploads."""

import base64

import pytest

from pushtocode.server.services.errors import UploadError
from pushtocode.server.services.uploads import save_upload


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class TestSaveUpload:
    """Decoding and writing uploads."""

    def test_writes_into_session_directory(self, tmp_path):
        """The file lands in <dir>/<session>/<name>."""
        uploaded = save_upload(tmp_path, "s1", "notes.txt", b64(b"hello"), "text/plain")
        assert uploaded.path == tmp_path / "s1" / "notes.txt"
        assert uploaded.path.read_bytes() == b"hello"
        assert uploaded.size == 5
        assert uploaded.mime_type == "text/plain"

    def test_path_components_stripped(self, tmp_path):
        """Directory parts in the filename cannot escape the session directory."""
        uploaded = save_upload(tmp_path, "s1", "../../etc/passwd", b64(b"x"))
        assert uploaded.path == tmp_path / "s1" / "passwd"
        windows = save_upload(tmp_path, "s1", "C:\\Users\\me\\pic.png", b64(b"x"))
        assert windows.filename == "pic.png"

    @pytest.mark.parametrize("filename", ["", "..", "/"])
    def test_invalid_filename(self, tmp_path, filename):
        """Names without a usable basename are rejected."""
        with pytest.raises(UploadError):
            save_upload(tmp_path, "s1", filename, b64(b"x"))

    def test_invalid_base64(self, tmp_path):
        """Undecodable payloads are rejected."""
        with pytest.raises(UploadError, match="base64"):
            save_upload(tmp_path, "s1", "a.bin", "not base64!!")

    def test_empty(self, tmp_path):
        """Empty payloads are rejected."""
        with pytest.raises(UploadError, match="Empty"):
            save_upload(tmp_path, "s1", "a.bin", "")

    def test_too_large(self, tmp_path):
        """Payloads over the limit are rejected."""
        with pytest.raises(UploadError, match="too large"):
            save_upload(tmp_path, "s1", "a.bin", b64(b"x" * 100), max_bytes=10)
