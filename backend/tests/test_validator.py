"""Tests for downloaded file validation."""
import pytest

from shortsmith.pipeline.errors import ErrorKind, PipelineError
from shortsmith.pipeline.validator import detect_signature, ensure_valid, validate

MP4_HEADER = b"\x00\x00\x00\x18ftypmp42"
WEBM_HEADER = b"\x1a\x45\xdf\xa3\x01\x00\x00\x00"


def test_missing_file(tmp_path):
    result = validate(tmp_path / "nope.mp4")
    assert not result.ok
    assert "not found" in result.reason


def test_empty_file(tmp_path):
    path = tmp_path / "empty.mp4"
    path.write_bytes(b"")
    result = validate(path)
    assert not result.ok
    assert "empty" in result.reason


def test_small_html_error_page_is_rejected(tmp_path):
    path = tmp_path / "video.mp4"
    path.write_text("<!DOCTYPE html><html><body>Verify you are human</body></html>")
    result = validate(path)
    assert not result.ok
    assert "HTML" in result.reason


def test_valid_mp4(tmp_path):
    path = tmp_path / "video.mp4"
    path.write_bytes(MP4_HEADER + b"\x00" * 20000)
    result = validate(path)
    assert result.ok
    assert result.signature == "ftyp"
    assert result.size == len(MP4_HEADER) + 20000


def test_small_but_valid_mp4(tmp_path):
    path = tmp_path / "tiny.mp4"
    path.write_bytes(MP4_HEADER + b"\x00" * 2000)
    assert validate(path).ok


def test_valid_webm(tmp_path):
    path = tmp_path / "video.webm"
    path.write_bytes(WEBM_HEADER + b"\x00" * 20000)
    result = validate(path)
    assert result.ok
    assert result.signature == "matroska"


def test_unknown_signature_is_rejected(tmp_path):
    path = tmp_path / "video.mp4"
    path.write_bytes(b"garbage!" * 3000)
    result = validate(path)
    assert not result.ok
    assert "invalid signature" in result.reason


def test_detect_signature():
    assert detect_signature(b"\x00\x00\x00\x08moov") == "moov"
    assert detect_signature(b"\x00\x00\x01\xba\x44") == "mpeg-ps"
    assert detect_signature(b"FLV\x01") == "flv"
    assert detect_signature(b"\x00") is None


def test_ensure_valid_raises_corrupted_download(tmp_path):
    path = tmp_path / "video.mp4"
    path.write_bytes(b"")
    with pytest.raises(PipelineError) as exc:
        ensure_valid(path)
    assert exc.value.kind == ErrorKind.CORRUPTED_DOWNLOAD
