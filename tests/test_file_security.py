from __future__ import annotations

import pytest

from poster_campaign.services.file_security import (
    FileSecurityService,
    detect_mime_type,
    has_suspicious_filename,
)

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"\x00" * 64
WEBP = b"RIFF\x24\x00\x00\x00WEBPVP8 " + b"\x00" * 32


@pytest.fixture()
def scanner():
    return FileSecurityService(max_file_size=1024, allowed_mime_types=["image/png", "image/jpeg", "image/webp"])


def _scan(scanner, tmp_path, data, name="sample.bin"):
    path = tmp_path / name
    path.write_bytes(data)
    return scanner.scan_file(path)


def test_clean_png_passes(scanner, tmp_path):
    result = _scan(scanner, tmp_path, PNG)

    assert result.is_safe
    assert result.threats == []
    assert result.detected_mime_type == "image/png"
    assert result.file_size == len(PNG)
    assert len(result.file_hash) == 64


def test_detects_image_formats_from_content():
    assert detect_mime_type(PNG) == "image/png"
    assert detect_mime_type(b"\xff\xd8\xff\xdb" + b"\x00" * 8) == "image/jpeg"
    assert detect_mime_type(b"GIF89a" + b"\x00" * 8) == "image/gif"
    assert detect_mime_type(WEBP) == "image/webp"
    assert detect_mime_type(b"RIFF\x00\x00\x00\x00WAVE") == "application/octet-stream"


@pytest.mark.parametrize(
    "data,expected",
    [
        (b"\x7fELF\x02\x01\x01" + b"\x00" * 16, "Malicious file signature"),
        (b"PK\x03\x04" + b"\x00" * 16, "Malicious file signature"),
        (b"\x89PNG\r\n\x1a\n" + b"\x00" * 200 + b"MZ\x90\x00", "Embedded executable"),
        (b"\x89PNG\r\n\x1a\n<?php echo 1; ?>", "Polyglot"),
        (b"\xff\xd8\xff\xe0 onerror=alert(1)", "Suspicious content pattern"),
    ],
)
def test_threats_are_reported(scanner, tmp_path, data, expected):
    result = _scan(scanner, tmp_path, data)

    assert not result.is_safe
    assert any(expected in threat for threat in result.threats)


def test_non_image_content_is_a_threat(scanner, tmp_path):
    result = _scan(scanner, tmp_path, b"just some plain text pretending to be a poster")

    assert not result.is_safe
    assert result.detected_mime_type == "application/octet-stream"
    assert "File content is not a recognised image format" in result.threats


def test_patterns_beyond_scan_window_are_ignored(scanner, tmp_path):
    data = PNG + b"\x00" * (9 * 1024) + b"eval(payload)"

    assert _scan(scanner, tmp_path, data).is_safe


def test_validate_upload_collects_errors(scanner):
    check = scanner.validate_upload("poster.exe", "application/x-msdownload", 4096)

    assert not check.valid
    assert check.errors == [
        "File size exceeds maximum allowed size of 0MB",
        "File type 'application/x-msdownload' is not allowed",
        "File extension '.exe' is not allowed",
    ]


def test_validate_upload_rejects_empty_file(scanner):
    check = scanner.validate_upload("poster.png", "image/png", 0)

    assert check.errors == ["File is empty"]


def test_suspicious_filename_only_warns(scanner):
    check = scanner.validate_upload(".hidden.png", "image/png", 10)

    assert check.valid
    assert check.warnings == ["Filename contains suspicious patterns"]


@pytest.mark.parametrize(
    "filename,suspicious",
    [
        ("shopfront.jpg", False),
        ("invoice.pdf.exe", True),
        ("poster.php", True),
        ("what?.png", True),
        ("trailing.png ", True),
    ],
)
def test_suspicious_filename_patterns(filename, suspicious):
    assert has_suspicious_filename(filename) is suspicious
