import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from poster_campaign.config import settings

logger = logging.getLogger("poster-file-security")

ALLOWED_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
IMAGE_MIME_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

SCAN_WINDOW = 8 * 1024
EMBEDDED_WINDOW = 1024

MALICIOUS_SIGNATURES = (
    b"MZ",                    # PE executable
    b"\x7fELF",               # ELF executable
    b"\xca\xfe\xba\xbe",      # Java class
    b"\xfe\xed\xfa\xce",      # Mach-O 32-bit
    b"\xfe\xed\xfa\xcf",      # Mach-O 64-bit
    b"<?php",
    b"#!/bin/",
    b"<script",
    b"javascript:",
    b"PK",                    # zip container
)

SUSPICIOUS_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        rb"eval\s*\(",
        rb"exec\s*\(",
        rb"system\s*\(",
        rb"shell_exec\s*\(",
        rb"passthru\s*\(",
        rb"base64_decode\s*\(",
        rb"<\s*script[^>]*>",
        rb"javascript:",
        rb"vbscript:",
        rb"onload\s*=",
        rb"onerror\s*=",
        rb"onclick\s*=",
    )
]

IMAGE_SIGNATURES = (b"\xff\xd8\xff", b"\x89PNG", b"GIF")
POLYGLOT_MARKERS = (b"<html", b"<script", b"<?php")

SUSPICIOUS_FILENAME_PATTERNS = [
    re.compile(r"\.(exe|bat|cmd|com|pif|scr|vbs|js|jar|php|asp|jsp)$", re.IGNORECASE),
    re.compile(r"\.\w+\.(exe|bat|cmd|com|pif|scr|vbs|js|jar|php|asp|jsp)$", re.IGNORECASE),
    re.compile(r'[<>:"|?*]'),
    re.compile(r"^\."),
    re.compile(r"\s+$"),
    re.compile(r"\x00"),
]


@dataclass
class UploadCheck:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass
class ScanResult:
    is_safe: bool
    threats: List[str]
    detected_mime_type: str
    file_size: int
    file_hash: str


def detect_mime_type(data: bytes) -> str:
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


def has_suspicious_filename(filename: str) -> bool:
    return any(pattern.search(filename) for pattern in SUSPICIOUS_FILENAME_PATTERNS)


class FileSecurityService:
    """Request-level upload checks and content scanning for image files."""

    def __init__(self, max_file_size: Optional[int] = None, allowed_mime_types: Optional[List[str]] = None):
        self.max_file_size = max_file_size or settings.MAX_FILE_SIZE
        self.allowed_mime_types = allowed_mime_types or settings.allowed_mime_types

    def validate_upload(self, original_filename: str, mime_type: str, size: int) -> UploadCheck:
        check = UploadCheck()

        if size > self.max_file_size:
            check.errors.append(
                f"File size exceeds maximum allowed size of {self.max_file_size // (1024 * 1024)}MB"
            )
        if size == 0:
            check.errors.append("File is empty")

        if (mime_type or "").lower() not in self.allowed_mime_types:
            check.errors.append(f"File type '{mime_type}' is not allowed")

        extension = Path(original_filename or "").suffix.lower()
        if extension not in ALLOWED_EXTENSIONS:
            check.errors.append(f"File extension '{extension}' is not allowed")

        if has_suspicious_filename(original_filename or ""):
            check.warnings.append("Filename contains suspicious patterns")

        return check

    def scan_file(self, path: Path) -> ScanResult:
        data = path.read_bytes()
        detected = detect_mime_type(data)

        threats: List[str] = []
        threats.extend(self._check_signatures(data))
        threats.extend(self._check_patterns(data))
        threats.extend(self._check_embedded_executables(data))
        threats.extend(self._check_polyglot(data))

        if detected not in IMAGE_MIME_TYPES:
            threats.append("File content is not a recognised image format")

        result = ScanResult(
            is_safe=not threats,
            threats=threats,
            detected_mime_type=detected,
            file_size=len(data),
            file_hash=hashlib.sha256(data).hexdigest(),
        )

        if threats:
            logger.warning("Threats detected in %s: %s", path.name, "; ".join(threats))
        return result

    @staticmethod
    def _check_signatures(data: bytes) -> List[str]:
        return [
            f"Malicious file signature detected: {signature.hex()}"
            for signature in MALICIOUS_SIGNATURES
            if data.startswith(signature)
        ]

    @staticmethod
    def _check_patterns(data: bytes) -> List[str]:
        head = data[:SCAN_WINDOW]
        return [
            f"Suspicious content pattern detected: {pattern.pattern.decode()}"
            for pattern in SUSPICIOUS_PATTERNS
            if pattern.search(head)
        ]

    @staticmethod
    def _check_embedded_executables(data: bytes) -> List[str]:
        if data.find(b"MZ", 1, EMBEDDED_WINDOW) != -1:
            return ["Embedded executable detected"]
        return []

    @staticmethod
    def _check_polyglot(data: bytes) -> List[str]:
        if not data.startswith(IMAGE_SIGNATURES):
            return []
        if any(marker in data for marker in POLYGLOT_MARKERS):
            return ["Polyglot file detected - image with embedded code"]
        return []


file_security_service = FileSecurityService()
