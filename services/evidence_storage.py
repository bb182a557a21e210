"""
Dispute Evidence Storage
Upload policy (extension allow/deny lists, size cap, name sanitizing) and the
object store port the dispute engine writes evidence files to.
"""

import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, Optional

import filetype

from config import Config
from utils.exception_handler import ExternalDependencyFailure, ValidationError
from utils.helpers import as_aware_utc

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")

# Windows PE, ELF, Java class and the four Mach-O byte orders
_EXECUTABLE_SIGNATURES = (
    b"MZ",
    b"\x7fELF",
    b"\xca\xfe\xba\xbe",
    b"\xfe\xed\xfa\xce",
    b"\xfe\xed\xfa\xcf",
    b"\xce\xfa\xed\xfe",
    b"\xcf\xfa\xed\xfe",
)

_EXECUTABLE_MIME_TYPES = frozenset({
    "application/x-msdownload",
    "application/vnd.microsoft.portable-executable",
    "application/x-executable",
    "application/x-elf",
    "application/x-mach-binary",
    "application/java-archive",
    "application/x-deb",
    "application/x-rpm",
    "application/x-shockwave-flash",
})


@dataclass(frozen=True)
class EvidenceFile:
    """An uploaded evidence file as received from the caller"""

    file_name: str
    content: bytes
    content_type: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class EvidencePolicy:
    """What may be attached to a dispute"""

    allowed_extensions: FrozenSet[str] = frozenset(
        {".pdf", ".jpg", ".jpeg", ".png", ".webp", ".txt", ".doc", ".docx"}
    )
    blocked_extensions: FrozenSet[str] = frozenset(
        {
            ".exe", ".bat", ".cmd", ".msi", ".scr", ".com", ".pif", ".vbs", ".js", ".jar",
            ".ps1", ".sh", ".dll", ".sys", ".app", ".deb", ".rpm", ".dmg", ".pkg",
        }
    )
    max_file_size: int = 20 * 1024 * 1024

    @classmethod
    def from_config(cls) -> "EvidencePolicy":
        return cls(max_file_size=Config.EVIDENCE_MAX_FILE_SIZE)

    @staticmethod
    def sanitize_name(file_name: str) -> str:
        base = os.path.basename(file_name.replace("\\", "/"))
        return _UNSAFE_NAME_CHARS.sub("_", base)

    def validate(self, file: EvidenceFile) -> str:
        """
        Check a file against the policy.

        Returns:
            str: Sanitized file name

        Raises:
            ValidationError: if the file is empty, too large, executable, or has a rejected extension
        """
        if not file.file_name or not file.file_name.strip():
            raise ValidationError("Evidence file name is required")
        if file.size_bytes == 0:
            raise ValidationError("Evidence file is empty")
        if file.size_bytes > self.max_file_size:
            raise ValidationError(
                f"Evidence file exceeds {self.max_file_size // (1024 * 1024)} MiB limit"
            )

        safe_name = self.sanitize_name(file.file_name)
        extension = os.path.splitext(safe_name)[1].lower()
        # Deny list is checked on every suffix so "invoice.exe.pdf" style names are refused
        suffixes = {"." + part.lower() for part in safe_name.split(".")[1:]}
        if extension in self.blocked_extensions or suffixes & self.blocked_extensions:
            raise ValidationError(f"Executable files are not allowed: {file.file_name}")
        if extension not in self.allowed_extensions:
            raise ValidationError(
                f"File type '{extension or 'none'}' not allowed. "
                f"Allowed: {', '.join(sorted(self.allowed_extensions))}"
            )
        if self.is_executable_content(file.content):
            logger.warning(f"🚫 EVIDENCE_EXECUTABLE_CONTENT: {safe_name}")
            raise ValidationError(f"Executable files are not allowed: {file.file_name}")
        return safe_name

    @staticmethod
    def is_executable_content(content: bytes) -> bool:
        """Sniff the leading bytes; the extension alone is caller supplied"""
        if content.startswith(_EXECUTABLE_SIGNATURES):
            return True
        detected = filetype.guess(content)
        return detected is not None and detected.mime in _EXECUTABLE_MIME_TYPES

    @staticmethod
    def storage_path(actor_id: int, safe_name: str, moment: datetime) -> str:
        timestamp = int(as_aware_utc(moment).timestamp() * 1000)
        return f"disputes/{actor_id}/{timestamp}_{safe_name}"


class ObjectStore(ABC):
    """Port for the file/object store holding evidence blobs"""

    @abstractmethod
    def put(self, path: str, content: bytes, content_type: Optional[str] = None) -> str:
        """Store content at path and return the stored path"""

    @abstractmethod
    def get(self, path: str) -> bytes:
        """Read back stored content"""


class LocalObjectStore(ObjectStore):
    """Filesystem-backed object store"""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or Config.EVIDENCE_STORAGE_DIR).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.base_dir / path).resolve()
        if self.base_dir not in target.parents:
            raise ValidationError(f"Storage path escapes the evidence root: {path}")
        return target

    def put(self, path: str, content: bytes, content_type: Optional[str] = None) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as e:
            logger.error(f"❌ EVIDENCE_STORE_WRITE_FAILED: {path}: {e}")
            raise ExternalDependencyFailure(f"Could not store evidence at {path}") from e
        logger.info(f"📎 EVIDENCE_STORED: {path} ({len(content)} bytes)")
        return path

    def get(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as e:
            raise ExternalDependencyFailure(f"Could not read evidence at {path}") from e


class InMemoryObjectStore(ObjectStore):
    """Process-local object store for development and tests"""

    def __init__(self):
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, path: str, content: bytes, content_type: Optional[str] = None) -> str:
        with self._lock:
            self._objects[path] = bytes(content)
        return path

    def get(self, path: str) -> bytes:
        with self._lock:
            if path not in self._objects:
                raise ExternalDependencyFailure(f"No evidence stored at {path}")
            return self._objects[path]

    def __contains__(self, path: str) -> bool:
        with self._lock:
            return path in self._objects
