import logging
import os
import secrets
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import UploadFile

from poster_campaign.config import settings
from poster_campaign.errors import ValidationError

logger = logging.getLogger("poster-storage")

SUBDIRECTORIES = ("uploads", "temp", "processed", "thumbnails")
CHUNK_SIZE = 64 * 1024


class StorageService:
    """Local filesystem storage rooted at ``STORAGE_PATH``.

    Stored paths are relative to the root (``uploads/campaign_<id>/<name>``)
    so the database never carries machine-specific locations.
    """

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(base_path or settings.STORAGE_PATH).resolve()

    def ensure_directories(self) -> None:
        for name in SUBDIRECTORIES:
            (self.base_path / name).mkdir(parents=True, exist_ok=True)

    @property
    def temp_dir(self) -> Path:
        return self.base_path / "temp"

    @property
    def uploads_dir(self) -> Path:
        return self.base_path / "uploads"

    @staticmethod
    def generate_filename(user_id: int, original_filename: str) -> str:
        ext = Path(original_filename or "").suffix.lower()
        timestamp = int(time.time() * 1000)
        return f"{timestamp}_{user_id}_{secrets.token_hex(6)}{ext}"

    async def save_to_temp(self, upload: UploadFile, filename: str, max_size: int) -> Path:
        """Stream an upload into ``temp/``; oversized uploads are removed and rejected."""
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        target = self.temp_dir / filename
        written = 0

        try:
            with open(target, "wb") as out:
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > max_size:
                        raise ValidationError(
                            f"File size exceeds maximum allowed size of {max_size // (1024 * 1024)}MB"
                        )
                    out.write(chunk)
        except Exception:
            self.delete_path(target)
            raise

        return target

    def move_to_campaign(self, temp_path: Path, campaign_id: int, filename: str) -> str:
        campaign_dir = self.uploads_dir / f"campaign_{campaign_id}"
        campaign_dir.mkdir(parents=True, exist_ok=True)

        destination = campaign_dir / filename
        shutil.move(str(temp_path), str(destination))
        return destination.relative_to(self.base_path).as_posix()

    def resolve(self, file_path: str) -> Path:
        """Absolute path for a stored relative path, refusing anything outside the root."""
        candidate = (self.base_path / file_path).resolve()
        if self.base_path not in candidate.parents:
            raise ValidationError("Invalid file path")
        return candidate

    def delete_path(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError:
            logger.exception("Failed to delete file %s", path)
            return False

    def delete_file(self, file_path: str) -> bool:
        return self.delete_path(self.resolve(file_path))

    def cleanup_temp_files(self, max_age_hours: int = 24) -> int:
        if not self.temp_dir.exists():
            return 0

        cutoff = time.time() - max_age_hours * 3600
        removed = 0
        for entry in self.temp_dir.iterdir():
            if entry.is_file() and entry.stat().st_mtime < cutoff:
                if self.delete_path(entry):
                    removed += 1

        logger.info("Removed %d stale temp files", removed)
        return removed

    def get_storage_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"base_path": str(self.base_path), "directories": {}}
        total_files = 0
        total_size = 0

        for name in SUBDIRECTORIES:
            directory = self.base_path / name
            files = 0
            size = 0
            if directory.exists():
                for root, _dirs, filenames in os.walk(directory):
                    for filename in filenames:
                        files += 1
                        size += os.path.getsize(os.path.join(root, filename))
            stats["directories"][name] = {"files": files, "size_bytes": size}
            total_files += files
            total_size += size

        stats["total_files"] = total_files
        stats["total_size_bytes"] = total_size
        stats["generated_at"] = datetime.utcnow()
        return stats


storage_service = StorageService()
