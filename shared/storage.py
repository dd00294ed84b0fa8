"""
STEPSYNC Storage Manager

Local file storage for user-supplied reference videos.
"""

import uuid
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Tuple
from dataclasses import dataclass

from core.config import settings

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class StoredFile:
    """Represents a stored file with metadata."""
    file_id: str
    filename: str
    path: str
    url: str
    size_bytes: int
    content_type: str
    created_at: datetime


class LocalStorageManager:
    """
    Local file storage manager.

    Stores uploaded reference videos under <media>/uploads/ and remembers the
    most recent one so the reference video lookup can fall back to it.
    """

    ALLOWED_VIDEO_TYPES = {'.mp4', '.mov', '.avi', '.webm', '.mkv'}

    MAX_VIDEO_SIZE = 200 * 1024 * 1024  # 200 MB

    CONTENT_TYPES = {
        '.mp4': 'video/mp4',
        '.mov': 'video/quicktime',
        '.avi': 'video/x-msvideo',
        '.webm': 'video/webm',
        '.mkv': 'video/x-matroska',
    }

    def __init__(self, base_path: str = None, base_url: str = ""):
        """
        Initialize local storage manager.

        Args:
            base_path: Base directory for file storage. Defaults to settings.LOCAL_MEDIA_PATH
            base_url: Prefix for generated URLs (empty = relative /media/... URLs)
        """
        self.base_path = Path(base_path or settings.LOCAL_MEDIA_PATH)
        self.base_url = base_url.rstrip('/')
        self.latest_upload: Optional[StoredFile] = None

        self._ensure_directories()

        logger.info(f"📁 LocalStorageManager initialized at: {self.base_path}")

    @property
    def uploads_path(self) -> Path:
        return self.base_path / "uploads"

    def _ensure_directories(self):
        """Create required directory structure."""
        for directory in (self.base_path, self.uploads_path, self.base_path / "videos"):
            directory.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Ensured directory exists: {directory}")

    def _get_content_type(self, filename: str) -> str:
        """Determine content type from filename."""
        return self.CONTENT_TYPES.get(Path(filename).suffix.lower(), 'application/octet-stream')

    def _validate_video(self, filename: str, size: int) -> Tuple[bool, str]:
        """
        Validate a video before saving.

        Returns:
            Tuple of (is_valid, error_message)
        """
        ext = Path(filename).suffix.lower()
        if ext not in self.ALLOWED_VIDEO_TYPES:
            return False, f"Invalid video type. Allowed: {sorted(self.ALLOWED_VIDEO_TYPES)}"
        if size == 0:
            return False, "Video file is empty"
        if size > self.MAX_VIDEO_SIZE:
            return False, f"Video too large. Max size: {self.MAX_VIDEO_SIZE / 1024 / 1024}MB"
        return True, ""

    def url_for(self, path: Path) -> str:
        relative_path = Path(path).relative_to(self.base_path)
        return f"{self.base_url}/media/{relative_path.as_posix()}"

    def save_video(self, content: bytes, filename: str) -> StoredFile:
        """
        Save an uploaded reference video.

        Raises:
            ValueError: if the file type or size is not acceptable
        """
        is_valid, error = self._validate_video(filename, len(content))
        if not is_valid:
            logger.error(f"Video validation failed: {error}")
            raise ValueError(error)

        file_id = str(uuid.uuid4())
        file_path = self.uploads_path / f"{file_id}{Path(filename).suffix.lower()}"
        file_path.write_bytes(content)

        stored_file = StoredFile(
            file_id=file_id,
            filename=filename,
            path=str(file_path),
            url=self.url_for(file_path),
            size_bytes=len(content),
            content_type=self._get_content_type(filename),
            created_at=datetime.now(timezone.utc)
        )
        self.latest_upload = stored_file

        logger.info(f"✅ Saved video: {filename} -> {file_path} ({len(content)} bytes)")
        return stored_file

    def remove_latest_upload(self) -> bool:
        """Delete the most recent upload. Returns True if a file was removed."""
        stored = self.latest_upload
        self.latest_upload = None
        if stored is None:
            return False

        path = Path(stored.path)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            logger.error(f"Failed to delete upload: {e}")
            return False
        logger.info(f"🗑️ Deleted upload: {path}")
        return True


# Global storage instance
_storage_manager: Optional[LocalStorageManager] = None


def get_storage() -> LocalStorageManager:
    """Get the global storage manager instance."""
    global _storage_manager

    if _storage_manager is None:
        _storage_manager = LocalStorageManager()

    return _storage_manager
