"""
STEPSYNC Coach Service - Reference Video Lookup

Selects the demonstration video by probing conventional filenames in the
asset directory, falling back to a user-uploaded file.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

logger = logging.getLogger(__name__)


DEFAULT_CANDIDATES = ("a4.mov", "exercise.mp4", "demo.mp4", "video.mp4")


@dataclass(frozen=True)
class ReferenceVideo:
    """Result of the reference video lookup."""
    found: bool
    path: Optional[Path] = None
    source: Optional[str] = None  # "asset" | "upload"

    @property
    def filename(self) -> Optional[str]:
        return self.path.name if self.path else None

    def to_dict(self, url: Optional[str] = None) -> Dict[str, Any]:
        return {
            "found": self.found,
            "filename": self.filename,
            "source": self.source,
            "url": url,
        }


NO_VIDEO = ReferenceVideo(found=False)


def resolve_reference_video(
    video_dir: Union[str, Path],
    candidates: Sequence[str] = DEFAULT_CANDIDATES,
    uploaded: Optional[Union[str, Path]] = None
) -> ReferenceVideo:
    """
    Probe `candidates` in order inside `video_dir`; first existing file wins.

    Args:
        video_dir: Asset directory holding conventional demo videos
        candidates: Ordered filenames to try
        uploaded: Path of a user-supplied video used when no asset matches

    Returns:
        ReferenceVideo (found=False when nothing resolves)
    """
    directory = Path(video_dir)
    for name in candidates:
        path = directory / name
        if path.is_file():
            logger.info(f"✅ Auto-loaded video: {name}")
            return ReferenceVideo(found=True, path=path, source="asset")

    if uploaded is not None:
        path = Path(uploaded)
        if path.is_file():
            logger.info(f"✅ Using uploaded video: {path.name}")
            return ReferenceVideo(found=True, path=path, source="upload")
        logger.warning(f"Uploaded video {path} no longer exists")

    logger.info(f"ℹ️ No video found in {directory}")
    return NO_VIDEO
