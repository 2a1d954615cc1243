"""Local media store for captured screenshots."""

import logging
import mimetypes
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .config import DEFAULT_MEDIA_DIR

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
}


@dataclass
class SavedMedia:
    path: str
    content_type: str
    size: int


def ensure_media_dir(root: Union[str, Path, None] = None) -> Path:
    media_root = Path(root or DEFAULT_MEDIA_DIR).expanduser()
    media_root.mkdir(parents=True, exist_ok=True)
    return media_root


def save_media_buffer(data: bytes, content_type: str, subdir: str = "browser",
                      root: Optional[Union[str, Path]] = None) -> SavedMedia:
    """Write `data` under {root}/{subdir}/ with a random name; returns the absolute path."""
    directory = ensure_media_dir(root) / subdir
    directory.mkdir(parents=True, exist_ok=True)
    ext = _EXTENSIONS.get(content_type) or mimetypes.guess_extension(content_type) or ".bin"
    path = directory / f"{uuid.uuid4().hex}{ext}"
    path.write_bytes(data)
    logger.debug(f"Saved {len(data)} bytes of {content_type} to {path}")
    return SavedMedia(path=os.path.abspath(path), content_type=content_type, size=len(data))
