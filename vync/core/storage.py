"""
Video storage - uploaded binaries live under SHARED_DATA_PATH/uploads.

A job's `storage_path` is the file name relative to that directory.
"""

import mimetypes
import os
import uuid
from typing import Optional, Tuple

from vync.config import UPLOADS_PATH
from vync.core.errors import StorageDownloadError

DEFAULT_MIME_TYPE = "video/mp4"


class VideoStorage:
    def __init__(self, root: str = UPLOADS_PATH):
        self.root = root

    def _resolve(self, storage_path: str) -> str:
        """Absolute path for a storage locator; refuses paths outside the root."""
        root = os.path.realpath(self.root)
        path = os.path.realpath(os.path.join(root, storage_path))
        if os.path.commonpath([root, path]) != root:
            raise StorageDownloadError(detail=f"Invalid storage path: {storage_path}")
        return path

    def save(self, data: bytes, filename: Optional[str]) -> str:
        """Store an upload under a unique name. Returns its storage path."""
        ext = os.path.splitext(filename or "")[1] or ".mp4"
        storage_path = f"{uuid.uuid4()}{ext}"

        os.makedirs(self.root, exist_ok=True)
        with open(os.path.join(self.root, storage_path), "wb") as f:
            f.write(data)
        return storage_path

    def fetch(self, storage_path: str) -> Tuple[bytes, str]:
        """Return (bytes, mime type). Raises StorageDownloadError."""
        path = self._resolve(storage_path)
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise StorageDownloadError(detail=str(e)) from e

        mime_type, _ = mimetypes.guess_type(path)
        return data, mime_type or DEFAULT_MIME_TYPE


def is_video_type(content_type: Optional[str], filename: Optional[str]) -> bool:
    if content_type and content_type.startswith("video/"):
        return True
    mime_type, _ = mimetypes.guess_type(filename or "")
    return bool(mime_type and mime_type.startswith("video/"))
