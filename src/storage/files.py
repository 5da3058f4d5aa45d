"""Storage of uploaded document files.

The pipeline only needs to save, read back and delete a file by the
URL recorded on the OCR row. :class:`LocalFileStore` keeps files under
a directory on disk, one sub-directory per owner.
"""

import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

from src.utils.logger import get_logger

logger = get_logger(__name__)


class FileStore(ABC):
    """Interface for uploaded file persistence."""

    @abstractmethod
    def save(self, user_id: str, filename: str, data: bytes) -> str:
        """Store ``data`` and return the URL to record on the OCR row."""

    @abstractmethod
    def read(self, url: str) -> bytes:
        """Return the stored bytes for ``url``.

        Raises:
            FileNotFoundError: Nothing is stored under ``url``.
        """

    @abstractmethod
    def delete(self, url: str) -> bool:
        """Remove the file; returns False when it was already gone."""


def _safe_name(filename: str) -> str:
    name = Path(filename).name or "document"
    return re.sub(r"[^A-Za-z0-9._-]", "_", name)


class LocalFileStore(FileStore):
    """Keeps uploads under ``upload_dir/<user_id>/<uuid>_<filename>``.

    Args:
        upload_dir: Root directory, created on first use.
    """

    def __init__(self, upload_dir: str | Path = "uploads") -> None:
        self.root = Path(upload_dir)

    def save(self, user_id: str, filename: str, data: bytes) -> str:
        folder = self.root / _safe_name(user_id)
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"{uuid.uuid4().hex}_{_safe_name(filename)}"
        path.write_bytes(data)
        logger.info("Stored %d bytes at %s", len(data), path)
        return path.as_posix()

    def _resolve(self, url: str) -> Path:
        path = Path(url).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Path {url} is outside the upload directory")
        return path

    def read(self, url: str) -> bytes:
        return self._resolve(url).read_bytes()

    def delete(self, url: str) -> bool:
        path = self._resolve(url)
        if not path.exists():
            logger.warning("Stored file %s already removed", url)
            return False
        path.unlink()
        logger.info("Deleted stored file %s", url)
        return True
