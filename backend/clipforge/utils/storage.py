"""Durable clip storage."""
import asyncio
import logging
from pathlib import Path, PurePosixPath

from clipforge.errors import UploadFailure

logger = logging.getLogger(__name__)


class LocalStorage:
    """Stores objects under a directory and serves them from ``public_base_url``."""

    def __init__(self, root: Path, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _target(self, path: str) -> Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts:
            raise UploadFailure(f"Invalid storage path: {path}")
        return self.root.joinpath(*relative.parts)

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path.lstrip('/')}"

    async def upload(self, data: bytes, path: str) -> str:
        """
        Write ``data`` at ``path`` and return its public URL.

        Raises:
            UploadFailure: If the object cannot be written
        """
        target = self._target(path)
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as e:
            raise UploadFailure(f"Failed to store {path}: {e}") from e
        logger.debug(f"Stored {len(data)} bytes at {target}")
        return self.public_url(path)

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)
