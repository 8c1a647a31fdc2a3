import asyncio
import time
from pathlib import Path
from typing import Optional

from loguru import logger

from rafflehub.config import settings


class StorageError(Exception):
    """Image storage error"""
    pass


class LocalImageStorage:
    """Stores raffle cover images on disk and serves them under MEDIA_BASE_URL"""

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None, app_id: Optional[str] = None):
        self.root = Path(root or settings.MEDIA_ROOT)
        self.base_url = (base_url or settings.MEDIA_BASE_URL).rstrip("/")
        self.app_id = app_id or settings.APP_ID

    async def upload(self, data: bytes, filename: str) -> str:
        """
        Save image bytes and return the URL they can be fetched from

        The file name gets a millisecond timestamp so repeated uploads of the
        same file never overwrite each other.
        """
        if not data:
            raise StorageError("Image is empty")

        original = Path(filename or "image").name
        stem, suffix = Path(original).stem or "image", Path(original).suffix
        relative = f"raffles/{self.app_id}/{stem}{int(time.time() * 1000)}{suffix}"

        try:
            await asyncio.to_thread(self._write, self.root / relative, data)
        except OSError as e:
            logger.error(f"Failed to store image {relative}: {e}")
            raise StorageError(f"Failed to store image: {e}") from e

        logger.info(f"Stored image {relative} ({len(data)} bytes)")
        return f"{self.base_url}/{relative}"

    @staticmethod
    def _write(path: Path, data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
