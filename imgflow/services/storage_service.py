"""
Local artifact storage.

Images are written under ``<upload_dir>/<user_id>/`` and served back through
``GET /files/{path}``. Providers that only accept public URLs get an absolute
URL built from ``public_base_url``.
"""
import asyncio
import re
from pathlib import Path
from typing import Optional, Tuple
from uuid import uuid4

from imgflow.config import get_settings
from imgflow.services import image_utils
from imgflow.services.errors import TaskValidationError, TransientProviderError
from imgflow.utils.logger import logger

FILES_PREFIX = "/files/"
_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


def _safe_segment(value: str) -> str:
    cleaned = _SAFE_NAME_RE.sub("_", value).strip("._")
    return cleaned or "anonymous"


class StorageService:
    """Filesystem-backed image store"""

    def __init__(self, base_dir: Optional[str] = None, public_base_url: Optional[str] = None):
        settings = get_settings()
        self.base_dir = Path(base_dir or settings.upload_dir)
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")

    def path_for(self, url: str) -> Path:
        """Map a /files/... URL back onto the filesystem, refusing traversal."""
        relative = url[len(FILES_PREFIX):] if url.startswith(FILES_PREFIX) else url
        path = (self.base_dir / relative).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise TaskValidationError(f"非法的文件路径: {url}")
        return path

    async def save_image(self, image: str, filename: str, user_id: str) -> str:
        """
        Persist an image (data URL, remote URL or existing /files/ URL) and
        return its /files/ URL.
        """
        if image.startswith(FILES_PREFIX):
            return image

        payload, mime = await self.load(image)
        stem = _safe_segment(Path(filename).stem)
        suffix = Path(filename).suffix or _EXTENSIONS.get(mime, ".jpg")
        user_dir = _safe_segment(user_id)
        target = self.base_dir / user_dir / f"{stem}{suffix}"

        try:
            await asyncio.to_thread(self._write, target, payload)
        except OSError as exc:
            raise TransientProviderError(f"保存图片失败: {exc}", provider="storage") from exc

        url = f"{FILES_PREFIX}{user_dir}/{target.name}"
        logger.info(f"Saved image {url} ({len(payload)} bytes)")
        return url

    async def load(self, image: str) -> Tuple[bytes, str]:
        """Read image bytes from any supported reference."""
        if image.startswith(FILES_PREFIX):
            path = self.path_for(image)
            if not path.exists():
                raise TaskValidationError(f"图片不存在: {image}")
            payload = await asyncio.to_thread(path.read_bytes)
            mime = next((m for m, ext in _EXTENSIONS.items() if ext == path.suffix.lower()), "image/jpeg")
            return payload, mime
        return await image_utils.load_image_bytes(image)

    async def to_data_url(self, image: str) -> str:
        if image_utils.is_data_url(image):
            return image
        payload, mime = await self.load(image)
        return image_utils.to_data_url(payload, mime)

    async def public_url(self, image: str, user_id: str) -> str:
        """Absolute URL for providers that cannot take inline image data."""
        if image_utils.is_remote_url(image):
            return image
        if image_utils.is_data_url(image):
            image = await self.save_image(image, f"provider-{uuid4().hex}", user_id)
        return f"{self.public_base_url}{image}"

    @staticmethod
    def _write(target: Path, payload: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(payload)


_storage: Optional[StorageService] = None


def get_storage() -> StorageService:
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage
