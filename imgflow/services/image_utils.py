"""Helpers for moving images between data URLs, raw bytes and remote URLs."""
import base64
import re
from typing import Tuple

import httpx

from imgflow.services.errors import TaskValidationError, TransientProviderError

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(;base64)?,(?P<data>.*)$", re.DOTALL)


def is_data_url(value: str) -> bool:
    return value.startswith("data:")


def is_remote_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def split_data_url(value: str) -> Tuple[str, str]:
    """Return (mime_type, base64_payload) for a data URL."""
    match = _DATA_URL_RE.match(value)
    if not match:
        raise TaskValidationError("无效的图片数据 (data URL 格式错误)")
    return match.group("mime") or "image/jpeg", match.group("data")


def extract_base64(value: str) -> str:
    """Strip the data URL prefix if present."""
    if is_data_url(value):
        return split_data_url(value)[1]
    return value


def to_data_url(payload: bytes, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(payload).decode('ascii')}"


def base64_to_data_url(b64: str, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{b64}"


def estimate_size(image: str) -> int:
    """Decoded byte size of a data URL (0 for plain URLs)."""
    if not is_data_url(image):
        return 0
    return len(split_data_url(image)[1]) * 3 // 4


async def load_image_bytes(image: str, timeout: float = 60.0) -> Tuple[bytes, str]:
    """Resolve a data URL or http(s) URL into (bytes, mime_type)."""
    if is_data_url(image):
        mime, payload = split_data_url(image)
        try:
            return base64.b64decode(payload), mime
        except ValueError as exc:
            raise TaskValidationError(f"无效的图片数据: {exc}") from exc

    if is_remote_url(image):
        try:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                resp = await client.get(image, timeout=timeout)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransientProviderError(
                f"下载图片失败: HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientProviderError(f"下载图片失败: {exc}") from exc
        mime = resp.headers.get("content-type", "image/jpeg").split(";")[0]
        return resp.content, mime

    raise TaskValidationError(f"不支持的图片地址: {image[:80]}")
