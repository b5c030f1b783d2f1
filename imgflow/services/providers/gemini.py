"""Gemini native image generation background replacement."""
import re
from typing import Any, Dict

import httpx

from imgflow.services import image_utils
from imgflow.services.errors import TaskValidationError, TransientProviderError
from imgflow.services.gateway import ServiceGateway
from imgflow.services.providers.base import (
    BackgroundReplaceProvider,
    BackgroundReplaceRequest,
    ImageProvider,
    ImageResult,
    ProviderCredentials,
)
from imgflow.services.storage_service import StorageService
from imgflow.utils.logger import logger
from imgflow.utils.metrics import track_duration

_IMAGE_URL_RE = re.compile(r"(https?://[^\s)]+\.(?:png|jpg|jpeg|gif|webp))", re.IGNORECASE)


class GeminiProvider(BackgroundReplaceProvider):
    provider = ImageProvider.GEMINI

    def __init__(
        self,
        credentials: ProviderCredentials,
        gateway: ServiceGateway,
        storage: StorageService,
        model: str,
        default_base_url: str,
    ):
        if not credentials.api_key:
            raise TaskValidationError("GEMINI_NOT_CONFIGURED:请先在设置页面配置 Gemini API Key")
        self.api_key = credentials.api_key
        self.base_url = (credentials.base_url or default_base_url).rstrip("/")
        self.model = model
        self.gateway = gateway
        self.storage = storage

    async def _inline_part(self, image: str) -> Dict[str, Any]:
        data_url = await self.storage.to_data_url(image)
        mime, payload = image_utils.split_data_url(data_url)
        return {"inline_data": {"mime_type": mime, "data": payload}}

    async def _generate_content(self, request: BackgroundReplaceRequest) -> ImageResult:
        body = {
            "contents": [{
                "parts": [
                    {"text": request.prompt},
                    await self._inline_part(request.image_url),
                    await self._inline_part(request.reference_image_url),
                ]
            }],
            "generationConfig": {"responseModalities": ["IMAGE"]},
        }
        url = f"{self.base_url}/v1beta/models/{self.model}:generateContent"

        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(url, json=body, headers={"x-goog-api-key": self.api_key}, timeout=300.0)
        except httpx.HTTPError as exc:
            raise TransientProviderError(f"Gemini 请求失败: {exc}", provider=self.provider.value) from exc

        if resp.status_code >= 400:
            raise TransientProviderError(
                f"Gemini HTTP {resp.status_code}: {resp.text[:300]}",
                provider=self.provider.value,
                status_code=resp.status_code,
            )

        candidates = resp.json().get("candidates") or []
        parts = (candidates[0].get("content") or {}).get("parts", []) if candidates else []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                data_url = image_utils.base64_to_data_url(inline["data"], mime)
                return ImageResult(image_data=data_url, image_size=image_utils.estimate_size(data_url))

        # Some proxies answer with a link in text instead of inline data
        text = " ".join(part.get("text", "") for part in parts)
        match = _IMAGE_URL_RE.search(text)
        if match:
            return ImageResult(image_data=match.group(1))
        raise TransientProviderError("Gemini 未返回图片结果", provider=self.provider.value)

    async def generate(self, request: BackgroundReplaceRequest) -> ImageResult:
        logger.info("[Gemini] background replace", extra={"provider": self.provider.value, "user_id": request.user_id})
        async with track_duration(self.provider.value, "background_replace"):
            result = await self.gateway.execute(self.provider.value, self._generate_content, request)
        result.metadata = {"model": self.model, "prompt": request.prompt}
        return result
