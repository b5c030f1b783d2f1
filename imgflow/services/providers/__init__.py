"""
Provider strategies.

Background replacement is a closed set of interchangeable strategies selected
by ImageProvider; outpainting and enhancement always go to Volcengine.
"""
from typing import Any, Dict, Optional

from imgflow.config import Settings, get_settings
from imgflow.services.errors import TaskValidationError
from imgflow.services.gateway import ServiceGateway, get_gateway
from imgflow.services.providers.base import (
    BACKGROUND_PROVIDERS,
    BackgroundReplaceProvider,
    BackgroundReplaceRequest,
    ImageProvider,
    ImageResult,
    ProviderCredentials,
)
from imgflow.services.providers.gemini import GeminiProvider
from imgflow.services.providers.gpt import GPTProvider
from imgflow.services.providers.jimeng import JimengProvider
from imgflow.services.providers.volcengine import VolcengineClient
from imgflow.services.storage_service import StorageService, get_storage

__all__ = [
    "BACKGROUND_PROVIDERS",
    "BackgroundReplaceProvider",
    "BackgroundReplaceRequest",
    "ImageProvider",
    "ImageResult",
    "ProviderCredentials",
    "ProviderRegistry",
    "parse_provider",
]


def parse_provider(value: Optional[str], default: ImageProvider = ImageProvider.JIMENG) -> ImageProvider:
    """Map an aiModel tag onto a background replacement strategy."""
    if not value:
        return default
    try:
        provider = ImageProvider(value.lower())
    except ValueError:
        provider = None
    if provider not in BACKGROUND_PROVIDERS:
        raise TaskValidationError(f"不支持的 AI 模型: {value}，请使用 gpt, gemini 或 jimeng")
    return provider


class _EchoProvider(BackgroundReplaceProvider):
    """TEST_MODE stand-in: returns the input image untouched."""

    def __init__(self, provider: ImageProvider):
        self.provider = provider

    async def generate(self, request: BackgroundReplaceRequest) -> ImageResult:
        return ImageResult(image_data=request.image_url, metadata={"testMode": True})


class _EchoVolcengine:
    async def outpaint(self, image: str, user_id: str, **params: Any) -> ImageResult:
        return ImageResult(image_data=image, metadata={"testMode": True, **params})

    async def enhance(self, image: str, user_id: str, **params: Any) -> ImageResult:
        return ImageResult(image_data=image, metadata={"testMode": True, **params})


class ProviderRegistry:
    """
    Builds provider clients for one task.

    Credentials injected into the task at claim time win; settings fill the
    gaps for deployments that configure providers globally.
    """

    def __init__(
        self,
        credentials: Optional[Dict[str, Dict[str, Any]]] = None,
        settings: Optional[Settings] = None,
        gateway: Optional[ServiceGateway] = None,
        storage: Optional[StorageService] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway or get_gateway()
        self.storage = storage or get_storage()
        self._credentials = credentials or {}

    def credentials_for(self, provider: ImageProvider) -> ProviderCredentials:
        creds = ProviderCredentials.from_payload(self._credentials.get(provider.value))
        s = self.settings
        if provider in (ImageProvider.JIMENG, ImageProvider.VOLCENGINE):
            # Jimeng runs on the Volcengine account
            if not creds.access_key and provider == ImageProvider.JIMENG:
                creds = ProviderCredentials.from_payload(self._credentials.get(ImageProvider.VOLCENGINE.value))
            creds.access_key = creds.access_key or s.volcengine_access_key
            creds.secret_key = creds.secret_key or s.volcengine_secret_key
        elif provider == ImageProvider.GPT:
            creds.api_key = creds.api_key or s.openai_api_key
            creds.base_url = creds.base_url or s.openai_base_url
        elif provider == ImageProvider.GEMINI:
            creds.api_key = creds.api_key or s.gemini_api_key
        return creds

    def background_replacer(self, provider: ImageProvider) -> BackgroundReplaceProvider:
        if self.settings.test_mode:
            return _EchoProvider(provider)
        creds = self.credentials_for(provider)
        if provider == ImageProvider.JIMENG:
            return JimengProvider(creds, self.gateway, self.storage)
        if provider == ImageProvider.GPT:
            return GPTProvider(creds, self.gateway, self.storage, model=self.settings.openai_image_model)
        if provider == ImageProvider.GEMINI:
            return GeminiProvider(
                creds,
                self.gateway,
                self.storage,
                model=self.settings.gemini_model,
                default_base_url=self.settings.gemini_base_url,
            )
        raise TaskValidationError(f"{provider.value} 不支持背景替换")

    def volcengine(self):
        if self.settings.test_mode:
            return _EchoVolcengine()
        return VolcengineClient(self.credentials_for(ImageProvider.VOLCENGINE), self.gateway, self.storage)
