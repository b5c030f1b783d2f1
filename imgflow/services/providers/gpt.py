"""GPT image edit background replacement."""
import openai
from openai import AsyncOpenAI

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

_SUFFIX = {"image/png": "png", "image/webp": "webp"}


class GPTProvider(BackgroundReplaceProvider):
    provider = ImageProvider.GPT

    def __init__(
        self,
        credentials: ProviderCredentials,
        gateway: ServiceGateway,
        storage: StorageService,
        model: str = "gpt-image-1",
    ):
        if not credentials.api_key:
            raise TaskValidationError("GPT_NOT_CONFIGURED:请先在设置页面配置 GPT API Key")
        self.client = AsyncOpenAI(api_key=credentials.api_key, base_url=credentials.base_url or None)
        self.gateway = gateway
        self.storage = storage
        self.model = model

    async def _edit(self, request: BackgroundReplaceRequest) -> ImageResult:
        files = []
        for name, ref in (("original", request.image_url), ("reference", request.reference_image_url)):
            payload, mime = await self.storage.load(ref)
            files.append((f"{name}.{_SUFFIX.get(mime, 'jpg')}", payload, mime))

        try:
            response = await self.client.images.edit(
                model=self.model,
                image=files,
                prompt=request.prompt,
                n=1,
            )
        except openai.APIStatusError as exc:
            raise TransientProviderError(
                f"GPT API失败: {exc.message}", provider=self.provider.value, status_code=exc.status_code
            ) from exc
        except openai.OpenAIError as exc:
            raise TransientProviderError(f"GPT 请求失败: {exc}", provider=self.provider.value) from exc

        item = response.data[0] if response.data else None
        if item is not None and item.b64_json:
            data_url = image_utils.base64_to_data_url(item.b64_json, "image/png")
            return ImageResult(image_data=data_url, image_size=image_utils.estimate_size(data_url))
        if item is not None and item.url:
            return ImageResult(image_data=item.url)
        raise TransientProviderError("GPT 未返回图片结果", provider=self.provider.value)

    async def generate(self, request: BackgroundReplaceRequest) -> ImageResult:
        logger.info("[GPT] background replace", extra={"provider": self.provider.value, "user_id": request.user_id})
        async with track_duration(self.provider.value, "background_replace"):
            result = await self.gateway.execute(self.provider.value, self._edit, request)
        result.metadata = {"model": self.model, "prompt": request.prompt}
        return result
