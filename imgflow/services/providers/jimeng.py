"""Jimeng (Volcengine) background replacement."""
from imgflow.services.gateway import ServiceGateway
from imgflow.services.providers.base import (
    BackgroundReplaceProvider,
    BackgroundReplaceRequest,
    ImageProvider,
    ImageResult,
    ProviderCredentials,
)
from imgflow.services.providers.volcengine import call_cv_process, first_image
from imgflow.services.storage_service import StorageService
from imgflow.utils.logger import logger
from imgflow.utils.metrics import track_duration

MODEL = "jimeng_t2i_v40"


class JimengProvider(BackgroundReplaceProvider):
    provider = ImageProvider.JIMENG

    def __init__(self, credentials: ProviderCredentials, gateway: ServiceGateway, storage: StorageService):
        self.credentials = credentials
        self.gateway = gateway
        self.storage = storage

    async def generate(self, request: BackgroundReplaceRequest) -> ImageResult:
        # Jimeng only reads images from public URLs
        image_urls = [
            await self.storage.public_url(request.image_url, request.user_id),
            await self.storage.public_url(request.reference_image_url, request.user_id),
        ]
        body = {
            "req_key": MODEL,
            "req_json": "{}",
            "prompt": request.prompt,
            "image_urls": image_urls,
            "width": 2048,
            "height": 2048,
            "scale": 0.5,
            "force_single": True,
        }

        logger.info("[Jimeng] background replace", extra={"provider": self.provider.value, "user_id": request.user_id})
        async with track_duration(self.provider.value, "background_replace"):
            data = await self.gateway.execute(
                self.provider.value, call_cv_process, self.credentials, body, self.provider.value, 180.0
            )
        result = first_image(data)
        result.metadata = {"model": MODEL, "prompt": request.prompt}
        return result
