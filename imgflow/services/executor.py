"""
Step executor: runs one claimed task according to its type and persists the
resulting image.

Errors propagate to the caller (the retry policy decides what they mean);
only the one-click pipeline contains failures of its own stages.
"""
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from imgflow.config import Settings, get_settings
from imgflow.models.processed_image import ProcessedImage
from imgflow.models.task import TaskType, utcnow
from imgflow.schemas.tasks import (
    BackgroundRemovalInput,
    ImageExpansionInput,
    ImageUpscalingInput,
    OneClickInput,
    OneClickOutput,
    WatermarkInput,
    parse_input,
)
from imgflow.services import image_utils
from imgflow.services.errors import TaskValidationError
from imgflow.services.one_click import OUTPAINT_PROMPT, OneClickPipeline, expand_ratio
from imgflow.services.progress import ProgressReporter, SessionFactory
from imgflow.services.providers import BackgroundReplaceRequest, ProviderRegistry, parse_provider
from imgflow.services.providers.base import DEFAULT_BACKGROUND_PROMPT, ImageResult
from imgflow.services.storage_service import StorageService, get_storage
from imgflow.services.task_queue import TaskLease
from imgflow.services.watermark import apply_watermark
from imgflow.utils.logger import logger

RegistryFactory = Callable[[TaskLease], ProviderRegistry]


@dataclass
class ExecutionResult:
    output: Dict[str, Any]
    processed_image_id: Optional[str] = None


class ArtifactRecorder:
    """Writes result images to storage and tracks them as ProcessedImage rows."""

    def __init__(self, storage: StorageService, session_factory: SessionFactory):
        self.storage = storage
        self._session_factory = session_factory

    async def start(self, lease: TaskLease, original_url: str, meta: Dict[str, Any]) -> str:
        """Open a PROCESSING record for a multi-stage result."""
        record = ProcessedImage(
            id=str(uuid.uuid4()),
            user_id=lease.user_id,
            filename=f"{_slug(lease.type)}-{lease.task_id}.jpg",
            original_url=_storable(original_url),
            process_type=lease.type.value,
            status="PROCESSING",
            meta=meta,
        )
        async with self._session_factory() as db:
            db.add(record)
            await db.commit()
        return record.id

    async def save(
        self,
        lease: TaskLease,
        image: str,
        original_url: str,
        meta: Optional[Dict[str, Any]] = None,
        image_id: Optional[str] = None,
    ) -> Tuple[str, str, int]:
        """Persist the image and mark its record COMPLETED. Returns (url, image_id, size)."""
        image_id = image_id or str(uuid.uuid4())
        url = await self.storage.save_image(image, f"{_slug(lease.type)}-{image_id}", lease.user_id)
        size = image_utils.estimate_size(image)

        async with self._session_factory() as db:
            record = await db.get(ProcessedImage, image_id)
            if record is None:
                record = ProcessedImage(
                    id=image_id,
                    user_id=lease.user_id,
                    process_type=lease.type.value,
                    original_url=_storable(original_url),
                )
                db.add(record)
            record.filename = url.rsplit("/", 1)[-1]
            record.processed_url = url
            record.status = "COMPLETED"
            record.file_size = size
            record.meta = {**(record.meta or {}), **(meta or {}), "taskId": lease.task_id}
            record.updated_at = utcnow()
            await db.commit()
        return url, image_id, size

    async def mark_failed(self, image_id: str, error: str) -> None:
        async with self._session_factory() as db:
            record = await db.get(ProcessedImage, image_id)
            if record is not None:
                record.status = "FAILED"
                record.error_message = error[:1000]
                await db.commit()


def _slug(task_type: TaskType) -> str:
    return task_type.value.lower().replace("_", "-")


def _storable(url: str) -> Optional[str]:
    # Inline payloads are not worth keeping as the "original" reference
    return None if image_utils.is_data_url(url) else url


class StepExecutor:
    def __init__(
        self,
        session_factory: SessionFactory,
        storage: Optional[StorageService] = None,
        settings: Optional[Settings] = None,
        registry_factory: Optional[RegistryFactory] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or get_storage()
        self.session_factory = session_factory
        self.artifacts = ArtifactRecorder(self.storage, session_factory)
        self._registry_factory = registry_factory or self._default_registry

    def _default_registry(self, lease: TaskLease) -> ProviderRegistry:
        return ProviderRegistry(
            credentials=lease.input_data.get("providerCredentials"),
            settings=self.settings,
            storage=self.storage,
        )

    async def execute(self, lease: TaskLease, report: ProgressReporter) -> ExecutionResult:
        handler = {
            TaskType.ONE_CLICK_WORKFLOW: self._one_click,
            TaskType.BACKGROUND_REMOVAL: self._background_removal,
            TaskType.IMAGE_EXPANSION: self._image_expansion,
            TaskType.IMAGE_UPSCALING: self._image_upscaling,
            TaskType.WATERMARK: self._watermark,
        }.get(lease.type)
        if handler is None:
            raise TaskValidationError(f"不支持的任务类型: {lease.type}")
        return await handler(lease, report)

    async def _finish(
        self,
        lease: TaskLease,
        report: ProgressReporter,
        result: ImageResult,
        original_url: str,
        extra: Dict[str, Any],
    ) -> ExecutionResult:
        await report("保存处理结果", 90)
        url, image_id, size = await self.artifacts.save(lease, result.image_data, original_url, result.metadata)
        output = {
            "processedImageUrl": url,
            "processedImageId": image_id,
            "imageSize": result.image_size or size,
            **extra,
        }
        return ExecutionResult(output=output, processed_image_id=image_id)

    async def _background_removal(self, lease: TaskLease, report: ProgressReporter) -> ExecutionResult:
        inp = parse_input(BackgroundRemovalInput, lease.input_data)
        if not inp.reference_image_url:
            raise TaskValidationError("背景替换需要提供参考图片：referenceImageUrl")
        provider = parse_provider(inp.ai_model)

        await report(f"背景替换处理中 ({provider.value})...", 10, 0)
        replacer = self._registry_factory(lease).background_replacer(provider)
        result = await replacer.generate(
            BackgroundReplaceRequest(
                image_url=inp.image_url,
                reference_image_url=inp.reference_image_url,
                user_id=lease.user_id,
                prompt=inp.prompt or DEFAULT_BACKGROUND_PROMPT,
            )
        )
        return await self._finish(lease, report, result, inp.image_url, {"aiModel": provider.value})

    async def _image_expansion(self, lease: TaskLease, report: ProgressReporter) -> ExecutionResult:
        inp = parse_input(ImageExpansionInput, lease.input_data)
        ratio = expand_ratio(inp.x_scale, inp.y_scale)

        await report("图像扩展处理中...", 10, 0)
        result = await self._registry_factory(lease).volcengine().outpaint(
            inp.image_url,
            lease.user_id,
            prompt=inp.prompt or OUTPAINT_PROMPT,
            top=ratio,
            bottom=ratio,
            left=ratio,
            right=ratio,
        )
        return await self._finish(
            lease, report, result, inp.image_url, {"xScale": inp.x_scale, "yScale": inp.y_scale}
        )

    async def _image_upscaling(self, lease: TaskLease, report: ProgressReporter) -> ExecutionResult:
        inp = parse_input(ImageUpscalingInput, lease.input_data)

        await report("高清化处理中...", 10, 0)
        result = await self._registry_factory(lease).volcengine().enhance(
            inp.image_url,
            lease.user_id,
            resolution_boundary=inp.resolution_boundary,
            enable_hdr=inp.enable_hdr,
            enable_wb=inp.enable_wb,
            result_format=inp.result_format,
            jpg_quality=inp.jpg_quality,
        )
        return await self._finish(
            lease, report, result, inp.image_url, {"upscaleFactor": inp.upscale_factor}
        )

    async def _watermark(self, lease: TaskLease, report: ProgressReporter) -> ExecutionResult:
        inp = parse_input(WatermarkInput, lease.input_data)

        await report("添加水印中...", 10, 0)
        image = await apply_watermark(inp.image_url, inp, self.storage)
        result = ImageResult(image_data=image, image_size=image_utils.estimate_size(image))
        return await self._finish(
            lease, report, result, inp.image_url, {"watermarkType": inp.watermark_type}
        )

    async def _one_click(self, lease: TaskLease, report: ProgressReporter) -> ExecutionResult:
        inp = parse_input(OneClickInput, lease.input_data)
        OneClickPipeline.validate(inp)

        settings_meta = inp.model_dump(
            by_alias=True,
            include={"x_scale", "y_scale", "upscale_factor", "enable_background_replace", "enable_outpaint",
                     "enable_upscale", "enable_watermark", "ai_model", "output_resolution"},
        )
        image_id = await self.artifacts.start(lease, inp.image_url, {**settings_meta, "isWorkflowFinal": True})
        pipeline = OneClickPipeline(self._registry_factory(lease), self.storage, report, lease.user_id)

        try:
            outcome = await pipeline.run(inp, task_id=lease.task_id)
            url, _, size = await self.artifacts.save(
                lease,
                outcome.image,
                inp.image_url,
                meta={
                    "processSteps": outcome.process_steps.model_dump(by_alias=True),
                    "stepErrors": outcome.errors,
                },
                image_id=image_id,
            )
        except BaseException as exc:
            # Includes cancellation by the timeout guard
            await self.artifacts.mark_failed(image_id, str(exc) or type(exc).__name__)
            raise

        if outcome.errors:
            logger.warning(
                f"one_click.partial steps_failed={sorted(outcome.errors)}",
                extra={"task_id": lease.task_id},
            )
        output = OneClickOutput(
            processed_image_url=url,
            processed_image_id=image_id,
            image_size=size,
            process_steps=outcome.process_steps,
            errors=outcome.errors,
        )
        return ExecutionResult(output=output.model_dump(by_alias=True), processed_image_id=image_id)
