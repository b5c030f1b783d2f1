"""
One-click enhancement pipeline.

Background replace -> outpaint -> upscale -> watermark, in that order. Every
stage is optional and isolated: a stage that raises leaves the current image
untouched, its error goes into the ``errors`` map, and the next stage runs on
the last good image. ``processSteps`` records which stages actually produced
output. Only the final save (done by the caller) can fail the task.
"""
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from imgflow.schemas.tasks import OneClickInput, ProcessSteps
from imgflow.services.errors import TaskValidationError
from imgflow.services.progress import ProgressReporter
from imgflow.services.providers import BackgroundReplaceRequest, ProviderRegistry, parse_provider
from imgflow.services.providers.base import DEFAULT_BACKGROUND_PROMPT
from imgflow.services.retry_policy import error_text
from imgflow.services.storage_service import StorageService
from imgflow.services.watermark import apply_watermark
from imgflow.utils.logger import logger

OUTPAINT_PROMPT = "扩展图像，保持产品主体和风格完全一致，自然延伸背景"

# (start, done) percentages per stage; saving reports SAVE_PROGRESS
STAGE_PROGRESS: List[Tuple[int, int]] = [(5, 25), (30, 50), (55, 75), (80, 90)]
SAVE_PROGRESS = 95


def expand_ratio(x_scale: float, y_scale: float) -> float:
    """Scale factors to the per-side outpaint ratio (xScale=2 grows the width by half on each side)."""
    return max(x_scale - 1, y_scale - 1) / 2


@dataclass
class Stage:
    key: str  # errors / processSteps key
    attr: str
    label: str
    enabled: bool
    run: Callable[[str], Awaitable[str]]


@dataclass
class PipelineOutcome:
    image: str
    process_steps: ProcessSteps
    errors: Dict[str, str] = field(default_factory=dict)


class OneClickPipeline:
    def __init__(
        self,
        registry: ProviderRegistry,
        storage: StorageService,
        report: ProgressReporter,
        user_id: str,
    ):
        self.registry = registry
        self.storage = storage
        self.report = report
        self.user_id = user_id

    @staticmethod
    def validate(inp: OneClickInput) -> None:
        """
        A missing reference image fails the whole task up front; it would fail
        every attempt. An unsupported aiModel is left to the background replace
        stage, which records it as that step's error and lets the rest run.
        """
        if inp.enable_background_replace and not inp.reference_image_url:
            raise TaskValidationError("启用背景替换时需要提供参考图片：referenceImageUrl")

    def stages(self, inp: OneClickInput) -> List[Stage]:
        async def background_replace(image: str) -> str:
            replacer = self.registry.background_replacer(parse_provider(inp.ai_model))
            result = await replacer.generate(
                BackgroundReplaceRequest(
                    image_url=image,
                    reference_image_url=inp.reference_image_url,
                    user_id=self.user_id,
                    prompt=DEFAULT_BACKGROUND_PROMPT,
                )
            )
            if not result.image_data:
                raise TaskValidationError("背景替换返回结果为空")
            return result.image_data

        async def outpaint(image: str) -> str:
            ratio = expand_ratio(inp.x_scale, inp.y_scale)
            result = await self.registry.volcengine().outpaint(
                image,
                self.user_id,
                prompt=OUTPAINT_PROMPT,
                top=ratio,
                bottom=ratio,
                left=ratio,
                right=ratio,
                max_width=2048,
                max_height=2048,
            )
            return result.image_data

        async def upscale(image: str) -> str:
            result = await self.registry.volcengine().enhance(
                image,
                self.user_id,
                resolution_boundary="720p",
                enable_hdr=False,
                enable_wb=False,
                result_format=1,
                jpg_quality=95,
            )
            return result.image_data

        async def watermark(image: str) -> str:
            return await apply_watermark(image, inp, self.storage)

        return [
            Stage("backgroundReplace", "background_replace", "背景替换", inp.enable_background_replace, background_replace),
            Stage("outpaint", "outpaint", "扩图", inp.enable_outpaint, outpaint),
            Stage("upscale", "upscale", "智能画质增强", inp.enable_upscale, upscale),
            Stage("watermark", "watermark", "添加水印", inp.enable_watermark, watermark),
        ]

    async def run(self, inp: OneClickInput, task_id: Optional[str] = None) -> PipelineOutcome:
        self.validate(inp)
        stages = self.stages(inp)
        total = len(stages)
        outcome = PipelineOutcome(image=inp.image_url, process_steps=ProcessSteps())

        for index, stage in enumerate(stages, start=1):
            start, done = STAGE_PROGRESS[index - 1]
            prefix = f"步骤{index}/{total}"
            if not stage.enabled:
                await self.report(f"{prefix}：跳过{stage.label}", done, index)
                continue

            await self.report(f"{prefix}：开始{stage.label}", start, index - 1)
            try:
                image = await stage.run(outcome.image)
            except Exception as exc:
                outcome.errors[stage.key] = error_text(exc)
                logger.warning(
                    "one_click.stage_failed",
                    extra={"task_id": task_id, "step": stage.key, "error": error_text(exc)[:200]},
                )
                await self.report(f"{prefix}：{stage.label}失败，继续使用当前图片", done, index)
                continue

            outcome.image = image
            setattr(outcome.process_steps, stage.attr, True)
            await self.report(f"{prefix}：{stage.label}完成", done, index)

        await self.report("保存处理结果", SAVE_PROGRESS, total)
        return outcome
