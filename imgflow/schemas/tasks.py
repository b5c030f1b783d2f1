"""
Task payload schemas.

inputData/outputData travel as camelCase JSON (the browser UI reads them
directly); fields are snake_case on the Python side.
"""
from typing import Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from imgflow.models.task import TaskType
from imgflow.services.errors import TaskValidationError


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


WatermarkPreset = Literal["top-left", "top-right", "bottom-left", "bottom-right", "center"]


class WatermarkPlacement(CamelModel):
    """Custom placement from the editor. x/y are normalized unless editor size is given."""
    x: float
    y: float
    width: Optional[float] = None
    height: Optional[float] = None
    scale: Optional[float] = None
    editor_width: Optional[float] = None
    editor_height: Optional[float] = None


class WatermarkOptions(CamelModel):
    watermark_text: str = "Sample Watermark"
    watermark_opacity: float = Field(0.3, ge=0.0, le=1.0)
    watermark_position: Union[WatermarkPreset, WatermarkPlacement] = "bottom-right"
    watermark_type: Literal["text", "logo"] = "text"
    watermark_logo_url: Optional[str] = None
    output_resolution: str = "original"


class BackgroundRemovalInput(CamelModel):
    image_url: str = Field(min_length=1)
    reference_image_url: Optional[str] = None
    prompt: Optional[str] = None
    ai_model: Optional[str] = "jimeng"


class ImageExpansionInput(CamelModel):
    image_url: str = Field(min_length=1)
    x_scale: float = Field(2.0, ge=1.0, le=4.0)
    y_scale: float = Field(2.0, ge=1.0, le=4.0)
    prompt: Optional[str] = None


class ImageUpscalingInput(CamelModel):
    image_url: str = Field(min_length=1)
    upscale_factor: int = Field(2, ge=1, le=4)
    resolution_boundary: str = "720p"
    enable_hdr: bool = False
    enable_wb: bool = False
    result_format: int = 1
    jpg_quality: int = Field(95, ge=1, le=100)


class WatermarkInput(WatermarkOptions):
    image_url: str = Field(min_length=1)


class OneClickInput(WatermarkOptions):
    image_url: str = Field(min_length=1)
    reference_image_url: Optional[str] = None
    x_scale: float = Field(2.0, ge=1.0, le=4.0)
    y_scale: float = Field(2.0, ge=1.0, le=4.0)
    upscale_factor: int = Field(2, ge=1, le=4)
    enable_background_replace: bool = True
    enable_outpaint: bool = True
    enable_upscale: bool = True
    enable_watermark: bool = False
    ai_model: Optional[str] = "jimeng"


class ProcessSteps(CamelModel):
    """Which one-click stages actually produced output."""
    background_replace: bool = False
    outpaint: bool = False
    upscale: bool = False
    watermark: bool = False


class OneClickOutput(CamelModel):
    processed_image_url: str
    processed_image_id: str
    image_size: int = 0
    process_steps: ProcessSteps
    errors: Dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class EnqueueTaskRequest(CamelModel):
    type: TaskType
    input_data: dict
    priority: int = 1
    total_steps: Optional[int] = Field(None, ge=1)
    max_retries: Optional[int] = Field(None, ge=0, le=10)


class WorkerTriggerRequest(CamelModel):
    batch: bool = False
    max_tasks: Optional[int] = Field(None, ge=1, le=50)
    max_rounds: Optional[int] = Field(None, ge=1, le=100)


class TaskIdsRequest(CamelModel):
    task_ids: List[str] = Field(min_length=1)


class DeleteTasksRequest(CamelModel):
    task_ids: Optional[List[str]] = None
    delete_all: bool = False


class ProviderCredentialUpdate(CamelModel):
    provider: str
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    enabled: bool = True


INPUT_MODELS: Dict[TaskType, Type[CamelModel]] = {
    TaskType.ONE_CLICK_WORKFLOW: OneClickInput,
    TaskType.BACKGROUND_REMOVAL: BackgroundRemovalInput,
    TaskType.IMAGE_EXPANSION: ImageExpansionInput,
    TaskType.IMAGE_UPSCALING: ImageUpscalingInput,
    TaskType.WATERMARK: WatermarkInput,
}

M = TypeVar("M", bound=BaseModel)


def parse_input(model: Type[M], data: Optional[dict]) -> M:
    """Validate task inputData, converting schema errors into a non-retryable failure."""
    try:
        return model.model_validate(data or {})
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "inputData" for err in exc.errors())
        raise TaskValidationError(f"任务参数无效: {fields}") from exc
