# Database models package
from imgflow.models.task import TaskQueue, TaskType, TaskStatus
from imgflow.models.processed_image import ProcessedImage
from imgflow.models.provider_credential import ProviderCredential

__all__ = [
    "TaskQueue",
    "TaskType",
    "TaskStatus",
    "ProcessedImage",
    "ProviderCredential",
]
