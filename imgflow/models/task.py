"""
SQLAlchemy model for the task_queue table: a durable, polling-based queue of
image processing tasks.
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Enum, Index
from imgflow.database import Base


class TaskType(str, enum.Enum):
    ONE_CLICK_WORKFLOW = "ONE_CLICK_WORKFLOW"
    BACKGROUND_REMOVAL = "BACKGROUND_REMOVAL"
    IMAGE_EXPANSION = "IMAGE_EXPANSION"
    IMAGE_UPSCALING = "IMAGE_UPSCALING"
    WATERMARK = "WATERMARK"


class TaskStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskQueue(Base):
    __tablename__ = "task_queue"
    __table_args__ = (
        # Claim scan: WHERE status = 'PENDING' ORDER BY priority DESC, created_at ASC
        Index("ix_task_queue_claim", "status", "priority", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    type = Column(Enum(TaskType, native_enum=False, length=32), nullable=False, index=True)

    # Status: PENDING → PROCESSING → COMPLETED | FAILED, PROCESSING → PENDING on retry
    status = Column(
        Enum(TaskStatus, native_enum=False, length=20),
        nullable=False,
        default=TaskStatus.PENDING,
    )
    priority = Column(Integer, nullable=False, default=1)

    # Payload and result
    input_data = Column(JSON, nullable=False)
    output_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    # Progress reported to pollers
    progress = Column(Integer, nullable=False, default=0)  # 0-100
    current_step = Column(String(500), nullable=True)
    total_steps = Column(Integer, nullable=False, default=1)
    completed_steps = Column(Integer, nullable=False, default=0)

    # Retry tracking
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)

    # Weak reference to the produced artifact (no FK, images may be pruned separately)
    processed_image_id = Column(String(36), nullable=True)

    # Timestamps (client-side so FIFO ordering keeps sub-second resolution)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def to_snapshot(self) -> dict:
        """Poll payload: what the UI needs to render a task card."""
        snapshot = {
            "id": self.id,
            "type": self.type.value if self.type else None,
            "status": self.status.value if self.status else None,
            "progress": self.progress,
            "currentStep": self.current_step,
            "totalSteps": self.total_steps,
            "completedSteps": self.completed_steps,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "priority": self.priority,
            "processedImageId": self.processed_image_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
        if self.output_data is not None:
            snapshot["outputData"] = self.output_data
        if self.error_message:
            snapshot["errorMessage"] = self.error_message
        return snapshot
