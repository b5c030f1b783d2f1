"""Stored artifact produced by a task (the result image and its metadata)."""
import uuid

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON
from imgflow.database import Base
from imgflow.models.task import utcnow


class ProcessedImage(Base):
    __tablename__ = "processed_images"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    filename = Column(String(255), nullable=False)
    original_url = Column(Text, nullable=True)
    processed_url = Column(Text, nullable=True)
    process_type = Column(String(32), nullable=False)  # mirrors TaskType values
    status = Column(String(20), nullable=False, default="COMPLETED")
    file_size = Column(Integer, nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
