"""Per-user credentials for external image providers."""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, UniqueConstraint
from imgflow.database import Base
from imgflow.models.task import utcnow


class ProviderCredential(Base):
    __tablename__ = "provider_credentials"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_provider_credential_user"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    provider = Column(String(32), nullable=False)  # ImageProvider value
    access_key = Column(String(255), nullable=True)
    secret_key = Column(String(255), nullable=True)
    api_key = Column(String(500), nullable=True)
    base_url = Column(String(500), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def to_injected(self) -> dict:
        """Shape injected into a task's inputData at claim time."""
        return {
            key: value
            for key, value in (
                ("accessKey", self.access_key),
                ("secretKey", self.secret_key),
                ("apiKey", self.api_key),
                ("baseUrl", self.base_url),
            )
            if value
        }

    def to_public(self) -> dict:
        def mask(value):
            if not value:
                return None
            return value[:4] + "***" if len(value) > 8 else "***"

        return {
            "provider": self.provider,
            "enabled": self.enabled,
            "accessKey": mask(self.access_key),
            "secretKey": mask(self.secret_key),
            "apiKey": mask(self.api_key),
            "baseUrl": self.base_url,
        }
