"""Shared types for image provider strategies."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ImageProvider(str, Enum):
    JIMENG = "jimeng"
    GPT = "gpt"
    GEMINI = "gemini"
    VOLCENGINE = "volcengine"


# Providers selectable for background replacement via inputData.aiModel
BACKGROUND_PROVIDERS = (ImageProvider.JIMENG, ImageProvider.GPT, ImageProvider.GEMINI)

DEFAULT_BACKGROUND_PROMPT = (
    "保持第一张图的产品主体完全不变，仅替换第二张图的背景为类似参考场景的风格"
    "（要完全把第二张图的产品去掉），不要有同时出现的情况，保持第一张产品的形状、材质、"
    "特征比例、摆放角度及数量完全一致，专业摄影，高质量，4K分辨率"
)


@dataclass
class ProviderCredentials:
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "ProviderCredentials":
        payload = payload or {}
        return cls(
            access_key=payload.get("accessKey"),
            secret_key=payload.get("secretKey"),
            api_key=payload.get("apiKey"),
            base_url=payload.get("baseUrl"),
        )


@dataclass
class ImageResult:
    """Output of one provider call. image_data is a data URL or an http(s) URL."""
    image_data: str
    image_size: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BackgroundReplaceRequest:
    image_url: str
    reference_image_url: str
    user_id: str
    prompt: str = DEFAULT_BACKGROUND_PROMPT


class BackgroundReplaceProvider(ABC):
    """One interchangeable background replacement strategy."""

    provider: ImageProvider

    @abstractmethod
    async def generate(self, request: BackgroundReplaceRequest) -> ImageResult:
        ...
