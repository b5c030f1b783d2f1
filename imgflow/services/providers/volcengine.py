"""
Volcengine visual API client (outpainting, quality enhancement) and the
request signer shared with the Jimeng provider.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from imgflow.services import image_utils
from imgflow.services.errors import TaskValidationError, TransientProviderError
from imgflow.services.gateway import ServiceGateway
from imgflow.services.providers.base import ImageResult, ProviderCredentials
from imgflow.services.storage_service import StorageService
from imgflow.utils.logger import logger
from imgflow.utils.metrics import track_duration

HOST = "visual.volcengineapi.com"
REGION = "cn-north-1"
SERVICE = "cv"
VERSION = "2022-08-31"
QUERY = f"Action=CVProcess&Version={VERSION}"
API_URL = f"https://{HOST}/?{QUERY}"
SUCCESS_CODE = 10000


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def _signing_key(secret_key: str, date_stamp: str) -> bytes:
    k_date = _hmac(secret_key.encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, REGION)
    k_service = _hmac(k_region, SERVICE)
    return _hmac(k_service, "request")


def sign_headers(body: str, access_key: str, secret_key: str, now: Optional[datetime] = None) -> Dict[str, str]:
    """
    Build signed request headers for a CVProcess POST.

    HMAC-SHA256 over the canonical request (method, path, query, sorted
    headers, payload hash), scoped to date/region/service.
    """
    now = now or datetime.now(timezone.utc)
    timestamp = now.strftime("%Y%m%dT%H%M%SZ")
    payload_hash = hashlib.sha256(body.encode("utf-8")).hexdigest()

    headers = {
        "Content-Type": "application/json",
        "Host": HOST,
        "X-Date": timestamp,
        "X-Content-Sha256": payload_hash,
    }

    names = sorted(headers)
    canonical_headers = "".join(f"{name.lower()}:{headers[name].strip()}\n" for name in names)
    signed_headers = ";".join(name.lower() for name in names)
    canonical_request = "\n".join(["POST", "/", QUERY, canonical_headers, signed_headers, payload_hash])

    date_stamp = timestamp[:8]
    credential_scope = f"{date_stamp}/{REGION}/{SERVICE}/request"
    string_to_sign = "\n".join([
        "HMAC-SHA256",
        timestamp,
        credential_scope,
        hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
    ])
    signature = hmac.new(
        _signing_key(secret_key, date_stamp), string_to_sign.encode("utf-8"), hashlib.sha256
    ).hexdigest()

    headers["Authorization"] = (
        f"HMAC-SHA256 Credential={access_key}/{credential_scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    return headers


async def call_cv_process(
    credentials: ProviderCredentials,
    body: Dict[str, Any],
    provider: str,
    timeout: float = 120.0,
) -> Dict[str, Any]:
    """POST a signed CVProcess request and return its `data` object."""
    if not credentials.access_key or not credentials.secret_key:
        raise TaskValidationError("VOLCENGINE_NOT_CONFIGURED:请先配置火山引擎 Access Key 和 Secret Key")

    body_str = json.dumps(body, ensure_ascii=False)
    headers = sign_headers(body_str, credentials.access_key, credentials.secret_key)

    try:
        async with httpx.AsyncClient() as client:
            resp = await client.post(API_URL, content=body_str.encode("utf-8"), headers=headers, timeout=timeout)
    except httpx.HTTPError as exc:
        raise TransientProviderError(f"{provider} 请求失败: {exc}", provider=provider) from exc

    if resp.status_code >= 400:
        raise TransientProviderError(
            f"{provider} HTTP {resp.status_code}: {resp.text[:300]}",
            provider=provider,
            status_code=resp.status_code,
        )

    result = resp.json()
    if result.get("code") != SUCCESS_CODE:
        code = result.get("code")
        message = result.get("message") or "Unknown"
        raise TransientProviderError(f"{provider} API失败: code={code}, msg={message}", provider=provider)

    data = result.get("data") or {}
    if not data.get("binary_data_base64"):
        raise TransientProviderError(f"{provider} 未返回图片结果", provider=provider)
    return data


def first_image(data: Dict[str, Any]) -> ImageResult:
    b64 = data["binary_data_base64"][0]
    return ImageResult(
        image_data=image_utils.base64_to_data_url(b64, "image/jpeg"),
        image_size=len(b64) * 3 // 4,
    )


class VolcengineClient:
    """Outpainting and quality enhancement on the Volcengine visual API."""

    provider = "volcengine"

    def __init__(self, credentials: ProviderCredentials, gateway: ServiceGateway, storage: StorageService):
        self.credentials = credentials
        self.gateway = gateway
        self.storage = storage

    async def outpaint(
        self,
        image: str,
        user_id: str,
        prompt: str = "扩展图像，保持产品主体和风格完全一致，自然延伸背景",
        top: float = 0.1,
        bottom: float = 0.1,
        left: float = 0.1,
        right: float = 0.1,
        max_width: int = 2048,
        max_height: int = 2048,
    ) -> ImageResult:
        body: Dict[str, Any] = {
            "req_key": "i2i_outpainting",
            "custom_prompt": prompt,
            "scale": 7.0,
            "seed": -1,
            "steps": 30,
            "strength": 0.8,
            "top": top,
            "bottom": bottom,
            "left": left,
            "right": right,
            "max_height": max_height,
            "max_width": max_width,
        }
        if image_utils.is_remote_url(image):
            body["image_urls"] = [image]
        else:
            data_url = await self.storage.to_data_url(image)
            body["binary_data_base64"] = [image_utils.extract_base64(data_url)]

        logger.info(
            f"[Volcengine] outpaint top={top} bottom={bottom} left={left} right={right}",
            extra={"provider": self.provider, "user_id": user_id},
        )
        async with track_duration(self.provider, "outpaint"):
            data = await self.gateway.execute(self.provider, call_cv_process, self.credentials, body, self.provider)
        result = first_image(data)
        result.metadata = {"expandRatio": {"top": top, "bottom": bottom, "left": left, "right": right}}
        return result

    async def enhance(
        self,
        image: str,
        user_id: str,
        resolution_boundary: str = "720p",
        enable_hdr: bool = False,
        enable_wb: bool = False,
        result_format: int = 1,
        jpg_quality: int = 95,
    ) -> ImageResult:
        # The enhancement model only accepts URLs
        image_urls: List[str] = [await self.storage.public_url(image, user_id)]
        body = {
            "req_key": "lens_nnsr2_pic_common",
            "image_urls": image_urls,
            "model_quality": "MQ",
            "result_format": result_format,
            "jpg_quality": jpg_quality,
            "return_url": False,
        }

        logger.info(
            f"[Volcengine] enhance resolution={resolution_boundary}",
            extra={"provider": self.provider, "user_id": user_id},
        )
        async with track_duration(self.provider, "enhance"):
            data = await self.gateway.execute(self.provider, call_cv_process, self.credentials, body, self.provider)
        result = first_image(data)
        result.metadata = {
            "resolutionBoundary": resolution_boundary,
            "enableHdr": enable_hdr,
            "enableWb": enable_wb,
            "jpgQuality": jpg_quality,
        }
        return result
