import hmac
import re
from typing import Optional

from fastapi import Header, HTTPException

from imgflow.config import get_settings
from imgflow.utils.logger import logger

_USER_ID_RE = re.compile(r"^[A-Za-z0-9_.:@-]{1,255}$")


async def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """
    Caller identity from X-User-ID.

    Tasks, provider credentials and stored result images are all scoped by
    this value, so routes that touch them depend on it.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-ID header")
    if not _USER_ID_RE.match(x_user_id):
        raise HTTPException(status_code=400, detail="Malformed X-User-ID header")
    return x_user_id


async def verify_internal_secret(x_internal_secret: Optional[str] = Header(None)) -> None:
    """
    Guard for worker, cron and recovery triggers.

    Open when INTERNAL_API_SECRET is unset (local development).
    """
    expected = get_settings().internal_api_secret
    if not expected:
        return
    if x_internal_secret and hmac.compare_digest(x_internal_secret, expected):
        return
    logger.warning("auth.internal_rejected", extra={"error": "bad or missing X-Internal-Secret"})
    raise HTTPException(status_code=401, detail="Invalid internal secret")
