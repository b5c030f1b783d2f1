"""
Provider settings routes

Per-user credentials for the image providers. They are injected into a
task's inputData when the task is claimed.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imgflow.database import get_db
from imgflow.middleware.auth import get_user_id
from imgflow.models.provider_credential import ProviderCredential
from imgflow.schemas.tasks import ProviderCredentialUpdate
from imgflow.services.providers import ImageProvider
from imgflow.utils.logger import logger

router = APIRouter()


@router.get("/providers")
async def list_provider_settings(
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Stored credentials with secrets masked"""
    result = await db.execute(
        select(ProviderCredential)
        .where(ProviderCredential.user_id == user_id)
        .order_by(ProviderCredential.provider)
    )
    return {"success": True, "providers": [row.to_public() for row in result.scalars().all()]}


@router.put("/providers")
async def save_provider_settings(
    body: ProviderCredentialUpdate,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        provider = ImageProvider(body.provider.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"未知的服务商: {body.provider}")

    result = await db.execute(
        select(ProviderCredential).where(
            ProviderCredential.user_id == user_id,
            ProviderCredential.provider == provider.value,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = ProviderCredential(user_id=user_id, provider=provider.value)
        db.add(row)

    # Omitted fields keep their stored value
    for field in ("access_key", "secret_key", "api_key", "base_url"):
        value = getattr(body, field)
        if value is not None:
            setattr(row, field, value or None)
    row.enabled = body.enabled

    await db.commit()
    logger.info(f"[Settings] Saved {provider.value} credentials", extra={"provider": provider.value})
    return {"success": True, "provider": row.to_public()}
