"""Serves stored result images (``/files/<user_id>/<name>``)."""
from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from imgflow.services.errors import TaskValidationError
from imgflow.services.storage_service import get_storage

router = APIRouter()


@router.get("/{file_path:path}")
async def get_file(file_path: str):
    try:
        path = get_storage().path_for(file_path)
    except TaskValidationError:
        raise HTTPException(status_code=400, detail="Invalid file path")
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path)
