"""Serves images written by the local storage adapter under /files/<bucket>/<key>."""

from pathlib import Path

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from taskflow.app.config import get_settings

router = APIRouter()


@router.get("/files/{bucket}/{key:path}")
def serve_stored_file(bucket: str, key: str):
    root = Path(get_settings().local_storage_root).resolve()
    target = (root / bucket / key).resolve()
    if root not in target.parents:
        raise HTTPException(status_code=403, detail="Forbidden")
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Not Found")
    return FileResponse(target)
