"""Serves attachments written by the local blob storage."""

from __future__ import annotations

import mimetypes

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

from coachflow.realtime.blobs import LocalBlobStorage
from coachflow.realtime.errors import UploadError
from coachflow.realtime.factory import create_blob_storage

router = APIRouter(tags=["media"])


@router.get("/{blob_path:path}")
def download_blob(blob_path: str) -> FileResponse:
    """Return the raw file behind an attachment URL."""

    storage = create_blob_storage()
    if not isinstance(storage, LocalBlobStorage):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment not found")
    try:
        file_path = storage.resolve(blob_path)
    except UploadError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment not found") from exc
    if not file_path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment not found")

    content_type, _ = mimetypes.guess_type(file_path.name)
    return FileResponse(
        file_path,
        media_type=content_type or "application/octet-stream",
        filename=file_path.name,
    )
