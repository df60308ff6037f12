"""Serves local-store objects at the URLs ``LocalArtifactStore`` hands out.

Only active in local storage mode; GCS objects are served by GCS.
"""

import time

from fastapi import APIRouter
from fastapi.responses import FileResponse

from renderfleet.api.deps import Store
from renderfleet.exceptions import AccessDeniedError, NotFoundError
from renderfleet.services.storage_service import LocalArtifactStore

router = APIRouter()

MEDIA_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".html": "text/html",
    ".js": "text/javascript",
    ".css": "text/css",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".svg": "image/svg+xml",
    ".woff2": "font/woff2",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
}


@router.get("/files/{storage_key:path}")
async def get_file(storage_key: str, store: Store, expires: int | None = None) -> FileResponse:
    """Serve files from local storage."""
    if not isinstance(store, LocalArtifactStore):
        raise NotFoundError("Local storage not enabled")
    if expires is not None and expires < time.time():
        raise AccessDeniedError("Link expired")

    file_path = store.get_file_path(storage_key)
    if not file_path.is_file():
        raise NotFoundError(storage_key)

    media_type = MEDIA_TYPES.get(file_path.suffix.lower(), "application/octet-stream")
    return FileResponse(path=str(file_path), media_type=media_type)
