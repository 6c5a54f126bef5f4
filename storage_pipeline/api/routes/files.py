"""
Direct file endpoints used by the dashboard.

- upload: small files sent as base64 JSON are stored under documents/ or picks/
- presign: presigned PUT URLs so the browser can upload large files itself
- delete: remove objects by public URL, e.g. after a record was deleted

Every endpoint requires the storage credentials to be configured in the
settings record; otherwise it answers 400 naming the missing settings.
"""

import base64
import binascii
import logging
import re

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from ...infrastructure.storage.client import StorageError, object_url, shared_key_generator
from ...infrastructure.storage.signer import presign_url
from ..dependencies import (
    AuthenticatedUser,
    SettingsDep,
    StorageClientDep,
    StorageCredentialsDep,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ALLOWED_FOLDERS = ("documents", "picks")

# Objects are immutable: every upload gets a fresh key
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"

_DATA_URL_PREFIX = re.compile(r"^data:[^,]*;base64,")


def _check_folder(folder: str) -> None:
    if folder not in ALLOWED_FOLDERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid folder. Must be one of: {', '.join(ALLOWED_FOLDERS)}",
        )


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class UploadRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    content_base64: str = Field(description="File content, optionally as a data: URL")
    content_type: str = Field(default="application/octet-stream")
    folder: str = Field(description="documents or picks")


class UploadResponse(BaseModel):
    key: str
    public_url: str
    file_size: int


class PresignFile(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    content_type: str = Field(default="application/octet-stream")
    folder: str = Field(description="documents or picks")


class PresignRequest(BaseModel):
    files: list[PresignFile] = Field(min_length=1, max_length=50)


class PresignedUpload(BaseModel):
    file_name: str
    key: str
    upload_url: str
    public_url: str
    headers: dict[str, str] = Field(description="Headers the uploader must send with the PUT")


class PresignResponse(BaseModel):
    expires_in: int
    uploads: list[PresignedUpload]


class DeleteRequest(BaseModel):
    urls: list[str] = Field(min_length=1)


class DeleteResponse(BaseModel):
    requested: int
    deleted: int
    failed: int = Field(description="Objects storage refused to delete; details are in the service log")
    skipped: list[str] = Field(description="URLs that are not on object storage")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=UploadResponse,
    summary="Upload a file",
    description="Store a base64-encoded file under documents/ or picks/",
)
async def upload_file(
    request: UploadRequest,
    api_key: AuthenticatedUser,
    settings: SettingsDep,
    storage: StorageClientDep,
) -> UploadResponse:
    _check_folder(request.folder)

    encoded = _DATA_URL_PREFIX.sub("", request.content_base64.strip())
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="content_base64 is not valid base64",
        )

    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File is empty")

    max_bytes = settings.max_upload_size_mb * 1024 * 1024
    if len(data) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_upload_size_mb} MB",
        )

    try:
        uploaded = await storage.upload_file(request.folder, request.file_name, data, request.content_type)
    except StorageError as e:
        logger.error("Upload failed", extra={"folder": request.folder, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Upload failed: {e}")

    logger.info("Uploaded file", extra={"key": uploaded.key, "size_bytes": uploaded.size})

    return UploadResponse(key=uploaded.key, public_url=uploaded.public_url, file_size=uploaded.size)


@router.post(
    "/presign",
    response_model=PresignResponse,
    summary="Presign uploads",
    description="Create presigned PUT URLs so clients upload directly to object storage",
)
async def presign_uploads(
    request: PresignRequest,
    api_key: AuthenticatedUser,
    settings: SettingsDep,
    credentials: StorageCredentialsDep,
) -> PresignResponse:
    uploads = []
    for file in request.files:
        _check_folder(file.folder)

        key = shared_key_generator.build(file.folder, file.file_name)
        headers = {
            "Content-Type": file.content_type,
            "Cache-Control": IMMUTABLE_CACHE_CONTROL,
        }
        upload_url = presign_url(
            "PUT",
            object_url(credentials.endpoint, settings.storage_bucket_name, key),
            credentials,
            expires_in=settings.presign_expiry_seconds,
            headers=headers,
            region=settings.storage_region,
        )
        uploads.append(PresignedUpload(
            file_name=file.file_name,
            key=key,
            upload_url=upload_url,
            public_url=f"{settings.storage_public_url_base.rstrip('/')}/{key}",
            headers=headers,
        ))

    logger.info("Presigned uploads", extra={"count": len(uploads)})

    return PresignResponse(expires_in=settings.presign_expiry_seconds, uploads=uploads)


@router.post(
    "/delete",
    response_model=DeleteResponse,
    summary="Delete files",
    description="Delete objects by public URL. URLs outside object storage are skipped.",
)
async def delete_files(
    request: DeleteRequest,
    api_key: AuthenticatedUser,
    storage: StorageClientDep,
) -> DeleteResponse:
    keys = []
    skipped = []
    for url in request.urls:
        key = storage.key_from_public_url(url)
        if key is None:
            skipped.append(url)
        else:
            keys.append(key)

    deleted = await storage.delete_objects(keys) if keys else 0
    failed = len(keys) - deleted

    log = logger.warning if failed else logger.info
    log(
        "Deleted files",
        extra={
            "requested": len(request.urls),
            "deleted": deleted,
            "failed": failed,
            "skipped": len(skipped),
        }
    )

    return DeleteResponse(
        requested=len(request.urls),
        deleted=deleted,
        failed=failed,
        skipped=skipped,
    )
