"""FastAPI router for image upload endpoints."""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import FileResponse

from bubbles.auth import Identity, require_identity
from bubbles.errors import UploadError

from .schemas import MAX_IMAGE_SIZE_BYTES, ImageUploadResponse
from .service import ImageStorageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])


@router.post("/images", response_model=ImageUploadResponse)
async def upload_image(
    file: UploadFile = File(...),
    identity: Identity = Depends(require_identity),
):
    """Upload a single image to be attached to a message.

    Supported types: jpeg, png, gif, webp, up to 4MB.

    Returns:
        ImageUploadResponse whose ``url`` goes into the message's images

    Raises:
        HTTPException 413: If the image exceeds the size limit
        HTTPException 415: If the file is not a supported image
    """
    content = await file.read()
    if len(content) > MAX_IMAGE_SIZE_BYTES:
        raise HTTPException(status_code=413, detail="Image size exceeds limit of 4MB")

    service = ImageStorageService.get_instance()
    try:
        metadata = await service.upload_image(
            user_id=identity.user_id,
            filename=file.filename or "image",
            content=content,
            mime_type=file.content_type or "application/octet-stream",
        )
    except UploadError as e:
        raise e.to_http()

    logger.info(f"Image uploaded: {metadata.original_filename} ({metadata.size_bytes} bytes) by {identity.user_id}")

    return ImageUploadResponse(
        id=metadata.id,
        url=service.build_url(metadata.id),
        mime_type=metadata.mime_type,
        size_bytes=metadata.size_bytes,
    )


@router.get("/images/{file_id}")
async def download_image(file_id: str):
    """Serve an uploaded image by ID."""
    service = ImageStorageService.get_instance()

    metadata = service.get_file(file_id)
    if not metadata:
        raise HTTPException(status_code=404, detail="Image not found")

    file_path = service.get_file_path(file_id)
    if not file_path:
        raise HTTPException(status_code=404, detail="Image not found on disk")

    return FileResponse(path=file_path, media_type=metadata.mime_type)
