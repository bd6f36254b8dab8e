"""Pydantic schemas for image attachments.

Images are stored on disk under ``{upload_dir}/{user_id}/{uuid}.{ext}`` and
tracked in DuckDB. A message only ever references images by their public URL,
so the upload collaborator contract is simply "file in, URL out" and
"URLs in, files gone".
"""
import time
import uuid

from pydantic import BaseModel, Field


class ImageMetadata(BaseModel):
    """Metadata for an uploaded image."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique file ID")
    user_id: str = Field(..., description="User ID who uploaded the image")
    original_filename: str = Field(..., description="Original filename")
    stored_filename: str = Field(..., description="Filename on disk (UUID-based)")
    mime_type: str = Field(..., description="MIME type of the image")
    size_bytes: int = Field(..., description="File size in bytes")
    uploaded_at: float = Field(default_factory=time.time, description="Upload timestamp")


class ImageUploadResponse(BaseModel):
    """Response after a successful upload."""
    id: str = Field(..., description="File ID")
    url: str = Field(..., description="Public URL to reference from messages")
    mime_type: str = Field(..., description="MIME type")
    size_bytes: int = Field(..., description="File size in bytes")


# Image size limit: 4MB
MAX_IMAGE_SIZE_BYTES = 4 * 1024 * 1024

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


def is_allowed_image(mime_type: str) -> bool:
    """Check a MIME type against the accepted image formats.

    Examples:
        >>> is_allowed_image("image/png")
        True
        >>> is_allowed_image("application/pdf")
        False
    """
    return (mime_type or "").lower() in ALLOWED_IMAGE_TYPES
