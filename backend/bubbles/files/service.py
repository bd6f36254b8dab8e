"""Image storage service for Bubbles.

Handles image storage on disk and metadata tracking in DuckDB.
Images are stored in: uploads/{user_id}/{uuid}.{ext}
"""
import logging
import uuid
from pathlib import Path
from typing import Iterable, Optional
from datetime import datetime

import duckdb

from bubbles.errors import UploadError

from .schemas import ALLOWED_IMAGE_TYPES, MAX_IMAGE_SIZE_BYTES, ImageMetadata, is_allowed_image

logger = logging.getLogger(__name__)

IMAGE_ROUTE = "/uploads/images"


class ImageStorageService:
    """Stores message images and hands out their public URLs."""

    _instance: Optional["ImageStorageService"] = None
    _upload_dir: str = "uploads"
    _db_path: str = "file_metadata.duckdb"
    _public_base_url: str = "http://localhost:8000"

    def __init__(
        self,
        upload_dir: Optional[str] = None,
        db_path: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ):
        if upload_dir:
            self._upload_dir = upload_dir
        if db_path:
            self._db_path = db_path
        if public_base_url:
            self._public_base_url = public_base_url.rstrip("/")

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._ensure_upload_dir()
        self._initialize_db()

    @classmethod
    def get_instance(
        cls,
        upload_dir: Optional[str] = None,
        db_path: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ) -> "ImageStorageService":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(upload_dir, db_path, public_base_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        if cls._instance and cls._instance._connection:
            cls._instance._connection.close()
        cls._instance = None

    def _ensure_upload_dir(self) -> None:
        Path(self._upload_dir).mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS image_metadata (
                id VARCHAR PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                original_filename VARCHAR NOT NULL,
                stored_filename VARCHAR NOT NULL,
                mime_type VARCHAR NOT NULL,
                size_bytes BIGINT NOT NULL,
                uploaded_at TIMESTAMP NOT NULL
            )
        """)

    def _get_user_dir(self, user_id: str) -> Path:
        return Path(self._upload_dir) / user_id

    def build_url(self, file_id: str) -> str:
        """Public URL under which an image is served."""
        return f"{self._public_base_url}{IMAGE_ROUTE}/{file_id}"

    def parse_file_id(self, url: str) -> Optional[str]:
        """Inverse of build_url. Returns None for URLs this service did not issue."""
        prefix = f"{IMAGE_ROUTE}/"
        if prefix not in url:
            return None
        file_id = url.rsplit(prefix, 1)[1].split("?", 1)[0]
        return file_id or None

    async def upload_image(
        self,
        user_id: str,
        filename: str,
        content: bytes,
        mime_type: str,
    ) -> ImageMetadata:
        """Save an uploaded image to disk and record metadata.

        Args:
            user_id: User ID who uploaded the image
            filename: Original filename
            content: Image content as bytes
            mime_type: MIME type reported by the client

        Returns:
            ImageMetadata for the stored image; build_url(metadata.id) is the
            URL messages reference.

        Raises:
            UploadError: 415 for a non-image, 413 if over the size limit
        """
        if not is_allowed_image(mime_type):
            raise UploadError(f"Unsupported image type: {mime_type}", status_code=415)

        size_bytes = len(content)
        if size_bytes > MAX_IMAGE_SIZE_BYTES:
            raise UploadError(
                f"Image size ({size_bytes} bytes) exceeds limit "
                f"({MAX_IMAGE_SIZE_BYTES} bytes = 4MB)",
                status_code=413,
            )

        file_id = str(uuid.uuid4())
        ext = Path(filename).suffix.lower() or ALLOWED_IMAGE_TYPES[mime_type.lower()]
        stored_filename = f"{file_id}{ext}"

        user_dir = self._get_user_dir(user_id)
        user_dir.mkdir(parents=True, exist_ok=True)
        file_path = user_dir / stored_filename
        file_path.write_bytes(content)

        logger.info(f"Saved image: {file_path} ({size_bytes} bytes)")

        metadata = ImageMetadata(
            id=file_id,
            user_id=user_id,
            original_filename=filename,
            stored_filename=stored_filename,
            mime_type=mime_type.lower(),
            size_bytes=size_bytes,
        )

        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO image_metadata
            (id, user_id, original_filename, stored_filename, mime_type, size_bytes, uploaded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                metadata.id,
                metadata.user_id,
                metadata.original_filename,
                metadata.stored_filename,
                metadata.mime_type,
                metadata.size_bytes,
                datetime.fromtimestamp(metadata.uploaded_at),
            ]
        )
        return metadata

    def get_file(self, file_id: str) -> Optional[ImageMetadata]:
        """Get image metadata by ID."""
        conn = self._get_connection()
        result = conn.execute(
            """
            SELECT id, user_id, original_filename, stored_filename, mime_type, size_bytes, uploaded_at
            FROM image_metadata
            WHERE id = ?
            """,
            [file_id]
        ).fetchone()

        if not result:
            return None

        return ImageMetadata(
            id=result[0],
            user_id=result[1],
            original_filename=result[2],
            stored_filename=result[3],
            mime_type=result[4],
            size_bytes=result[5],
            uploaded_at=result[6].timestamp() if result[6] else 0,
        )

    def get_file_path(self, file_id: str) -> Optional[Path]:
        """Get the path on disk for an image ID."""
        metadata = self.get_file(file_id)
        if not metadata:
            return None

        file_path = self._get_user_dir(metadata.user_id) / metadata.stored_filename
        if not file_path.exists():
            return None
        return file_path

    def delete_images(self, urls: Iterable[str]) -> int:
        """Delete the images behind a set of message image URLs.

        Unknown or foreign URLs are skipped. Deleting an image that is already
        gone is not an error.

        Returns:
            Number of images deleted
        """
        deleted = 0
        conn = self._get_connection()
        for url in urls:
            file_id = self.parse_file_id(url)
            if file_id is None:
                logger.debug(f"Skipping foreign image URL: {url}")
                continue
            metadata = self.get_file(file_id)
            if metadata is None:
                continue

            file_path = self._get_user_dir(metadata.user_id) / metadata.stored_filename
            file_path.unlink(missing_ok=True)
            conn.execute("DELETE FROM image_metadata WHERE id = ?", [file_id])
            deleted += 1

        if deleted:
            logger.info(f"Deleted {deleted} images")
        return deleted
