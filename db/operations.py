"""
Database operations for the photo library.

Provides ImageRepository class with methods for:
- Inserting image, analysis and metadata records
- Reading/querying images
- Persisting status transitions
- Checking for duplicates by (original name, size)
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from db.database import session_scope
from db.models import Image, ImageAnalysis, ImageExifMetadata, ImageStatus

logger = logging.getLogger(__name__)

# Longest error message persisted on an image record
MAX_ERROR_MESSAGE_LENGTH = 1000


class ImageRepository:
    """
    Repository for image record storage.

    Every operation runs in its own short session so the repository can be
    shared between the batch worker and the enrichment threads. Returned
    objects are detached; their column attributes stay readable.
    """

    def __init__(self, session_factory: sessionmaker | None = None):
        """
        Initialize repository with optional session factory.

        Args:
            session_factory: SQLAlchemy sessionmaker. If None, the
                            environment-configured factory is used.
        """
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)

    # ────────────────────────────────────────────────────────────────────────────
    # Create Operations
    # ────────────────────────────────────────────────────────────────────────────

    def insert_image(
        self,
        filename: str,
        original_name: str,
        file_path: str,
        file_size: int,
        mime_type: str,
        thumbnail_path: str | None = None,
        original_path: str | None = None,
        width: int | None = None,
        height: int | None = None,
        status: ImageStatus = ImageStatus.UPLOADED,
    ) -> Image:
        """
        Create a new image record.

        Args:
            filename: Generated filename in managed storage.
            original_name: Filename as found on disk.
            file_path: Path to the managed copy.
            file_size: Size in bytes.
            mime_type: MIME type of the source file.
            thumbnail_path: Path to the generated thumbnail.
            original_path: Source path (batch ingestion only).
            width: Image width in pixels.
            height: Image height in pixels.
            status: Initial lifecycle status.

        Returns:
            Created Image instance with its assigned ID.
        """
        with self._scope() as session:
            image = Image(
                filename=filename,
                original_name=original_name,
                file_path=file_path,
                original_path=original_path,
                thumbnail_path=thumbnail_path,
                file_size=file_size,
                mime_type=mime_type,
                width=width,
                height=height,
                status=status,
                uploaded_at=datetime.utcnow(),
            )
            session.add(image)
            session.flush()
            session.refresh(image)

            logger.debug(f"Created image record: {image}")
            return image

    def insert_analysis(
        self,
        image_id: int,
        description: str,
        caption: str,
        keywords: list[str],
        confidence: float | None = None,
    ) -> ImageAnalysis:
        """
        Store the AI analysis for an image.

        Args:
            image_id: ID of the analysed image.
            description: Long-form description.
            caption: Short caption.
            keywords: Keyword list.
            confidence: Model confidence (0.0 - 1.0).

        Returns:
            Created ImageAnalysis instance.
        """
        with self._scope() as session:
            analysis = ImageAnalysis(
                image_id=image_id,
                description=description,
                caption=caption,
                keywords=list(keywords),
                confidence=confidence,
                analysis_date=datetime.utcnow(),
            )
            session.add(analysis)
            session.flush()
            session.refresh(analysis)

            logger.debug(f"Stored analysis for image {image_id}")
            return analysis

    def insert_metadata(self, image_id: int, fields: dict[str, Any]) -> ImageExifMetadata:
        """
        Store extracted file metadata for an image.

        Args:
            image_id: ID of the image.
            fields: Column values; unknown keys are ignored.

        Returns:
            Created ImageExifMetadata instance.
        """
        columns = ImageExifMetadata.__table__.columns.keys()
        values = {
            key: value for key, value in fields.items()
            if key in columns and key not in ("id", "image_id")
        }
        values.setdefault("extracted_at", datetime.utcnow())

        with self._scope() as session:
            row = ImageExifMetadata(image_id=image_id, **values)
            session.add(row)
            session.flush()
            session.refresh(row)

            logger.debug(f"Stored metadata for image {image_id}")
            return row

    # ────────────────────────────────────────────────────────────────────────────
    # Read Operations
    # ────────────────────────────────────────────────────────────────────────────

    def get_image(self, image_id: int) -> Image | None:
        """
        Get image by ID.

        Args:
            image_id: Primary key of the image.

        Returns:
            Image instance or None if not found.
        """
        with self._scope() as session:
            return session.get(Image, image_id)

    def find_duplicate(self, original_name: str, file_size: int) -> Image | None:
        """
        Find a previously ingested image with the same name and size.

        Records in ERROR status never match, so failed uploads can be
        retried by running the batch again.

        Args:
            original_name: Filename as found on disk.
            file_size: Size in bytes.

        Returns:
            The first matching Image or None.
        """
        stmt = (
            select(Image)
            .where(
                Image.original_name == original_name,
                Image.file_size == file_size,
                Image.status != ImageStatus.ERROR,
            )
            .order_by(Image.id)
            .limit(1)
        )

        with self._scope() as session:
            return session.execute(stmt).scalars().first()

    def get_analysis(self, image_id: int) -> ImageAnalysis | None:
        """Get the AI analysis for an image."""
        stmt = select(ImageAnalysis).where(ImageAnalysis.image_id == image_id)

        with self._scope() as session:
            return session.execute(stmt).scalar_one_or_none()

    def get_metadata(self, image_id: int) -> ImageExifMetadata | None:
        """Get the extracted file metadata for an image."""
        stmt = select(ImageExifMetadata).where(ImageExifMetadata.image_id == image_id)

        with self._scope() as session:
            return session.execute(stmt).scalar_one_or_none()

    def count(self, status: ImageStatus | None = None) -> int:
        """
        Count images, optionally filtered by status.

        Args:
            status: Filter by lifecycle status.

        Returns:
            Number of images.
        """
        stmt = select(func.count(Image.id))

        if status:
            stmt = stmt.where(Image.status == status)

        with self._scope() as session:
            return session.execute(stmt).scalar() or 0

    # ────────────────────────────────────────────────────────────────────────────
    # Update Operations
    # ────────────────────────────────────────────────────────────────────────────

    def update_image_status(
        self,
        image_id: int,
        status: ImageStatus,
        error_message: str | None = None,
    ) -> Image | None:
        """
        Update lifecycle status of an image.

        Args:
            image_id: Primary key of the image.
            status: New status.
            error_message: Error details; only kept for ERROR status.

        Returns:
            Updated Image instance or None if not found.
        """
        with self._scope() as session:
            image = session.get(Image, image_id)
            if not image:
                logger.warning(f"Image {image_id} not found for status update")
                return None

            image.status = status
            if status == ImageStatus.ERROR:
                image.error_message = (error_message or "Unknown error")[:MAX_ERROR_MESSAGE_LENGTH]
            else:
                image.error_message = None
            if status in (ImageStatus.COMPLETED, ImageStatus.ERROR):
                image.processed_at = datetime.utcnow()

            session.flush()
            session.refresh(image)
            logger.debug(f"Image {image_id} status -> {status.value}")
            return image

    def mark_processing(self, image_id: int) -> Image | None:
        """Mark image as currently being analysed."""
        return self.update_image_status(image_id, ImageStatus.PROCESSING)

    def mark_completed(self, image_id: int) -> Image | None:
        """Mark image as completed."""
        return self.update_image_status(image_id, ImageStatus.COMPLETED)

    def mark_failed(self, image_id: int, error_message: str) -> Image | None:
        """Mark image as failed with error message."""
        return self.update_image_status(image_id, ImageStatus.ERROR, error_message)
