"""
SQLAlchemy models for the photo library.

Database Schema:
----------------
images table:
    - id: Primary key, auto-increment
    - filename: Generated (collision-resistant) filename in managed storage
    - original_name: Filename as found on disk
    - file_path: Path to the managed copy of the image
    - original_path: Source path the image was ingested from (batch mode only)
    - thumbnail_path: Path to the generated thumbnail
    - file_size: Size in bytes
    - mime_type: MIME type derived from the extension
    - width / height: Pixel dimensions of the decoded preview
    - status: Lifecycle enum (uploaded, processing, completed, error)
    - error_message: Error details if enrichment failed
    - uploaded_at / processed_at: Lifecycle timestamps

image_analysis table:
    - One row per image with the AI description, caption, keywords, confidence

image_metadata table:
    - One row per image with GPS, camera, exposure, IPTC/XMP and technical
      fields plus a size-bounded raw EXIF snapshot
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class ImageStatus(PyEnum):
    """Lifecycle status of an image record."""
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Image(Base):
    """
    SQLAlchemy model for the images table.

    Only the status fields change after creation.
    """
    __tablename__ = "images"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # File information
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    original_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    thumbnail_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Image dimensions
    width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Lifecycle
    status: Mapped[ImageStatus] = mapped_column(
        Enum(ImageStatus, name="image_status_enum"),
        nullable=False,
        default=ImageStatus.UPLOADED
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now()
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    analysis: Mapped[Optional["ImageAnalysis"]] = relationship(
        "ImageAnalysis", back_populates="image", uselist=False,
        cascade="all, delete-orphan"
    )
    exif_metadata: Mapped[Optional["ImageExifMetadata"]] = relationship(
        "ImageExifMetadata", back_populates="image", uselist=False,
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_images_duplicate_key", "original_name", "file_size"),
        Index("idx_images_status", "status"),
        Index("idx_images_uploaded_at", "uploaded_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Image(id={self.id}, original_name='{self.original_name}', "
            f"status={self.status.value})>"
        )

    def to_dict(self) -> dict:
        """Convert model to dictionary for serialization."""
        return {
            "id": self.id,
            "filename": self.filename,
            "original_name": self.original_name,
            "file_path": self.file_path,
            "original_path": self.original_path,
            "thumbnail_path": self.thumbnail_path,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "width": self.width,
            "height": self.height,
            "status": self.status.value,
            "error_message": self.error_message,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


class ImageAnalysis(Base):
    """AI-generated description, caption and keywords for an image."""
    __tablename__ = "image_analysis"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    image_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("images.id", ondelete="CASCADE"),
        nullable=False, unique=True
    )

    description: Mapped[str] = mapped_column(Text, nullable=False)
    caption: Mapped[str] = mapped_column(Text, nullable=False)
    keywords: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    analysis_date: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now()
    )

    image: Mapped["Image"] = relationship("Image", back_populates="analysis")

    def __repr__(self) -> str:
        return f"<ImageAnalysis(id={self.id}, image_id={self.image_id})>"

    def to_dict(self) -> dict:
        """Convert model to dictionary for serialization."""
        return {
            "id": self.id,
            "image_id": self.image_id,
            "description": self.description,
            "caption": self.caption,
            "keywords": self.keywords or [],
            "confidence": self.confidence,
            "analysis_date": self.analysis_date.isoformat() if self.analysis_date else None,
        }


class ImageExifMetadata(Base):
    """
    Metadata extracted from the image file itself.

    raw_exif holds a JSON snapshot for diagnostics and is never parsed back.
    """
    __tablename__ = "image_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    image_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("images.id", ondelete="CASCADE"),
        nullable=False, unique=True
    )

    # GPS
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    altitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Camera
    make: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    software: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Exposure
    iso: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    f_number: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    exposure_time: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    focal_length: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    flash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    white_balance: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    date_time_original: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    date_time_digitized: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # IPTC / XMP
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    keywords: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    creator: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    copyright: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Technical
    color_space: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    orientation: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    x_resolution: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    y_resolution: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    resolution_unit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    raw_exif: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now()
    )

    image: Mapped["Image"] = relationship("Image", back_populates="exif_metadata")

    def __repr__(self) -> str:
        return f"<ImageExifMetadata(id={self.id}, image_id={self.image_id})>"
