"""
Database module for the photo library.

This module provides database connectivity, models, and the repository
used by the ingestion pipeline to store image, analysis and metadata records.
"""

from db.database import build_engine, get_engine, init_db, session_scope
from db.models import Image, ImageAnalysis, ImageExifMetadata, ImageStatus
from db.operations import ImageRepository

__all__ = [
    "build_engine",
    "get_engine",
    "init_db",
    "session_scope",
    "Image",
    "ImageAnalysis",
    "ImageExifMetadata",
    "ImageStatus",
    "ImageRepository",
]
