"""
Image ingestion pipeline for the photo library.

This module provides a complete pipeline for:
- Scanning folders for standard and camera RAW images
- Skipping files already in the library
- Generating thumbnails and RAW previews
- Extracting EXIF, IPTC and XMP metadata
- Storing records and running background AI analysis
"""

from pipeline.ai_analyzer import AnalysisError, AnalysisResult, VisionAnalyzer
from pipeline.batch_registry import BatchOptions, BatchRegistry, BatchStatus, ErrorType
from pipeline.file_scanner import FileScanner, scan_directory
from pipeline.formats import get_mime_type, is_raw, is_supported
from pipeline.image_transformer import ImageTransformer, TransformError, TransformResult
from pipeline.metadata_extractor import ExtractedMetadata, MetadataExtractor
from pipeline.processor import BatchFatalError, BatchProcessor, InvalidPathError

__all__ = [
    "AnalysisError",
    "AnalysisResult",
    "VisionAnalyzer",
    "BatchOptions",
    "BatchRegistry",
    "BatchStatus",
    "ErrorType",
    "FileScanner",
    "scan_directory",
    "get_mime_type",
    "is_raw",
    "is_supported",
    "ImageTransformer",
    "TransformError",
    "TransformResult",
    "ExtractedMetadata",
    "MetadataExtractor",
    "BatchFatalError",
    "BatchProcessor",
    "InvalidPathError",
]
