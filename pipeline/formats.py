"""
Supported image formats.

Maps filenames to support status, RAW classification and MIME type.
Lookups never raise; unknown extensions are simply unsupported.
"""

from pathlib import Path
from typing import NamedTuple


class ImageFormat(NamedTuple):
    """A supported file extension."""
    extension: str
    mime_type: str
    is_raw: bool


DEFAULT_MIME_TYPE = "application/octet-stream"

SUPPORTED_FORMATS: dict[str, ImageFormat] = {
    fmt.extension: fmt for fmt in (
        ImageFormat("jpg", "image/jpeg", False),
        ImageFormat("jpeg", "image/jpeg", False),
        ImageFormat("png", "image/png", False),
        ImageFormat("tiff", "image/tiff", False),
        ImageFormat("tif", "image/tiff", False),
        ImageFormat("cr2", "image/x-canon-cr2", True),
        ImageFormat("nef", "image/x-nikon-nef", True),
        ImageFormat("arw", "image/x-sony-arw", True),
        ImageFormat("dng", "image/x-adobe-dng", True),
        ImageFormat("raf", "image/x-fuji-raf", True),
        ImageFormat("orf", "image/x-olympus-orf", True),
        ImageFormat("rw2", "image/x-panasonic-rw2", True),
    )
}

# Dotted form, as compared against Path.suffix
SUPPORTED_EXTENSIONS = {f".{ext}" for ext in SUPPORTED_FORMATS}


def _lookup(filename: str | Path) -> ImageFormat | None:
    ext = Path(str(filename)).suffix.lower().lstrip(".")
    return SUPPORTED_FORMATS.get(ext)


def is_supported(filename: str | Path) -> bool:
    """Return True if the file extension is a supported image format."""
    return _lookup(filename) is not None


def is_raw(filename: str | Path) -> bool:
    """Return True if the file is a camera RAW format."""
    fmt = _lookup(filename)
    return fmt.is_raw if fmt else False


def get_mime_type(filename: str | Path) -> str:
    """Return the MIME type for a filename, or a generic binary type."""
    fmt = _lookup(filename)
    return fmt.mime_type if fmt else DEFAULT_MIME_TYPE
