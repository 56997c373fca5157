"""
Image transformation module for the pipeline.

Turns a managed source file into its derived artifacts:
- a processed JPEG preview (camera RAW files only)
- a JPEG thumbnail in the thumbnail directory
- pixel dimensions and extracted metadata

Also provides filename sanitization and the bounded JPEG encoding used
when sending images to the vision model.
"""

import io
import logging
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import piexif
import rawpy
from PIL import Image

from pipeline.formats import is_raw
from pipeline.metadata_extractor import MAX_METADATA_BYTES, ExtractedMetadata, MetadataExtractor

if TYPE_CHECKING:
    from pipeline.batch_registry import BatchOptions

logger = logging.getLogger(__name__)

# Output settings
THUMBNAIL_QUALITY = 80
OUTPUT_FORMAT = "JPEG"
PROCESSED_SUFFIX = "_processed.jpg"
THUMBNAIL_SUFFIX = "_thumb.jpg"

# Filename settings
MAX_FILENAME_LENGTH = 200
FALLBACK_FILENAME = "image"

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_WHITESPACE = re.compile(r"\s+")
_REPEATED_SEPARATORS = re.compile(r"_{2,}")


class TransformError(Exception):
    """Raised when a source image cannot be decoded or its artifacts written."""


@dataclass
class TransformResult:
    """Artifacts and properties derived from one source image."""
    processed_path: str
    thumbnail_path: str
    width: int
    height: int
    metadata: ExtractedMetadata | None = None
    is_raw: bool = False
    generated_files: list[str] = field(default_factory=list)


# ────────────────────────────────────────────────────────────────────────────────
# Filename helpers
# ────────────────────────────────────────────────────────────────────────────────

def sanitize_filename(name: str) -> str:
    """
    Make a filename safe for any filesystem.

    Replaces reserved and control characters with underscores, collapses
    whitespace and repeated separators, and caps the length.

    Args:
        name: Filename or stem to sanitize.

    Returns:
        Sanitized name, or "image" if nothing usable remains.
    """
    name = _UNSAFE_CHARS.sub("_", name)
    name = _WHITESPACE.sub("_", name)
    name = _REPEATED_SEPARATORS.sub("_", name)
    name = name.strip("_.")
    name = name[:MAX_FILENAME_LENGTH].rstrip("_.")
    return name or FALLBACK_FILENAME


def generate_unique_filename(original: str) -> str:
    """
    Generate a collision-free filename for a managed copy.

    Args:
        original: Original filename (may include a path).

    Returns:
        "<uuid4>_<sanitized stem><ext>" with a lowercase extension.
    """
    # Take the last component for either separator style
    base = re.split(r"[\\/]", original)[-1]
    path = Path(base)
    ext = path.suffix.lower()
    if not re.fullmatch(r"\.[a-z0-9]{1,10}", ext):
        ext = ""
    return f"{uuid.uuid4()}_{sanitize_filename(path.stem if ext else base)}{ext}"


def ensure_directory(path: str | Path) -> Path:
    """Create a directory (and parents) if it doesn't exist."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def delete_file(path: str | Path | None) -> bool:
    """
    Delete a file, logging rather than raising on failure.

    Args:
        path: File to delete.

    Returns:
        True if a file was deleted.
    """
    if not path:
        return False
    try:
        path = Path(path)
        if path.exists():
            path.unlink()
            logger.debug(f"Deleted file: {path}")
            return True
        return False
    except OSError as e:
        logger.error(f"Failed to delete {path}: {e}")
        return False


# ────────────────────────────────────────────────────────────────────────────────
# Encoding helpers
# ────────────────────────────────────────────────────────────────────────────────

def _to_rgb(img: Image.Image) -> Image.Image:
    """Convert to RGB for JPEG output."""
    if img.mode == "RGB":
        return img
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.getchannel("A"))
        return background
    return img.convert("RGB")


def _fit(img: Image.Image, size: int) -> Image.Image:
    """Return a copy resized to fit within size x size, never enlarged."""
    resized = img.copy()
    resized.thumbnail((size, size), Image.Resampling.LANCZOS)
    return resized


def resize_for_analysis(path: str | Path, max_size: int, quality: int = 85) -> bytes:
    """
    Encode an image as JPEG bytes bounded by max_size on each side.

    Args:
        path: Image to encode (source or processed preview).
        max_size: Maximum width and height in pixels.
        quality: JPEG quality.

    Returns:
        JPEG bytes.

    Raises:
        TransformError: If the image cannot be read or encoded.
    """
    try:
        with Image.open(path) as img:
            resized = _fit(_to_rgb(img), max_size)
        buffer = io.BytesIO()
        resized.save(buffer, format=OUTPUT_FORMAT, quality=quality, optimize=True)
        return buffer.getvalue()
    except (OSError, ValueError) as e:
        raise TransformError(f"Could not prepare {path} for analysis: {e}") from e


class ImageTransformer:
    """
    Produces thumbnails and RAW previews for managed images.

    Processed previews are written next to the managed copies in the
    upload directory; thumbnails go to the thumbnail directory.
    """

    def __init__(
        self,
        output_dir: str | Path = "uploads",
        thumbnail_dir: str | Path = "thumbnails",
        metadata_extractor: MetadataExtractor | None = None
    ):
        """
        Initialize the transformer.

        Args:
            output_dir: Directory for processed RAW previews.
            thumbnail_dir: Directory for thumbnails.
            metadata_extractor: Extractor to use (default: with reverse geocoding).
        """
        self.output_dir = Path(output_dir)
        self.thumbnail_dir = Path(thumbnail_dir)
        self.metadata_extractor = metadata_extractor or MetadataExtractor()

    def transform(
        self,
        source_path: str | Path,
        options: "BatchOptions",
        filename: str | None = None
    ) -> TransformResult:
        """
        Generate artifacts for one image.

        Args:
            source_path: Managed copy of the image.
            options: Batch options (thumbnail_size, analysis_image_size, quality).
            filename: Name used to derive artifact names (default: source name).

        Returns:
            TransformResult describing the generated files.

        Raises:
            TransformError: If the image cannot be decoded or written.
                            Any files written before the failure are removed.
        """
        source_path = Path(source_path)
        stem = Path(filename or source_path.name).stem
        raw = is_raw(source_path)
        generated: list[str] = []

        try:
            if raw:
                preview, preview_bytes = self._load_raw_preview(source_path)
            else:
                preview, preview_bytes = self._load_image(source_path), None

            width, height = preview.size
            preview = _to_rgb(preview)

            ensure_directory(self.thumbnail_dir)

            if raw:
                ensure_directory(self.output_dir)
                processed_path = self.output_dir / f"{stem}{PROCESSED_SUFFIX}"
                _fit(preview, options.analysis_image_size).save(
                    processed_path,
                    format=OUTPUT_FORMAT,
                    quality=options.quality,
                    optimize=True
                )
                generated.append(str(processed_path))
            else:
                processed_path = source_path

            thumbnail_path = self.thumbnail_dir / f"{stem}{THUMBNAIL_SUFFIX}"
            _fit(preview, options.thumbnail_size).save(
                thumbnail_path,
                format=OUTPUT_FORMAT,
                quality=THUMBNAIL_QUALITY,
                optimize=True
            )
            generated.append(str(thumbnail_path))

        except TransformError:
            self._cleanup(generated)
            raise
        except (OSError, ValueError) as e:
            self._cleanup(generated)
            raise TransformError(f"Failed to transform {source_path.name}: {e}") from e

        metadata = self._extract_metadata(source_path, preview_bytes)

        logger.debug(
            f"Transformed {source_path.name}: {width}x{height}, thumbnail {thumbnail_path}"
        )

        return TransformResult(
            processed_path=str(processed_path),
            thumbnail_path=str(thumbnail_path),
            width=width,
            height=height,
            metadata=metadata,
            is_raw=raw,
            generated_files=generated
        )

    # ────────────────────────────────────────────────────────────────────────
    # Decoding
    # ────────────────────────────────────────────────────────────────────────

    def _load_image(self, source_path: Path) -> Image.Image:
        """Decode a standard image file fully into memory."""
        try:
            with Image.open(source_path) as img:
                img.load()
                return img.copy()
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise TransformError(f"Cannot decode {source_path.name}: {e}") from e

    def _load_raw_preview(self, source_path: Path) -> tuple[Image.Image, bytes | None]:
        """
        Get a preview image from a camera RAW file.

        Tries the embedded previews first (LibRaw's largest preview, then the
        EXIF IFD1 thumbnail), then a half-size demosaic of the sensor data.

        Returns:
            Tuple of (preview image, embedded JPEG bytes or None).

        Raises:
            TransformError: If no strategy produces an image.
        """
        try:
            return self._embedded_preview(source_path)
        except Exception as e:
            logger.debug(f"No embedded preview in {source_path.name}: {e}")

        try:
            with rawpy.imread(str(source_path)) as raw:
                rgb = raw.postprocess(use_camera_wb=True, half_size=True, output_bps=8)
            return Image.fromarray(rgb), None
        except Exception as e:
            raise TransformError(
                f"Could not extract a preview from RAW file {source_path.name}: {e}"
            ) from e

    def _embedded_preview(self, source_path: Path) -> tuple[Image.Image, bytes | None]:
        """Read an embedded preview without demosaicing."""
        try:
            with rawpy.imread(str(source_path)) as raw:
                thumb = raw.extract_thumb()
            if thumb.format == rawpy.ThumbFormat.JPEG:
                return self._decode_bytes(thumb.data), thumb.data
            if thumb.format == rawpy.ThumbFormat.BITMAP:
                return Image.fromarray(thumb.data), None
        except Exception as e:
            logger.debug(f"LibRaw preview unavailable for {source_path.name}: {e}")

        exif = piexif.load(str(source_path))
        data = exif.get("thumbnail")
        if not data:
            raise TransformError("no EXIF thumbnail")
        return self._decode_bytes(data), data

    @staticmethod
    def _decode_bytes(data: bytes) -> Image.Image:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return img.copy()

    # ────────────────────────────────────────────────────────────────────────
    # Metadata / cleanup
    # ────────────────────────────────────────────────────────────────────────

    def _extract_metadata(
        self,
        source_path: Path,
        preview_bytes: bytes | None
    ) -> ExtractedMetadata | None:
        """Extract metadata from the source, falling back to a RAW preview."""
        try:
            metadata = None
            if source_path.stat().st_size <= MAX_METADATA_BYTES:
                metadata = self.metadata_extractor.extract(source_path.read_bytes())
            if metadata is None and preview_bytes:
                metadata = self.metadata_extractor.extract(preview_bytes)
            return metadata
        except Exception as e:
            logger.warning(f"Metadata extraction failed for {source_path.name}: {e}")
            return None

    def _cleanup(self, paths: list[str]) -> None:
        for path in paths:
            delete_file(path)
