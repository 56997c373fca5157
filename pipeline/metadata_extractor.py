"""
Metadata extraction module for images.

Extracts from in-memory image bytes:
- EXIF data (camera, exposure, technical fields, GPS)
- IPTC and XMP descriptive fields (title, keywords, creator, location)
- Location (reverse geocoded from GPS when the file carries none)
- A size-bounded JSON snapshot of selected raw EXIF tags
"""

import io
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

import piexif
import pycountry
import reverse_geocoder as rg
from PIL import Image, IptcImagePlugin

logger = logging.getLogger(__name__)

# Inputs above this size skip extraction entirely
MAX_METADATA_BYTES = 50 * 1024 * 1024

# Raw snapshot bounds
MAX_FIELD_LENGTH = 500
MAX_SNAPSHOT_BYTES = 10 * 1024

KEYWORD_DELIMITER = ", "

# Byte prefixes piexif can parse: JPEG, TIFF (both byte orders), WebP, bare Exif
EXIF_CONTAINER_HEADERS = (b"\xff\xd8", b"II*\x00", b"MM\x00*", b"RIFF", b"Exif")

# Raw EXIF tags copied into the diagnostic snapshot
RAW_TAG_ALLOWLIST = (
    "Make", "Model", "Software", "DateTime", "Orientation",
    "XResolution", "YResolution", "ResolutionUnit",
    "ImageDescription", "Artist", "Copyright",
    "ExposureTime", "FNumber", "ExposureProgram", "ISOSpeedRatings",
    "DateTimeOriginal", "DateTimeDigitized", "MeteringMode", "Flash",
    "FocalLength", "ColorSpace", "WhiteBalance", "LensMake", "LensModel",
    "GPSLatitudeRef", "GPSLatitude", "GPSLongitudeRef", "GPSLongitude",
    "GPSAltitudeRef", "GPSAltitude",
)

COLOR_SPACES = {1: "sRGB", 2: "Adobe RGB", 65535: "Uncalibrated"}
WHITE_BALANCE = {0: "Auto", 1: "Manual"}
RESOLUTION_UNITS = {1: "none", 2: "inches", 3: "cm"}

# IPTC IIM dataset numbers (record 2)
IPTC_TITLE = (2, 5)
IPTC_KEYWORDS = (2, 25)
IPTC_BYLINE = (2, 80)
IPTC_CITY = (2, 90)
IPTC_STATE = (2, 95)
IPTC_COUNTRY = (2, 101)
IPTC_COPYRIGHT = (2, 116)
IPTC_CAPTION = (2, 120)


@dataclass
class ExtractedMetadata:
    """Container for metadata read from an image file."""
    # GPS
    latitude: float | None = None
    longitude: float | None = None
    altitude: float | None = None

    # Camera
    make: str | None = None
    model: str | None = None
    software: str | None = None

    # Exposure
    iso: int | None = None
    f_number: float | None = None
    exposure_time: str | None = None
    focal_length: float | None = None
    flash: str | None = None
    white_balance: str | None = None
    date_time_original: datetime | None = None
    date_time_digitized: datetime | None = None

    # IPTC / XMP
    title: str | None = None
    description: str | None = None
    keywords: str | None = None
    creator: str | None = None
    copyright: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None

    # Technical
    color_space: str | None = None
    orientation: int | None = None
    x_resolution: float | None = None
    y_resolution: float | None = None
    resolution_unit: str | None = None

    raw_exif: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for database insertion."""
        return asdict(self)

    def is_empty(self) -> bool:
        """True when no field was extracted."""
        return all(value is None for value in asdict(self).values())

    @property
    def has_location(self) -> bool:
        return any((self.city, self.state, self.country))


# ────────────────────────────────────────────────────────────────────────────────
# Value helpers
# ────────────────────────────────────────────────────────────────────────────────

def _is_rational(value: Any) -> bool:
    return (
        isinstance(value, tuple) and len(value) == 2 and
        all(isinstance(v, int) and not isinstance(v, bool) for v in value)
    )


def _to_float(value: Any) -> float | None:
    """Convert a number, (num, den) rational or Fraction-like value to float."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if _is_rational(value):
        num, den = value
        return num / den if den else None
    if hasattr(value, "numerator") and hasattr(value, "denominator"):
        return float(value.numerator) / value.denominator if value.denominator else None
    if isinstance(value, (str, bytes)):
        try:
            return float(_decode(value))
        except (TypeError, ValueError):
            return None
    return None


def _decode(value: bytes | str | None) -> str | None:
    """Decode an EXIF/IPTC string value, stripping padding."""
    if value is None:
        return None
    if isinstance(value, bytes):
        try:
            text = value.decode("utf-8")
        except UnicodeDecodeError:
            text = value.decode("latin-1")
    else:
        text = str(value)
    text = text.strip().rstrip("\x00").strip()
    return text or None


def _parse_exif_date(value: bytes | str | None) -> datetime | None:
    """Parse EXIF date string to datetime."""
    date_str = _decode(value)
    if not date_str:
        return None
    # EXIF format: "YYYY:MM:DD HH:MM:SS"
    for fmt in ("%Y:%m:%d %H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S"):
        try:
            return datetime.strptime(date_str[:19], fmt)
        except ValueError:
            continue
    logger.debug(f"Could not parse date: {date_str}")
    return None


def _format_exposure_time(value: Any) -> str | None:
    """Render an exposure time as photographers write it (1/250, 2)."""
    if _is_rational(value):
        num, den = value
        if not num or not den:
            return None
        if num >= den:
            seconds = num / den
            return f"{seconds:g}"
        if num == 1:
            return f"1/{den}"
        return f"1/{round(den / num)}"
    seconds = _to_float(value)
    if not seconds:
        return None
    if seconds >= 1:
        return f"{seconds:g}"
    return f"1/{round(1 / seconds)}"


def _join_keywords(keywords: list[str]) -> str | None:
    """Collapse a keyword list to one delimited string, keeping first occurrences."""
    seen: list[str] = []
    for keyword in keywords:
        keyword = keyword.strip()
        if keyword and keyword not in seen:
            seen.append(keyword)
    return KEYWORD_DELIMITER.join(seen) if seen else None


def convert_gps_coordinate(value: Any, ref: bytes | str | None = None) -> float | None:
    """
    Convert a GPS coordinate to signed decimal degrees.

    Args:
        value: Decimal degrees, or a (degrees, minutes, seconds) triple whose
               items are numbers or (numerator, denominator) rationals.
        ref: Hemisphere reference (N, S, E, W). S and W yield negative values.

    Returns:
        Decimal degrees rounded to 7 places, or None if unparseable.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (list, tuple)) and not _is_rational(value):
        if len(value) != 3:
            return None
        parts = [_to_float(v) for v in value]
        if any(p is None for p in parts):
            return None
        degrees, minutes, seconds = parts
        decimal = degrees + minutes / 60 + seconds / 3600
    else:
        decimal = _to_float(value)
        if decimal is None:
            return None

    hemisphere = (_decode(ref) or "").upper()
    if hemisphere in ("S", "W"):
        decimal = -abs(decimal)

    return round(decimal, 7)


def _snapshot_value(value: Any) -> Any:
    """Convert a raw tag value to something JSON can hold, truncating strings."""
    if isinstance(value, bytes):
        value = _decode(value) or ""
    if isinstance(value, str):
        return value[:MAX_FIELD_LENGTH]
    if _is_rational(value):
        return f"{value[0]}/{value[1]}"
    if isinstance(value, (list, tuple)):
        return [_snapshot_value(v) for v in value]
    if isinstance(value, (int, float)) or value is None:
        return value
    return str(value)[:MAX_FIELD_LENGTH]


def build_raw_snapshot(tags: dict[str, Any]) -> str | None:
    """
    Serialize raw tags to a bounded JSON string.

    Args:
        tags: Tag name to raw value.

    Returns:
        JSON text, an error marker if the snapshot exceeds MAX_SNAPSHOT_BYTES,
        or None when there are no tags.
    """
    if not tags:
        return None

    snapshot = {name: _snapshot_value(value) for name, value in tags.items()}
    text = json.dumps(snapshot, ensure_ascii=False)
    size = len(text.encode("utf-8"))

    if size > MAX_SNAPSHOT_BYTES:
        logger.debug(f"Raw EXIF snapshot too large ({size} bytes), storing marker")
        return json.dumps({
            "error": f"EXIF snapshot exceeded {MAX_SNAPSHOT_BYTES} bytes",
            "size": size,
        })

    return text


# ────────────────────────────────────────────────────────────────────────────────
# XMP helpers
# ────────────────────────────────────────────────────────────────────────────────

XMP_FIELDS = ("title", "description", "creator", "rights", "subject", "City", "State", "Country")


def _xmp_texts(value: Any) -> list[str]:
    """
    Flatten one property from Pillow's getxmp() tree into strings.

    Pillow drops namespace prefixes and returns attributes and child
    elements as dict keys, so a dc:title arrives as
    {"Alt": {"li": {"lang": "x-default", "text": "..."}}} and a
    dc:subject bag as {"Bag": {"li": [...]}}.
    """
    if value is None:
        return []
    if isinstance(value, str):
        value = value.strip()
        return [value] if value else []
    if isinstance(value, list):
        return [text for item in value for text in _xmp_texts(item)]
    if isinstance(value, dict):
        if "text" in value:
            return _xmp_texts(value["text"])
        for container in ("Alt", "Seq", "Bag", "li"):
            if container in value:
                return _xmp_texts(value[container])
    return []


def _xmp_descriptions(xmp: dict[str, Any]) -> list[dict[str, Any]]:
    """Return the rdf:Description nodes of a getxmp() tree."""
    root = xmp.get("xmpmeta", xmp)
    rdf = root.get("RDF") if isinstance(root, dict) else None
    if not isinstance(rdf, dict):
        return []
    descriptions = rdf.get("Description", [])
    if isinstance(descriptions, dict):
        descriptions = [descriptions]
    return [d for d in descriptions if isinstance(d, dict)]


class MetadataExtractor:
    """
    Extracts EXIF, IPTC and XMP metadata from image bytes.

    Extraction is best-effort: each section that fails is logged and
    skipped, and a file yielding nothing produces None.
    """

    def __init__(
        self,
        reverse_geocode: bool = True,
        max_bytes: int = MAX_METADATA_BYTES
    ):
        """
        Initialize the extractor.

        Args:
            reverse_geocode: Fill city/state/country from GPS when the file
                             has no location fields.
            max_bytes: Inputs larger than this are not parsed.
        """
        self.reverse_geocode = reverse_geocode
        self.max_bytes = max_bytes

    def extract(self, data: bytes) -> ExtractedMetadata | None:
        """
        Extract metadata from image bytes.

        Args:
            data: Full contents of a JPEG, PNG, TIFF or TIFF-based RAW file.

        Returns:
            ExtractedMetadata, or None if the input is too large or
            carries no metadata.
        """
        if len(data) > self.max_bytes:
            logger.debug(
                f"Skipping metadata extraction: {len(data)} bytes exceeds {self.max_bytes}"
            )
            return None

        metadata = ExtractedMetadata()
        raw_tags: dict[str, Any] = {}

        img = self._open(data)
        try:
            self._extract_exif(img, data, metadata, raw_tags)
            if img is not None:
                self._extract_iptc(img, metadata)
                self._extract_xmp(img, metadata)
        finally:
            if img is not None:
                img.close()

        if (
            self.reverse_geocode and
            metadata.latitude is not None and
            metadata.longitude is not None and
            not metadata.has_location
        ):
            self._reverse_geocode(metadata)

        metadata.raw_exif = build_raw_snapshot(raw_tags)

        if metadata.is_empty():
            return None
        return metadata

    def _open(self, data: bytes) -> Image.Image | None:
        """Open the bytes with Pillow without decoding pixels."""
        try:
            return Image.open(io.BytesIO(data))
        except Exception as e:
            # Most RAW containers; EXIF may still be readable by piexif
            logger.debug(f"Pillow could not open image for metadata: {e}")
            return None

    # ────────────────────────────────────────────────────────────────────────
    # EXIF
    # ────────────────────────────────────────────────────────────────────────

    def _extract_exif(
        self,
        img: Image.Image | None,
        data: bytes,
        metadata: ExtractedMetadata,
        raw_tags: dict[str, Any]
    ) -> None:
        """Extract EXIF IFDs with piexif."""
        source = img.info.get("exif") if img is not None else None
        source = source or data
        if not source.startswith(EXIF_CONTAINER_HEADERS):
            # piexif treats anything else as a filename
            return

        try:
            exif_dict = piexif.load(source)
        except Exception as e:
            logger.debug(f"No readable EXIF: {e}")
            return

        for ifd_name in ("0th", "Exif", "GPS"):
            for tag, value in (exif_dict.get(ifd_name) or {}).items():
                name = piexif.TAGS.get(ifd_name, {}).get(tag, {}).get("name")
                if name in RAW_TAG_ALLOWLIST:
                    raw_tags[name] = value

        try:
            self._apply_image_ifd(exif_dict.get("0th") or {}, metadata)
            self._apply_exif_ifd(exif_dict.get("Exif") or {}, metadata)
            self._apply_gps_ifd(exif_dict.get("GPS") or {}, metadata)
        except Exception as e:
            logger.debug(f"Error interpreting EXIF: {e}")

    def _apply_image_ifd(self, ifd: dict, metadata: ExtractedMetadata) -> None:
        metadata.make = _decode(ifd.get(piexif.ImageIFD.Make))
        metadata.model = _decode(ifd.get(piexif.ImageIFD.Model))
        metadata.software = _decode(ifd.get(piexif.ImageIFD.Software))

        orientation = ifd.get(piexif.ImageIFD.Orientation)
        if isinstance(orientation, int):
            metadata.orientation = orientation

        metadata.x_resolution = _to_float(ifd.get(piexif.ImageIFD.XResolution))
        metadata.y_resolution = _to_float(ifd.get(piexif.ImageIFD.YResolution))
        unit = ifd.get(piexif.ImageIFD.ResolutionUnit)
        if unit is not None:
            metadata.resolution_unit = RESOLUTION_UNITS.get(unit, str(unit))

        # Descriptive fallbacks; IPTC/XMP override these later
        metadata.description = _decode(ifd.get(piexif.ImageIFD.ImageDescription))
        metadata.creator = _decode(ifd.get(piexif.ImageIFD.Artist))
        metadata.copyright = _decode(ifd.get(piexif.ImageIFD.Copyright))

    def _apply_exif_ifd(self, ifd: dict, metadata: ExtractedMetadata) -> None:
        iso = ifd.get(piexif.ExifIFD.ISOSpeedRatings)
        if isinstance(iso, tuple):
            iso = iso[0] if iso else None
        if isinstance(iso, int):
            metadata.iso = iso

        metadata.f_number = _to_float(ifd.get(piexif.ExifIFD.FNumber))
        metadata.exposure_time = _format_exposure_time(ifd.get(piexif.ExifIFD.ExposureTime))
        metadata.focal_length = _to_float(ifd.get(piexif.ExifIFD.FocalLength))

        flash = ifd.get(piexif.ExifIFD.Flash)
        if isinstance(flash, int):
            metadata.flash = "Flash fired" if flash & 1 else "Flash did not fire"

        white_balance = ifd.get(piexif.ExifIFD.WhiteBalance)
        if white_balance is not None:
            metadata.white_balance = WHITE_BALANCE.get(white_balance, str(white_balance))

        color_space = ifd.get(piexif.ExifIFD.ColorSpace)
        if color_space is not None:
            metadata.color_space = COLOR_SPACES.get(color_space, str(color_space))

        metadata.date_time_original = _parse_exif_date(
            ifd.get(piexif.ExifIFD.DateTimeOriginal)
        )
        metadata.date_time_digitized = _parse_exif_date(
            ifd.get(piexif.ExifIFD.DateTimeDigitized)
        )

    def _apply_gps_ifd(self, ifd: dict, metadata: ExtractedMetadata) -> None:
        if not ifd:
            return

        metadata.latitude = convert_gps_coordinate(
            ifd.get(piexif.GPSIFD.GPSLatitude),
            ifd.get(piexif.GPSIFD.GPSLatitudeRef, b"N")
        )
        metadata.longitude = convert_gps_coordinate(
            ifd.get(piexif.GPSIFD.GPSLongitude),
            ifd.get(piexif.GPSIFD.GPSLongitudeRef, b"E")
        )

        altitude = _to_float(ifd.get(piexif.GPSIFD.GPSAltitude))
        if altitude is not None:
            # AltitudeRef 1 means below sea level
            ref = ifd.get(piexif.GPSIFD.GPSAltitudeRef)
            if isinstance(ref, (tuple, bytes)):
                ref = ref[0] if ref else 0
            if ref == 1:
                altitude = -altitude
            metadata.altitude = round(altitude, 2)

    # ────────────────────────────────────────────────────────────────────────
    # IPTC / XMP
    # ────────────────────────────────────────────────────────────────────────

    def _extract_iptc(self, img: Image.Image, metadata: ExtractedMetadata) -> None:
        """Extract IPTC IIM fields (JPEG APP13 / TIFF)."""
        try:
            iptc = IptcImagePlugin.getiptcinfo(img)
        except Exception as e:
            logger.debug(f"Could not read IPTC: {e}")
            return
        if not iptc:
            return

        def first(key: tuple[int, int]) -> str | None:
            value = iptc.get(key)
            if isinstance(value, list):
                value = value[0] if value else None
            return _decode(value)

        metadata.title = first(IPTC_TITLE) or metadata.title
        metadata.description = first(IPTC_CAPTION) or metadata.description
        metadata.creator = first(IPTC_BYLINE) or metadata.creator
        metadata.copyright = first(IPTC_COPYRIGHT) or metadata.copyright
        metadata.city = first(IPTC_CITY) or metadata.city
        metadata.state = first(IPTC_STATE) or metadata.state
        metadata.country = first(IPTC_COUNTRY) or metadata.country

        keywords = iptc.get(IPTC_KEYWORDS)
        if keywords is not None:
            if not isinstance(keywords, list):
                keywords = [keywords]
            metadata.keywords = _join_keywords(
                [k for k in (_decode(v) for v in keywords) if k]
            ) or metadata.keywords

    def _extract_xmp(self, img: Image.Image, metadata: ExtractedMetadata) -> None:
        """Extract Dublin Core and Photoshop fields with Pillow's XMP reader."""
        if not hasattr(img, "getxmp"):
            return

        try:
            xmp = img.getxmp()
        except Exception as e:
            logger.debug(f"Could not parse XMP: {e}")
            return

        found: dict[str, list[str]] = {}
        for description in _xmp_descriptions(xmp):
            for name in XMP_FIELDS:
                if name in found or name not in description:
                    continue
                texts = _xmp_texts(description[name])
                if texts:
                    found[name] = texts

        if not found:
            return

        def first(name: str) -> str | None:
            texts = found.get(name)
            return texts[0] if texts else None

        # IPTC values, when present, win over XMP
        metadata.title = metadata.title or first("title")
        metadata.description = metadata.description or first("description")
        metadata.creator = metadata.creator or first("creator")
        metadata.copyright = metadata.copyright or first("rights")
        if "subject" in found and not metadata.keywords:
            metadata.keywords = _join_keywords(found["subject"])

        metadata.city = metadata.city or first("City")
        metadata.state = metadata.state or first("State")
        metadata.country = metadata.country or first("Country")

    # ────────────────────────────────────────────────────────────────────────
    # Location
    # ────────────────────────────────────────────────────────────────────────

    def _reverse_geocode(self, metadata: ExtractedMetadata) -> None:
        """
        Reverse geocode GPS coordinates to city, region and country.

        Uses offline reverse geocoder database for fast lookups.
        """
        try:
            results = rg.search((metadata.latitude, metadata.longitude), mode=1)
            if not results:
                return

            result = results[0]

            country_code = result.get("cc", "")
            if country_code:
                country_obj = pycountry.countries.get(alpha_2=country_code)
                metadata.country = country_obj.name if country_obj else country_code

            metadata.city = result.get("name") or None
            metadata.state = result.get("admin1") or None

            logger.debug(
                f"Geocoded ({metadata.latitude}, {metadata.longitude}) -> "
                f"{metadata.city}, {metadata.state}, {metadata.country}"
            )

        except Exception as e:
            logger.debug(f"Reverse geocoding failed: {e}")
