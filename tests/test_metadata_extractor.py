"""Tests for metadata_extractor.py."""

import io
import json
import struct
from datetime import datetime

import piexif
import pytest
from PIL import Image as PILImage

from pipeline.metadata_extractor import (
    MAX_FIELD_LENGTH,
    MAX_SNAPSHOT_BYTES,
    ExtractedMetadata,
    MetadataExtractor,
    build_raw_snapshot,
    convert_gps_coordinate,
)


def _jpeg_bytes(exif: dict | None = None, size=(64, 48)) -> bytes:
    buffer = io.BytesIO()
    kwargs = {"exif": piexif.dump(exif)} if exif else {}
    PILImage.new("RGB", size, "white").save(buffer, format="JPEG", **kwargs)
    return buffer.getvalue()


CAMERA_EXIF = {
    "0th": {
        piexif.ImageIFD.Make: b"Canon",
        piexif.ImageIFD.Model: b"EOS R5",
        piexif.ImageIFD.Software: b"Firmware 1.8",
        piexif.ImageIFD.Orientation: 1,
        piexif.ImageIFD.XResolution: (300, 1),
        piexif.ImageIFD.YResolution: (300, 1),
        piexif.ImageIFD.ResolutionUnit: 2,
        piexif.ImageIFD.Artist: b"Jane Doe",
    },
    "Exif": {
        piexif.ExifIFD.ISOSpeedRatings: 200,
        piexif.ExifIFD.FNumber: (28, 10),
        piexif.ExifIFD.ExposureTime: (1, 250),
        piexif.ExifIFD.FocalLength: (50, 1),
        piexif.ExifIFD.Flash: 1,
        piexif.ExifIFD.WhiteBalance: 0,
        piexif.ExifIFD.ColorSpace: 1,
        piexif.ExifIFD.DateTimeOriginal: b"2023:07:14 18:30:00",
    },
    "GPS": {
        piexif.GPSIFD.GPSLatitudeRef: b"N",
        piexif.GPSIFD.GPSLatitude: ((48, 1), (51, 1), (2436, 100)),
        piexif.GPSIFD.GPSLongitudeRef: b"E",
        piexif.GPSIFD.GPSLongitude: ((2, 1), (17, 1), (4020, 100)),
        piexif.GPSIFD.GPSAltitudeRef: 0,
        piexif.GPSIFD.GPSAltitude: (35, 1),
    },
}

XMP_PACKET = b"""<x:xmpmeta xmlns:x="adobe:ns:meta/">
 <rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">
  <rdf:Description rdf:about=""
    xmlns:dc="http://purl.org/dc/elements/1.1/"
    xmlns:photoshop="http://ns.adobe.com/photoshop/1.0/"
    photoshop:City="Lisbon" photoshop:Country="Portugal">
   <dc:title><rdf:Alt><rdf:li xml:lang="x-default">Tram 28</rdf:li></rdf:Alt></dc:title>
   <dc:description><rdf:Alt><rdf:li xml:lang="x-default">Yellow tram &amp; hill</rdf:li></rdf:Alt></dc:description>
   <dc:creator><rdf:Seq><rdf:li>Ana Silva</rdf:li></rdf:Seq></dc:creator>
   <dc:subject><rdf:Bag><rdf:li>tram</rdf:li><rdf:li>city</rdf:li><rdf:li>tram</rdf:li></rdf:Bag></dc:subject>
  </rdf:Description>
 </rdf:RDF>
</x:xmpmeta>"""

XMP_HEADER = b"http://ns.adobe.com/xap/1.0/\x00"


def _with_xmp(jpeg: bytes, packet: bytes = XMP_PACKET) -> bytes:
    """Insert an APP1 XMP segment right after the JPEG SOI marker."""
    payload = XMP_HEADER + packet
    segment = b"\xff\xe1" + struct.pack(">H", len(payload) + 2) + payload
    return jpeg[:2] + segment + jpeg[2:]


class TestConvertGpsCoordinate:
    """Tests for convert_gps_coordinate."""

    def test_dms_rationals(self):
        """A DMS triple of rationals converts to decimal degrees."""
        value = ((40, 1), (26, 1), (4614, 100))
        assert convert_gps_coordinate(value, "N") == pytest.approx(40.44615, abs=1e-7)

    def test_southern_dms_integers(self):
        """Plain integer DMS south of the equator."""
        assert convert_gps_coordinate((40, 26, 46), "S") == pytest.approx(-40.446111, abs=1e-6)

    @pytest.mark.parametrize("ref", ["S", "W", b"S", b"W", "s"])
    def test_southern_and_western_refs_are_negative(self, ref):
        """S and W references, as str or bytes, give negative values."""
        assert convert_gps_coordinate((10, 30, 0), ref) == -10.5

    def test_decimal_input(self):
        """Decimal degrees pass through and are rounded to 7 places."""
        assert convert_gps_coordinate(12.123456789, "E") == 12.1234568

    def test_precomputed_negative_stays_negative(self):
        """A negative decimal with an S reference is not flipped back."""
        assert convert_gps_coordinate(-33.9, "S") == -33.9

    @pytest.mark.parametrize("value", [None, (1, 2, 3, 4), ((1, 0), (0, 1), (0, 1)), "north"])
    def test_unparseable(self, value):
        """Malformed values yield None rather than raising."""
        assert convert_gps_coordinate(value, "N") is None


class TestRawSnapshot:
    """Tests for build_raw_snapshot."""

    def test_empty(self):
        """No tags, no snapshot."""
        assert build_raw_snapshot({}) is None

    def test_values_are_json_safe(self):
        """Bytes decode, rationals render as fractions."""
        snapshot = json.loads(build_raw_snapshot({
            "Make": b"Nikon\x00",
            "ExposureTime": (1, 125),
            "GPSLatitude": ((1, 1), (2, 1), (3, 1)),
        }))

        assert snapshot == {
            "Make": "Nikon",
            "ExposureTime": "1/125",
            "GPSLatitude": ["1/1", "2/1", "3/1"],
        }

    def test_long_strings_are_truncated(self):
        """Individual string fields are capped."""
        snapshot = json.loads(build_raw_snapshot({"ImageDescription": "x" * 5000}))
        assert len(snapshot["ImageDescription"]) == MAX_FIELD_LENGTH

    def test_oversized_snapshot_becomes_marker(self):
        """A snapshot over the size cap is replaced by an error marker."""
        tags = {f"Field{i}": "y" * 400 for i in range(40)}

        snapshot = json.loads(build_raw_snapshot(tags))

        assert set(snapshot) == {"error", "size"}
        assert snapshot["size"] > MAX_SNAPSHOT_BYTES


class TestMetadataExtractor:
    """Tests for MetadataExtractor.extract."""

    def test_camera_exif_and_gps(self):
        """Camera, exposure, technical and GPS fields are normalised."""
        metadata = MetadataExtractor(reverse_geocode=False).extract(_jpeg_bytes(CAMERA_EXIF))

        assert metadata.make == "Canon"
        assert metadata.model == "EOS R5"
        assert metadata.software == "Firmware 1.8"
        assert metadata.iso == 200
        assert metadata.f_number == pytest.approx(2.8)
        assert metadata.exposure_time == "1/250"
        assert metadata.focal_length == 50.0
        assert metadata.flash == "Flash fired"
        assert metadata.white_balance == "Auto"
        assert metadata.color_space == "sRGB"
        assert metadata.resolution_unit == "inches"
        assert metadata.x_resolution == 300.0
        assert metadata.orientation == 1
        assert metadata.creator == "Jane Doe"
        assert metadata.date_time_original == datetime(2023, 7, 14, 18, 30, 0)
        assert metadata.latitude == pytest.approx(48.8567667, abs=1e-7)
        assert metadata.longitude == pytest.approx(2.2945, abs=1e-7)
        assert metadata.altitude == 35.0
        assert metadata.city is None

    def test_raw_snapshot_is_attached(self):
        """The allow-listed raw tags are stored as JSON."""
        metadata = MetadataExtractor(reverse_geocode=False).extract(_jpeg_bytes(CAMERA_EXIF))

        snapshot = json.loads(metadata.raw_exif)
        assert snapshot["Make"] == "Canon"
        assert snapshot["FNumber"] == "28/10"

    def test_no_metadata_returns_none(self):
        """A file with nothing to extract yields None."""
        assert MetadataExtractor().extract(_jpeg_bytes()) is None

    def test_garbage_returns_none(self):
        """Unreadable bytes yield None rather than raising."""
        assert MetadataExtractor().extract(b"definitely not an image") is None

    def test_size_limit(self):
        """Inputs over the byte limit are skipped."""
        extractor = MetadataExtractor(reverse_geocode=False, max_bytes=16)
        assert extractor.extract(_jpeg_bytes(CAMERA_EXIF)) is None

    def test_reverse_geocoding_fills_location(self, monkeypatch):
        """GPS without location fields is resolved offline."""
        monkeypatch.setattr(
            "pipeline.metadata_extractor.rg.search",
            lambda coords, mode=1: [{"name": "Paris", "admin1": "Ile-de-France", "cc": "FR"}],
        )

        metadata = MetadataExtractor().extract(_jpeg_bytes(CAMERA_EXIF))

        assert metadata.city == "Paris"
        assert metadata.state == "Ile-de-France"
        assert metadata.country == "France"

    def test_reverse_geocoding_failure_is_ignored(self, monkeypatch):
        """A geocoder error leaves location empty."""
        def boom(coords, mode=1):
            raise RuntimeError("geocoder offline")

        monkeypatch.setattr("pipeline.metadata_extractor.rg.search", boom)

        metadata = MetadataExtractor().extract(_jpeg_bytes(CAMERA_EXIF))

        assert metadata.make == "Canon"
        assert metadata.city is None


class TestDescriptiveFields:
    """Tests for IPTC and XMP parsing."""

    def test_xmp_fields(self):
        """Dublin Core and Photoshop fields are read from the JPEG's XMP segment."""
        metadata = MetadataExtractor(reverse_geocode=False).extract(_with_xmp(_jpeg_bytes()))

        assert metadata.title == "Tram 28"
        assert metadata.description == "Yellow tram & hill"
        assert metadata.creator == "Ana Silva"
        assert metadata.keywords == "tram, city"
        assert metadata.city == "Lisbon"
        assert metadata.country == "Portugal"

    def test_iptc_takes_precedence_over_xmp(self, monkeypatch):
        """IPTC values win; XMP only fills the gaps."""
        monkeypatch.setattr(
            "pipeline.metadata_extractor.IptcImagePlugin.getiptcinfo",
            lambda img: {
                (2, 5): b"Harbour at dawn",
                (2, 25): [b"boat", b"sea", b"boat"],
                (2, 90): b"Porto",
            },
        )
        metadata = MetadataExtractor(reverse_geocode=False).extract(_with_xmp(_jpeg_bytes()))

        assert metadata.title == "Harbour at dawn"
        assert metadata.keywords == "boat, sea"
        assert metadata.city == "Porto"
        assert metadata.creator == "Ana Silva"
        assert metadata.country == "Portugal"

    def test_malformed_xmp_is_ignored(self):
        """A broken packet is skipped; EXIF fields still come through."""
        data = _with_xmp(_jpeg_bytes(CAMERA_EXIF), b"<x:xmpmeta><rdf:RDF>")

        metadata = MetadataExtractor(reverse_geocode=False).extract(data)

        assert metadata.make == "Canon"
        assert metadata.title is None

    def test_xmp_without_descriptive_fields(self):
        packet = (
            b'<x:xmpmeta xmlns:x="adobe:ns:meta/">'
            b'<rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">'
            b'<rdf:Description rdf:about=""/>'
            b"</rdf:RDF></x:xmpmeta>"
        )
        assert MetadataExtractor().extract(_with_xmp(_jpeg_bytes(), packet)) is None

    def test_to_dict_matches_columns(self):
        """to_dict exposes every field for the metadata table."""
        fields = ExtractedMetadata(make="Sony").to_dict()
        assert fields["make"] == "Sony"
        assert "raw_exif" in fields
        assert ExtractedMetadata().is_empty()
