"""Tests for db/operations.py against in-memory SQLite."""

from datetime import datetime

import pytest

from db.models import ImageStatus
from db.operations import MAX_ERROR_MESSAGE_LENGTH


def _insert(repository, name="a.jpg", size=1000, **kwargs):
    return repository.insert_image(
        filename=f"uuid_{name}",
        original_name=name,
        file_path=f"/uploads/uuid_{name}",
        file_size=size,
        mime_type="image/jpeg",
        **kwargs,
    )


class TestImageRecords:
    """Tests for inserting and reading image records."""

    def test_insert_and_get(self, memory_repository):
        """A new record gets an id, UPLOADED status and an upload time."""
        image = _insert(memory_repository, width=640, height=480, original_path="/photos/a.jpg")

        assert image.id is not None
        assert image.status == ImageStatus.UPLOADED
        assert image.uploaded_at is not None

        fetched = memory_repository.get_image(image.id)
        assert fetched.original_name == "a.jpg"
        assert fetched.original_path == "/photos/a.jpg"
        assert (fetched.width, fetched.height) == (640, 480)

    def test_to_dict_is_serialisable(self, memory_repository):
        """to_dict uses plain values."""
        data = _insert(memory_repository).to_dict()

        assert data["status"] == "uploaded"
        assert isinstance(data["uploaded_at"], str)
        assert data["processed_at"] is None

    def test_get_missing(self, memory_repository):
        """Unknown ids return None."""
        assert memory_repository.get_image(9999) is None

    def test_count(self, memory_repository):
        """count() filters by status."""
        first = _insert(memory_repository, "a.jpg")
        _insert(memory_repository, "b.jpg")
        memory_repository.mark_completed(first.id)

        assert memory_repository.count() == 2
        assert memory_repository.count(ImageStatus.COMPLETED) == 1


class TestFindDuplicate:
    """Tests for the (original_name, file_size) duplicate key."""

    def test_matches_name_and_size(self, memory_repository):
        """Only an exact name and size pair matches."""
        image = _insert(memory_repository, "a.jpg", 1000)

        assert memory_repository.find_duplicate("a.jpg", 1000).id == image.id
        assert memory_repository.find_duplicate("a.jpg", 1001) is None
        assert memory_repository.find_duplicate("b.jpg", 1000) is None

    def test_error_records_are_excluded(self, memory_repository):
        """A failed record does not block a retry."""
        image = _insert(memory_repository, "a.jpg", 1000)
        memory_repository.mark_failed(image.id, "AI analysis failed: boom")

        assert memory_repository.find_duplicate("a.jpg", 1000) is None

    @pytest.mark.parametrize("status", [ImageStatus.PROCESSING, ImageStatus.COMPLETED])
    def test_other_statuses_match(self, memory_repository, status):
        """Processing and completed records still count as duplicates."""
        image = _insert(memory_repository)
        memory_repository.update_image_status(image.id, status)

        assert memory_repository.find_duplicate("a.jpg", 1000) is not None


class TestStatusUpdates:
    """Tests for update_image_status."""

    def test_error_keeps_truncated_message(self, memory_repository):
        """ERROR stores the message, capped in length, and a processed time."""
        image = _insert(memory_repository)

        updated = memory_repository.mark_failed(image.id, "x" * 5000)

        assert updated.status == ImageStatus.ERROR
        assert len(updated.error_message) == MAX_ERROR_MESSAGE_LENGTH
        assert updated.processed_at is not None

    def test_processing_clears_message(self, memory_repository):
        """Non-error statuses clear any previous message."""
        image = _insert(memory_repository)
        memory_repository.mark_failed(image.id, "boom")

        updated = memory_repository.mark_processing(image.id)

        assert updated.error_message is None
        assert updated.status == ImageStatus.PROCESSING

    def test_completed_sets_processed_at(self, memory_repository):
        """COMPLETED records when processing finished."""
        image = _insert(memory_repository)

        assert memory_repository.mark_completed(image.id).processed_at is not None

    def test_missing_image(self, memory_repository):
        """Updating an unknown id returns None."""
        assert memory_repository.mark_completed(9999) is None


class TestAnalysisAndMetadata:
    """Tests for the 1:1 analysis and metadata rows."""

    def test_insert_analysis(self, memory_repository):
        """Keywords round-trip as a list."""
        image = _insert(memory_repository)

        memory_repository.insert_analysis(
            image.id, "A beach at sunset.", "Sunset", ["beach", "sunset"], 0.92
        )

        analysis = memory_repository.get_analysis(image.id)
        assert analysis.caption == "Sunset"
        assert analysis.keywords == ["beach", "sunset"]
        assert analysis.confidence == pytest.approx(0.92)
        assert analysis.to_dict()["image_id"] == image.id

    def test_insert_metadata_ignores_unknown_keys(self, memory_repository):
        """Only table columns are written; extracted_at defaults to now."""
        image = _insert(memory_repository)

        memory_repository.insert_metadata(image.id, {
            "make": "Canon",
            "latitude": 48.8566,
            "date_time_original": datetime(2023, 7, 14, 18, 30),
            "not_a_column": "ignored",
            "id": 12345,
        })

        row = memory_repository.get_metadata(image.id)
        assert row.make == "Canon"
        assert row.latitude == pytest.approx(48.8566)
        assert row.date_time_original == datetime(2023, 7, 14, 18, 30)
        assert row.extracted_at is not None
        assert row.id != 12345
