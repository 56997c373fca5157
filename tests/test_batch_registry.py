"""Tests for batch_registry.py options, counters and registry."""

import threading

import pytest

from pipeline.batch_registry import (
    BatchJob,
    BatchOptions,
    BatchPhase,
    BatchRegistry,
    BatchStatus,
    ErrorType,
    format_duration,
    format_time_remaining,
)


def _job(folder="/photos", **options):
    return BatchJob(folder, BatchOptions(**options))


class TestBatchOptions:
    """Tests for option defaults and validation."""

    def test_defaults(self, monkeypatch):
        """Sizes come from the environment; the rest are fixed defaults."""
        monkeypatch.setenv("THUMBNAIL_SIZE", "400")
        monkeypatch.delenv("AI_IMAGE_SIZE", raising=False)

        options = BatchOptions()

        assert options.thumbnail_size == 400
        assert options.analysis_image_size == 1024
        assert options.quality == 85
        assert options.skip_duplicates is True
        assert options.use_fallback is False
        assert options.parallel_connections == 1

    def test_from_dict_accepts_camel_case(self):
        """Web payload keys map onto option fields; unknown keys are ignored."""
        options = BatchOptions.from_dict({
            "thumbnailSize": 200,
            "aiImageSize": 2048,
            "quality": "90",
            "skipDuplicates": False,
            "useFallback": "true",
            "parallelConnections": 4,
            "somethingElse": 1,
            "thumbnail_size": None,
        })

        assert options.thumbnail_size == 200
        assert options.analysis_image_size == 2048
        assert options.quality == 90
        assert options.skip_duplicates is False
        assert options.use_fallback is True
        assert options.parallel_connections == 4

    def test_from_dict_none(self):
        """No payload means defaults."""
        assert BatchOptions.from_dict(None).quality == 85

    def test_from_dict_rejects_non_mapping(self):
        with pytest.raises(ValueError, match="must be an object"):
            BatchOptions.from_dict(["quality", 90])

    @pytest.mark.parametrize("kwargs, message", [
        ({"thumbnail_size": 99}, "thumbnail_size must be between 100 and 800"),
        ({"thumbnail_size": 801}, "thumbnail_size"),
        ({"analysis_image_size": 4096}, "analysis_image_size"),
        ({"quality": 49}, "quality"),
        ({"quality": 101}, "quality"),
        ({"parallel_connections": 0}, "parallel_connections"),
        ({"parallel_connections": 17}, "parallel_connections"),
        ({"quality": "high"}, "quality must be an integer"),
        ({"quality": True}, "quality must be an integer"),
        ({"skip_duplicates": "maybe"}, "skip_duplicates must be a boolean"),
        ({"custom_prompt": 42}, "custom_prompt must be a string"),
        ({"custom_prompt": "x" * 4001}, "custom_prompt must be at most"),
    ])
    def test_invalid_values(self, kwargs, message):
        """Out-of-range or mistyped values are rejected with the field name."""
        with pytest.raises(ValueError, match=message):
            BatchOptions(**kwargs)

    def test_custom_prompt(self):
        """The prompt is trimmed; a blank prompt means the default one."""
        assert BatchOptions().custom_prompt is None
        assert BatchOptions.from_dict({"customPrompt": "  List the birds.\n"}).custom_prompt == (
            "List the birds."
        )
        assert BatchOptions(custom_prompt="   ").custom_prompt is None

    def test_bounds_are_inclusive(self):
        options = BatchOptions(
            thumbnail_size=800, analysis_image_size=512, quality=50, parallel_connections=16
        )
        assert options.to_dict()["parallel_connections"] == 16


class TestBatchJob:
    """Tests for counter updates and terminal states."""

    def test_initial_snapshot(self):
        """A new job is processing, in discovery, with zero counters."""
        snapshot = _job().snapshot()

        assert snapshot["status"] == "processing"
        assert snapshot["current_phase"] == "discovery"
        assert snapshot["total_files"] == 0
        assert snapshot["end_time"] is None
        assert snapshot["options"]["quality"] == 85

    def test_counters_add_up(self):
        """Every record_* call advances processed_files by exactly one."""
        job = _job()
        job.begin_upload(4)

        job.record_success({"id": 1})
        job.record_duplicate("/photos/b.jpg", "Duplicate file: b.jpg")
        job.record_error("/photos/c.jpg", "cannot identify image file")
        job.record_error("/photos/d.xyz", "unsupported", ErrorType.UNSUPPORTED)

        snapshot = job.snapshot()
        assert snapshot["processed_files"] == 4
        assert snapshot["successful_files"] == 1
        assert snapshot["duplicate_files"] == 1
        assert snapshot["error_files"] == 2
        assert [e["type"] for e in snapshot["errors"]] == ["duplicate", "processing", "unsupported"]
        assert snapshot["processed_images"] == [{"id": 1}]
        assert snapshot["current_phase"] == "uploading"

    def test_counters_under_contention(self):
        """Concurrent updates never break the counter invariant."""
        job = _job()
        job.begin_upload(300)

        def work(i):
            if i % 3 == 0:
                job.record_success({"id": i})
            elif i % 3 == 1:
                job.record_duplicate(f"f{i}", "dup")
            else:
                job.record_error(f"f{i}", "bad")

        threads = [threading.Thread(target=work, args=(i,)) for i in range(300)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshot = job.snapshot()
        assert snapshot["processed_files"] == 300
        assert (
            snapshot["successful_files"] + snapshot["duplicate_files"] + snapshot["error_files"]
            == 300
        )

    def test_finish(self):
        job = _job()
        job.set_phase(BatchPhase.FINALIZING)
        job.finish()

        snapshot = job.snapshot()
        assert snapshot["status"] == "completed"
        assert snapshot["end_time"] is not None
        assert snapshot["estimated_time_remaining"] is None
        assert job.is_terminal

    def test_fail_records_folder_entry(self):
        """fail() adds a batch-level error naming the folder."""
        job = _job("/photos/trip")
        job.fail("Upload directory is not writable: /uploads")

        snapshot = job.snapshot()
        assert snapshot["status"] == "error"
        assert snapshot["errors"] == [{
            "file": "/photos/trip",
            "error": "Upload directory is not writable: /uploads",
            "type": "processing",
        }]

    def test_terminal_state_is_final(self):
        """Once terminal, neither finish() nor fail() changes the outcome."""
        job = _job()
        job.finish()
        job.fail("late failure")

        assert job.status == BatchStatus.COMPLETED
        assert job.snapshot()["errors"] == []

    def test_snapshot_is_a_copy(self):
        """Mutating a snapshot does not affect the job."""
        job = _job()
        job.record_success({"id": 1})

        snapshot = job.snapshot()
        snapshot["processed_images"][0]["id"] = 99
        snapshot["errors"].append("x")

        assert job.snapshot()["processed_images"] == [{"id": 1}]
        assert job.snapshot()["errors"] == []


    def test_pause_and_resume(self):
        """Only a processing batch pauses and only a paused batch resumes."""
        job = _job()

        assert job.resume() is False
        assert job.pause() is True
        assert job.status == BatchStatus.PAUSED
        assert not job.is_terminal
        assert job.pause() is False

        assert job.resume() is True
        assert job.status == BatchStatus.PROCESSING

        job.finish()
        assert job.pause() is False
        assert job.resume() is False

    def test_paused_worker_waits_for_resume(self):
        job = _job()
        job.pause()
        passed = threading.Event()

        def worker():
            job.wait_while_paused()
            passed.set()

        thread = threading.Thread(target=worker)
        thread.start()

        assert not passed.wait(0.2)
        job.resume()
        assert passed.wait(5)
        thread.join()

    def test_cancel_releases_paused_worker(self):
        """Deleting a paused batch must not leave its worker blocked."""
        job = _job()
        job.pause()
        job.cancel()

        job.wait_while_paused()

        assert job.cancelled
        job.finish()
        assert job.status == BatchStatus.COMPLETED

    def test_duration_in_snapshot(self):
        job = _job()
        job.finish()
        assert job.snapshot()["duration_seconds"] >= 0


class TestFormatDuration:
    """Tests for format_duration."""

    @pytest.mark.parametrize("seconds, expected", [
        (0, "0s"),
        (45.4, "45s"),
        (60, "1m 0s"),
        (192, "3m 12s"),
        (3599, "59m 59s"),
        (3725, "1h 2m"),
        (-1, "0s"),
    ])
    def test_format(self, seconds, expected):
        assert format_duration(seconds) == expected


class TestFormatTimeRemaining:
    """Tests for format_time_remaining."""

    @pytest.mark.parametrize("minutes, expected", [
        (0, "0m"),
        (4.4, "4m"),
        (59, "59m"),
        (60, "1h 0m"),
        (125, "2h 5m"),
        (-3, "0m"),
    ])
    def test_format(self, minutes, expected):
        assert format_time_remaining(minutes) == expected


class TestBatchRegistry:
    """Tests for the in-memory registry."""

    def test_create_and_get(self):
        registry = BatchRegistry()
        job = registry.create("/photos", BatchOptions())

        assert registry.get(job.id) is job
        assert registry.get("unknown") is None
        assert len(registry) == 1

    def test_list_oldest_first(self):
        registry = BatchRegistry()
        first = registry.create("/a", BatchOptions())
        second = registry.create("/b", BatchOptions())

        assert [j.id for j in registry.list_jobs()] == [first.id, second.id]

    def test_delete_cancels(self):
        """Deleting a running batch removes it and signals cancellation."""
        registry = BatchRegistry()
        job = registry.create("/photos", BatchOptions())

        assert registry.delete(job.id) is job
        assert job.cancelled
        assert registry.get(job.id) is None
        assert registry.delete(job.id) is None

    def test_clear_terminal(self):
        """Only completed and failed batches are cleared."""
        registry = BatchRegistry()
        done = registry.create("/a", BatchOptions())
        failed = registry.create("/b", BatchOptions())
        running = registry.create("/c", BatchOptions())
        paused = registry.create("/d", BatchOptions())
        paused.pause()
        done.finish()
        failed.fail("boom")

        assert registry.clear_terminal() == 2
        assert [j.id for j in registry.list_jobs()] == [running.id, paused.id]
        assert registry.clear_terminal() == 0
