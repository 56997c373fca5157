"""
Batch ingestion pipeline orchestrator.

Coordinates all pipeline stages for a folder of images:
1. File discovery
2. Duplicate checking
3. Copy into managed storage
4. Thumbnail / RAW preview generation and metadata extraction
5. Database storage
6. Background AI analysis

A batch runs on a background executor and returns an id immediately;
callers poll its progress. AI analysis runs on a separate bounded pool
and never affects the batch result, only the image record's status.
"""

import logging
import os
import shutil
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from pathlib import Path
from typing import Any

from db.models import Image
from db.operations import ImageRepository
from pipeline.ai_analyzer import VisionAnalyzer
from pipeline.batch_registry import (
    BatchJob,
    BatchOptions,
    BatchPhase,
    BatchRegistry,
    format_duration,
)
from pipeline.file_scanner import FileScanner
from pipeline.formats import get_mime_type
from pipeline.image_transformer import (
    ImageTransformer,
    TransformResult,
    delete_file,
    ensure_directory,
    generate_unique_filename,
    resize_for_analysis,
)
from pipeline.settings import PipelineSettings

logger = logging.getLogger(__name__)

ANALYSIS_MIME_TYPE = "image/jpeg"


class InvalidPathError(ValueError):
    """Raised when a batch is started on a missing, non-directory or unreadable path."""
    pass


class BatchFatalError(Exception):
    """Raised when a batch cannot continue, e.g. storage is not writable."""
    pass


class BatchProcessor:
    """
    Runs folder ingestion batches and background image analysis.

    The processor owns its batch registry and two thread pools: one for
    batch loops and one for AI analysis. Use shutdown() (or the context
    manager) to stop them.
    """

    def __init__(
        self,
        repository: ImageRepository | None = None,
        analyzer: VisionAnalyzer | None = None,
        transformer: ImageTransformer | None = None,
        scanner: FileScanner | None = None,
        settings: PipelineSettings | None = None,
        registry: BatchRegistry | None = None
    ):
        """
        Initialize the batch processor.

        Args:
            repository: Image record store (default: env-configured database).
            analyzer: Vision analyzer for background enrichment.
            transformer: Image transformer (default: writes to settings dirs).
            scanner: File scanner for discovery.
            settings: Storage locations and concurrency limits.
            registry: Batch registry (default: a new empty one).
        """
        self.settings = settings or PipelineSettings()
        self.repository = repository or ImageRepository()
        self.analyzer = analyzer or VisionAnalyzer()
        self.transformer = transformer or ImageTransformer(
            output_dir=self.settings.upload_dir,
            thumbnail_dir=self.settings.thumbnail_dir
        )
        self.scanner = scanner or FileScanner()
        self.registry = registry or BatchRegistry()

        self._batch_pool = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_batches,
            thread_name_prefix="batch"
        )
        self._enrichment_pool = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_analysis,
            thread_name_prefix="analysis"
        )

        self._enrichment_futures: set[Future] = set()
        self._futures_lock = threading.Lock()

        # Duplicate keys of files currently between check and insert
        self._inflight_keys: set[tuple[str, int]] = set()
        self._inflight_released = threading.Condition()

    def __enter__(self) -> "BatchProcessor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True)

    # ────────────────────────────────────────────────────────────────────────────
    # Control surface
    # ────────────────────────────────────────────────────────────────────────────

    def start(
        self,
        folder_path: str | Path,
        options: BatchOptions | dict[str, Any] | None = None
    ) -> str:
        """
        Start processing a folder in the background.

        Args:
            folder_path: Folder to ingest (scanned recursively).
            options: BatchOptions or a request mapping.

        Returns:
            Batch id for status polling.

        Raises:
            InvalidPathError: If the folder doesn't exist, isn't a directory,
                              or can't be read.
            ValueError: If options are invalid.
        """
        path = Path(folder_path)

        if not path.exists():
            raise InvalidPathError(f"Folder does not exist: {folder_path}")
        if not path.is_dir():
            raise InvalidPathError(f"Path is not a directory: {folder_path}")
        if not os.access(path, os.R_OK | os.X_OK):
            raise InvalidPathError(f"Folder is not readable: {folder_path}")

        if not isinstance(options, BatchOptions):
            options = BatchOptions.from_dict(options)

        job = self.registry.create(str(path.resolve()), options)
        job.future = self._batch_pool.submit(self._run_batch, job)

        logger.info(f"Started batch {job.id} for {job.folder_path}")
        return job.id

    def get_status(self, batch_id: str) -> dict[str, Any] | None:
        """Snapshot of a batch, or None if unknown."""
        job = self.registry.get(batch_id)
        return job.snapshot() if job else None

    def list_all(self) -> list[dict[str, Any]]:
        """Snapshots of all registered batches, oldest first."""
        return [job.snapshot() for job in self.registry.list_jobs()]

    def delete(self, batch_id: str) -> bool:
        """
        Remove a batch from the registry.

        A batch still running stops before its next file. Analysis
        already scheduled for its images still runs.

        Returns:
            False if the id is unknown.
        """
        job = self.registry.delete(batch_id)
        if job is None:
            return False
        if not job.is_terminal:
            logger.info(f"Batch {batch_id} deleted while running; cancelling")
        return True

    def pause(self, batch_id: str) -> bool:
        """
        Pause a processing batch at its next file boundary.

        Returns:
            False if the id is unknown or the batch is not processing.
        """
        job = self.registry.get(batch_id)
        if job is None or not job.pause():
            return False
        logger.info(f"Batch {batch_id} paused")
        return True

    def resume(self, batch_id: str) -> bool:
        """
        Resume a paused batch.

        Returns:
            False if the id is unknown or the batch is not paused.
        """
        job = self.registry.get(batch_id)
        if job is None or not job.resume():
            return False
        logger.info(f"Batch {batch_id} resumed")
        return True

    def clear_terminal(self) -> int:
        """Remove all completed and failed batches. Returns the count removed."""
        cleared = self.registry.clear_terminal()
        if cleared:
            logger.info(f"Cleared {cleared} finished batch(es)")
        return cleared

    def wait(self, batch_id: str, timeout: float | None = None) -> dict[str, Any] | None:
        """
        Block until a batch loop ends (or timeout), then return its snapshot.

        Returns:
            Snapshot, or None if the id is unknown.
        """
        job = self.registry.get(batch_id)
        if job is None:
            return None
        if job.future is not None:
            wait_futures([job.future], timeout=timeout)
        return job.snapshot()

    def wait_for_enrichment(self, timeout: float | None = None) -> bool:
        """
        Block until all scheduled analysis tasks have finished.

        Returns:
            True if everything finished, False on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            with self._futures_lock:
                pending = set(self._enrichment_futures)
            if not pending:
                return True

            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait_futures(pending, timeout=remaining)
            if not_done:
                return False

            # Done callbacks may lag behind wait(); drop what finished
            with self._futures_lock:
                self._enrichment_futures -= pending

    def run(
        self,
        folder_path: str | Path,
        options: BatchOptions | dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Start a batch and wait for its loop to finish."""
        batch_id = self.start(folder_path, options)
        return self.wait(batch_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and optionally wait for running tasks."""
        self._batch_pool.shutdown(wait=wait)
        self._enrichment_pool.shutdown(wait=wait)

    # ────────────────────────────────────────────────────────────────────────────
    # Batch loop
    # ────────────────────────────────────────────────────────────────────────────

    def _run_batch(self, job: BatchJob) -> None:
        """Discover and ingest files. Any exception escaping here fails the batch."""
        try:
            self._prepare_storage()

            files = self.scanner.scan(job.folder_path)
            job.begin_upload(len(files))
            logger.info(f"Batch {job.id}: {len(files)} file(s) to process")

            workers = job.options.parallel_connections
            if workers > 1 and len(files) > 1:
                self._process_parallel(job, files, workers)
            else:
                for i, filepath in enumerate(files, 1):
                    if job.cancelled:
                        break
                    logger.debug(f"[{i}/{len(files)}] Processing: {filepath.name}")
                    self._process_file(job, filepath)

            job.set_phase(BatchPhase.FINALIZING)
            if job.cancelled:
                logger.info(f"Batch {job.id} cancelled")
            job.finish()
            logger.info(summarize(job.snapshot()))

        except Exception as e:
            logger.error(f"Batch {job.id} failed: {e}")
            job.fail(str(e))

    def _process_parallel(self, job: BatchJob, files: list[Path], workers: int) -> None:
        """Process files with a per-batch worker pool."""
        with ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix=f"batch-{job.id[:8]}"
        ) as pool:
            futures = [pool.submit(self._process_file, job, f) for f in files]
            done, _ = wait_futures(futures, return_when=FIRST_EXCEPTION)

            for future in done:
                if future.exception() is not None:
                    # Stop queued files; running ones finish their current file
                    job.cancel()
                    for pending in futures:
                        pending.cancel()
                    raise future.exception()

    def _prepare_storage(self) -> None:
        """Create storage directories. Failure is fatal for the batch."""
        try:
            ensure_directory(self.settings.upload_dir)
            ensure_directory(self.settings.thumbnail_dir)
        except OSError as e:
            raise BatchFatalError(f"Cannot create storage directories: {e}") from e

    def _process_file(self, job: BatchJob, filepath: Path) -> None:
        """
        Process one discovered file and record exactly one outcome.

        Raises:
            BatchFatalError: If managed storage is not writable.
        """
        job.wait_while_paused()
        if job.cancelled:
            return

        source = str(filepath)
        try:
            file_size = filepath.stat().st_size
        except OSError as e:
            logger.error(f"Cannot stat {source}: {e}")
            job.record_error(source, f"Cannot read file: {e}")
            return

        key = (filepath.name, file_size)
        check_duplicates = job.options.skip_duplicates

        if check_duplicates:
            self._claim_key(key)

        try:
            if check_duplicates:
                existing = self.repository.find_duplicate(filepath.name, file_size)
                if existing is not None:
                    logger.debug(f"Skipping duplicate: {filepath.name} (ID: {existing.id})")
                    job.record_duplicate(
                        source, f"Duplicate file: {filepath.name} (image {existing.id})"
                    )
                    return

            image, transformed = self._ingest(job, filepath, file_size)

        except BatchFatalError:
            raise
        except Exception as e:
            logger.error(f"Failed to process {filepath.name}: {e}")
            job.record_error(source, str(e))
            return
        finally:
            if check_duplicates:
                self._release_key(key)

        job.record_success(image.to_dict())
        logger.info(f"Processed: {filepath.name} (ID: {image.id})")

        if transformed.metadata is not None:
            try:
                self.repository.insert_metadata(image.id, transformed.metadata.to_dict())
            except Exception as e:
                logger.warning(f"Failed to store metadata for image {image.id}: {e}")

        self._schedule_enrichment(image.id, transformed.processed_path, job.options)

    def _ingest(
        self,
        job: BatchJob,
        filepath: Path,
        file_size: int
    ) -> tuple[Image, TransformResult]:
        """
        Copy, transform and insert one file.

        On failure every file written for it is removed before re-raising.
        """
        upload_dir = self.settings.upload_dir
        filename = generate_unique_filename(filepath.name)
        managed_path = upload_dir / filename

        try:
            shutil.copy2(filepath, managed_path)
        except OSError as e:
            delete_file(managed_path)
            if not upload_dir.is_dir() or not os.access(upload_dir, os.W_OK):
                raise BatchFatalError(f"Upload directory is not writable: {upload_dir}") from e
            raise

        generated: list[str] = []
        try:
            transformed = self.transformer.transform(managed_path, job.options, filename=filename)
            generated = transformed.generated_files

            image = self.repository.insert_image(
                filename=filename,
                original_name=filepath.name,
                file_path=str(managed_path),
                file_size=file_size,
                mime_type=get_mime_type(filepath.name),
                thumbnail_path=transformed.thumbnail_path,
                original_path=str(filepath),
                width=transformed.width,
                height=transformed.height,
            )
        except Exception:
            delete_file(managed_path)
            for path in generated:
                delete_file(path)
            raise

        return image, transformed

    def _claim_key(self, key: tuple[str, int]) -> None:
        """Wait until no other worker holds this duplicate key, then take it."""
        with self._inflight_released:
            while key in self._inflight_keys:
                self._inflight_released.wait()
            self._inflight_keys.add(key)

    def _release_key(self, key: tuple[str, int]) -> None:
        with self._inflight_released:
            self._inflight_keys.discard(key)
            self._inflight_released.notify_all()

    # ────────────────────────────────────────────────────────────────────────────
    # Background analysis
    # ────────────────────────────────────────────────────────────────────────────

    def _schedule_enrichment(self, image_id: int, image_path: str, options: BatchOptions) -> None:
        try:
            future = self._enrichment_pool.submit(self._enrich, image_id, image_path, options)
        except RuntimeError as e:
            # Pool already shut down
            logger.error(f"Could not schedule analysis for image {image_id}: {e}")
            self._mark_failed(image_id, f"AI analysis failed: {e}")
            return

        with self._futures_lock:
            self._enrichment_futures.add(future)
        future.add_done_callback(self._enrichment_done)

    def _enrichment_done(self, future: Future) -> None:
        with self._futures_lock:
            self._enrichment_futures.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Analysis task crashed: {future.exception()}")

    def _enrich(self, image_id: int, image_path: str, options: BatchOptions) -> None:
        """
        Analyze one image and record the outcome on its record.

        Failures are written to the image's status; nothing is raised.
        """
        try:
            self.repository.mark_processing(image_id)

            image_bytes = resize_for_analysis(
                image_path, options.analysis_image_size, options.quality
            )
            analysis = self.analyzer.analyze(
                image_bytes,
                ANALYSIS_MIME_TYPE,
                use_fallback=options.use_fallback,
                prompt=options.custom_prompt,
            )

            self.repository.insert_analysis(
                image_id,
                description=analysis.description,
                caption=analysis.caption,
                keywords=analysis.keywords,
                confidence=analysis.confidence,
            )
            self.repository.mark_completed(image_id)
            logger.info(f"Analysis complete for image {image_id}")

        except Exception as e:
            logger.error(f"AI analysis failed for image {image_id}: {e}")
            self._mark_failed(image_id, f"AI analysis failed: {e}")

    def _mark_failed(self, image_id: int, message: str) -> None:
        try:
            self.repository.mark_failed(image_id, message)
        except Exception as e:
            logger.error(f"Could not record failure for image {image_id}: {e}")


def summarize(snapshot: dict[str, Any]) -> str:
    """Generate a summary string for a batch snapshot."""
    lines = [
        "=" * 50,
        f"Batch {snapshot['id']}: {snapshot['status']}",
        "=" * 50,
        f"Folder: {snapshot['folder_path']}",
        f"Total files found: {snapshot['total_files']}",
        f"Successfully processed: {snapshot['successful_files']}",
        f"Duplicates skipped: {snapshot['duplicate_files']}",
        f"Failed: {snapshot['error_files']}",
        f"Duration: {format_duration(snapshot['duration_seconds'])}",
    ]

    if snapshot["processing_rate"]:
        lines.append(f"Rate: {snapshot['processing_rate']} files/min")

    failures = [e for e in snapshot["errors"] if e["type"] != "duplicate"]
    if failures:
        lines.append("")
        lines.append("Errors:")
        for entry in failures:
            lines.append(f"  - {Path(entry['file']).name}: {entry['error']}")

    return "\n".join(lines)
