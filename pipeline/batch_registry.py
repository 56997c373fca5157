"""
Batch data model and in-process registry.

A batch is one "process folder X" request. Its result aggregate is
mutated by the batch worker and read concurrently by status pollers,
so all access goes through the job's lock and readers get snapshots.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future
from copy import deepcopy
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any

from pipeline.settings import PipelineSettings

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE_RANGE = (100, 800)
ANALYSIS_SIZE_RANGE = (512, 2048)
QUALITY_RANGE = (50, 100)
PARALLEL_RANGE = (1, 16)
MAX_PROMPT_LENGTH = 4000


class BatchStatus(str, Enum):
    """Overall status of a batch."""
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.ERROR)


class ErrorType(str, Enum):
    """Category of a per-file error entry."""
    DUPLICATE = "duplicate"
    PROCESSING = "processing"
    UNSUPPORTED = "unsupported"


class BatchPhase(str, Enum):
    """Coarse progress phase reported to pollers."""
    DISCOVERY = "discovery"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"


# ────────────────────────────────────────────────────────────────────────────────
# Options
# ────────────────────────────────────────────────────────────────────────────────

def _check_int(name: str, value: Any, bounds: tuple[int, int]) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
        value = int(value)
    if not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    low, high = bounds
    if not low <= value <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {value}")
    return value


def _check_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _check_prompt(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"custom_prompt must be a string, got {type(value).__name__}")
    value = value.strip()
    if len(value) > MAX_PROMPT_LENGTH:
        raise ValueError(f"custom_prompt must be at most {MAX_PROMPT_LENGTH} characters")
    return value or None


@dataclass
class BatchOptions:
    """Per-batch processing options."""
    thumbnail_size: int = field(default_factory=lambda: PipelineSettings().thumbnail_size)
    analysis_image_size: int = field(
        default_factory=lambda: PipelineSettings().analysis_image_size
    )
    quality: int = 85
    skip_duplicates: bool = True
    use_fallback: bool = False
    parallel_connections: int = 1
    custom_prompt: str | None = None

    # Accepted request keys, camelCase as sent by the web client
    _ALIASES = {
        "thumbnailSize": "thumbnail_size",
        "analysisImageSize": "analysis_image_size",
        "aiImageSize": "analysis_image_size",
        "skipDuplicates": "skip_duplicates",
        "useFallback": "use_fallback",
        "parallelConnections": "parallel_connections",
        "customPrompt": "custom_prompt",
    }

    def __post_init__(self):
        self.thumbnail_size = _check_int("thumbnail_size", self.thumbnail_size, THUMBNAIL_SIZE_RANGE)
        self.analysis_image_size = _check_int(
            "analysis_image_size", self.analysis_image_size, ANALYSIS_SIZE_RANGE
        )
        self.quality = _check_int("quality", self.quality, QUALITY_RANGE)
        self.parallel_connections = _check_int(
            "parallel_connections", self.parallel_connections, PARALLEL_RANGE
        )
        self.skip_duplicates = _check_bool("skip_duplicates", self.skip_duplicates)
        self.use_fallback = _check_bool("use_fallback", self.use_fallback)
        self.custom_prompt = _check_prompt(self.custom_prompt)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BatchOptions":
        """
        Build options from a request payload.

        Args:
            data: Mapping with snake_case or camelCase keys. Unknown keys
                  and None values are ignored.

        Returns:
            Validated BatchOptions.

        Raises:
            ValueError: If data is not a mapping or a value is invalid.
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("options must be an object")

        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = cls._ALIASES.get(key, key)
            if name in known and value is not None:
                kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ────────────────────────────────────────────────────────────────────────────────
# Result aggregate
# ────────────────────────────────────────────────────────────────────────────────

@dataclass
class BatchErrorEntry:
    """One per-file note: a duplicate skip or a failure."""
    file: str
    error: str
    type: ErrorType


@dataclass
class BatchResult:
    """Counters and outcomes of a batch."""
    total_files: int = 0
    processed_files: int = 0
    successful_files: int = 0
    duplicate_files: int = 0
    error_files: int = 0
    errors: list[BatchErrorEntry] = field(default_factory=list)
    processed_images: list[dict[str, Any]] = field(default_factory=list)
    status: BatchStatus = BatchStatus.PROCESSING
    start_time: datetime = field(default_factory=datetime.utcnow)
    end_time: datetime | None = None
    current_phase: BatchPhase = BatchPhase.DISCOVERY
    processing_rate: float = 0.0
    estimated_time_remaining: str | None = None

    @property
    def duration_seconds(self) -> float:
        """Get total duration in seconds."""
        end = self.end_time or datetime.utcnow()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "total_files": self.total_files,
            "processed_files": self.processed_files,
            "successful_files": self.successful_files,
            "duplicate_files": self.duplicate_files,
            "error_files": self.error_files,
            "errors": [
                {"file": e.file, "error": e.error, "type": e.type.value}
                for e in self.errors
            ],
            "processed_images": deepcopy(self.processed_images),
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "current_phase": self.current_phase.value,
            "processing_rate": self.processing_rate,
            "estimated_time_remaining": self.estimated_time_remaining,
            "duration_seconds": round(self.duration_seconds, 1),
        }


def format_time_remaining(minutes: float) -> str:
    """Format minutes as "4m" or "1h 5m"."""
    minutes = max(0, round(minutes))
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h {minutes % 60}m"


def format_duration(seconds: float) -> str:
    """Format elapsed seconds as "45s", "3m 12s" or "1h 2m"."""
    seconds = max(0, round(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {seconds % 3600 // 60}m"


class BatchJob:
    """
    A batch and its mutable result.

    All mutation goes through the record_* methods, which hold the job
    lock so that successful + error + duplicate == processed at every
    observation.
    """

    def __init__(self, folder_path: str, options: BatchOptions, batch_id: str | None = None):
        self.id = batch_id or str(uuid.uuid4())
        self.folder_path = folder_path
        self.options = options
        self.created_at = datetime.utcnow()
        self.result = BatchResult()
        self.future: Future | None = None

        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._running = threading.Event()
        self._running.set()
        self._upload_started: float | None = None

    # ────────────────────────────────────────────────────────────────────────
    # State
    # ────────────────────────────────────────────────────────────────────────

    @property
    def status(self) -> BatchStatus:
        with self._lock:
            return self.result.status

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Ask the worker to stop before the next file."""
        self._cancel.set()
        self._running.set()

    def pause(self) -> bool:
        """
        Hold the worker at the next file boundary.

        Files already being processed finish. Returns False unless the
        batch is processing.
        """
        with self._lock:
            if self.result.status is not BatchStatus.PROCESSING:
                return False
            self.result.status = BatchStatus.PAUSED
            self._running.clear()
            return True

    def resume(self) -> bool:
        """Let a paused worker continue. Returns False unless the batch is paused."""
        with self._lock:
            if self.result.status is not BatchStatus.PAUSED:
                return False
            self.result.status = BatchStatus.PROCESSING
            self._running.set()
            return True

    def wait_while_paused(self) -> None:
        """Block a worker while the batch is paused. Cancelling releases it."""
        self._running.wait()

    # ────────────────────────────────────────────────────────────────────────
    # Mutation
    # ────────────────────────────────────────────────────────────────────────

    def begin_upload(self, total_files: int) -> None:
        """Fix the total once discovery is done."""
        with self._lock:
            self.result.total_files = total_files
            self.result.current_phase = BatchPhase.UPLOADING
            self._upload_started = time.monotonic()

    def record_duplicate(self, file: str, message: str) -> None:
        with self._lock:
            self.result.duplicate_files += 1
            self.result.errors.append(BatchErrorEntry(file, message, ErrorType.DUPLICATE))
            self._file_done()

    def record_success(self, image: dict[str, Any]) -> None:
        with self._lock:
            self.result.successful_files += 1
            self.result.processed_images.append(image)
            self._file_done()

    def record_error(
        self,
        file: str,
        message: str,
        error_type: ErrorType = ErrorType.PROCESSING
    ) -> None:
        with self._lock:
            self.result.error_files += 1
            self.result.errors.append(BatchErrorEntry(file, message, error_type))
            self._file_done()

    def finish(self) -> None:
        """Mark the batch completed unless it already ended."""
        self._running.set()
        with self._lock:
            if self.result.status.is_terminal:
                return
            self.result.status = BatchStatus.COMPLETED
            self.result.end_time = datetime.utcnow()
            self.result.estimated_time_remaining = None

    def fail(self, message: str) -> None:
        """Mark the batch as failed with a batch-level error entry."""
        self._running.set()
        with self._lock:
            if self.result.status.is_terminal:
                return
            self.result.errors.append(
                BatchErrorEntry(self.folder_path, message, ErrorType.PROCESSING)
            )
            self.result.status = BatchStatus.ERROR
            self.result.end_time = datetime.utcnow()
            self.result.estimated_time_remaining = None

    def set_phase(self, phase: BatchPhase) -> None:
        with self._lock:
            self.result.current_phase = phase

    def _file_done(self) -> None:
        """Advance processed count and progress estimates. Caller holds the lock."""
        result = self.result
        result.processed_files += 1

        if self._upload_started is None:
            return
        elapsed_minutes = (time.monotonic() - self._upload_started) / 60
        if elapsed_minutes <= 0:
            return

        result.processing_rate = round(result.processed_files / elapsed_minutes, 1)
        remaining = result.total_files - result.processed_files
        if remaining > 0 and result.processing_rate > 0:
            result.estimated_time_remaining = format_time_remaining(
                remaining / result.processing_rate
            )
        else:
            result.estimated_time_remaining = None

    # ────────────────────────────────────────────────────────────────────────
    # Reading
    # ────────────────────────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        """Consistent copy of the batch for callers."""
        with self._lock:
            return {
                "id": self.id,
                "folder_path": self.folder_path,
                "options": self.options.to_dict(),
                "created_at": self.created_at.isoformat(),
                **self.result.to_dict(),
            }


class BatchRegistry:
    """Thread-safe in-memory map of batch id to BatchJob."""

    def __init__(self):
        self._jobs: dict[str, BatchJob] = {}
        self._lock = threading.Lock()

    def create(self, folder_path: str, options: BatchOptions) -> BatchJob:
        job = BatchJob(folder_path, options)
        with self._lock:
            self._jobs[job.id] = job
        logger.debug(f"Registered batch {job.id} for {folder_path}")
        return job

    def get(self, batch_id: str) -> BatchJob | None:
        with self._lock:
            return self._jobs.get(batch_id)

    def list_jobs(self) -> list[BatchJob]:
        """All batches, oldest first."""
        with self._lock:
            jobs = list(self._jobs.values())
        return sorted(jobs, key=lambda j: j.created_at)

    def delete(self, batch_id: str) -> BatchJob | None:
        """
        Remove a batch and signal its worker to stop.

        Returns:
            The removed job, or None if the id is unknown.
        """
        with self._lock:
            job = self._jobs.pop(batch_id, None)
        if job is not None:
            job.cancel()
        return job

    def clear_terminal(self) -> int:
        """Remove all completed and failed batches. Returns the count removed."""
        with self._lock:
            terminal = [bid for bid, job in self._jobs.items() if job.is_terminal]
            for batch_id in terminal:
                del self._jobs[batch_id]
        return len(terminal)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
