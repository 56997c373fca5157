"""
Pipeline configuration loaded from environment variables.

Values are read when a settings object is created, so a .env file or
exported variables take effect for each new processor.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable, using default when unset."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


@dataclass
class PipelineSettings:
    """Storage locations and concurrency limits for the pipeline."""
    upload_dir: Path = field(
        default_factory=lambda: Path(os.getenv("UPLOAD_DIR", "./uploads"))
    )
    thumbnail_dir: Path = field(
        default_factory=lambda: Path(os.getenv("THUMBNAIL_DIR", "./thumbnails"))
    )
    thumbnail_size: int = field(default_factory=lambda: _env_int("THUMBNAIL_SIZE", 300))
    analysis_image_size: int = field(default_factory=lambda: _env_int("AI_IMAGE_SIZE", 1024))
    max_concurrent_analysis: int = field(
        default_factory=lambda: _env_int("MAX_CONCURRENT_ANALYSIS", 5)
    )
    max_concurrent_batches: int = field(
        default_factory=lambda: _env_int("MAX_CONCURRENT_BATCHES", 2)
    )


@dataclass
class AnalyzerSettings:
    """Vision model settings. The OpenAI client reads its own key and base URL."""
    model: str = field(default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o-mini"))
    max_retries: int = field(default_factory=lambda: _env_int("AI_MAX_RETRIES", 3))
    min_request_interval: float = field(
        default_factory=lambda: _env_float("AI_MIN_REQUEST_INTERVAL", 1.0)
    )
