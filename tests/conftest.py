"""Shared fixtures: generated images, SQLite repositories and a fake analyzer."""

import threading
from pathlib import Path

import pytest
from PIL import Image as PILImage
from sqlalchemy.orm import sessionmaker

from db.database import build_engine, init_db
from db.operations import ImageRepository
from pipeline.ai_analyzer import AnalysisError, AnalysisResult
from pipeline.image_transformer import ImageTransformer
from pipeline.metadata_extractor import MetadataExtractor
from pipeline.processor import BatchProcessor
from pipeline.settings import PipelineSettings


class FakeAnalyzer:
    """Stands in for VisionAnalyzer; records calls and can be told to fail."""

    def __init__(self, fail_with: str | None = None):
        self.fail_with = fail_with
        self.calls: list[dict] = []
        self._lock = threading.Lock()

    def analyze(self, image_bytes, mime_type="image/jpeg", use_fallback=False, prompt=None):
        with self._lock:
            self.calls.append({
                "size": len(image_bytes),
                "mime_type": mime_type,
                "use_fallback": use_fallback,
                "prompt": prompt,
            })
        if self.fail_with:
            raise AnalysisError(self.fail_with)
        return AnalysisResult(
            description="A red square on a plain background.",
            caption="Red square",
            keywords=["red", "square"],
            confidence=0.9,
        )


@pytest.fixture
def make_image(tmp_path):
    """Factory writing a solid-colour image with Pillow."""

    def _make(
        relative: str,
        size: tuple[int, int] = (640, 480),
        color: str = "red",
        fmt: str | None = None,
        root: Path | None = None,
        **save_kwargs,
    ) -> Path:
        path = (root or tmp_path / "photos") / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = "RGBA" if fmt == "PNG" and save_kwargs.pop("alpha", False) else "RGB"
        PILImage.new(mode, size, color).save(path, format=fmt, **save_kwargs)
        return path

    return _make


@pytest.fixture
def memory_repository():
    """Repository backed by an in-memory SQLite database."""
    engine = build_engine("sqlite://")
    init_db(engine)
    yield ImageRepository(sessionmaker(bind=engine, expire_on_commit=False))
    engine.dispose()


@pytest.fixture
def file_repository(tmp_path):
    """Repository on a SQLite file, safe to share between worker threads."""
    engine = build_engine(f"sqlite:///{tmp_path / 'library.db'}")
    init_db(engine)
    yield ImageRepository(sessionmaker(bind=engine, expire_on_commit=False))
    engine.dispose()


@pytest.fixture
def settings(tmp_path):
    return PipelineSettings(
        upload_dir=tmp_path / "uploads",
        thumbnail_dir=tmp_path / "thumbnails",
        thumbnail_size=300,
        analysis_image_size=1024,
        max_concurrent_analysis=2,
        max_concurrent_batches=2,
    )


@pytest.fixture
def fake_analyzer():
    return FakeAnalyzer()


@pytest.fixture
def failing_analyzer():
    return FakeAnalyzer(fail_with="model unavailable")


@pytest.fixture
def make_processor(file_repository, settings):
    """Factory for processors wired to temp storage; shuts them down afterwards."""
    created: list[BatchProcessor] = []

    def _make(analyzer=None, **overrides) -> BatchProcessor:
        transformer = ImageTransformer(
            output_dir=settings.upload_dir,
            thumbnail_dir=settings.thumbnail_dir,
            metadata_extractor=MetadataExtractor(reverse_geocode=False),
        )
        kwargs = {
            "repository": file_repository,
            "analyzer": analyzer or FakeAnalyzer(),
            "transformer": transformer,
            "settings": settings,
        }
        kwargs.update(overrides)
        processor = BatchProcessor(**kwargs)
        created.append(processor)
        return processor

    yield _make

    for processor in created:
        processor.shutdown(wait=True)
