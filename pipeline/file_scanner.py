"""
File scanner module for discovering images in directories.

Provides recursive directory scanning with filtering for supported
image and RAW files.
"""

import logging
import os
from pathlib import Path
from typing import Iterator

from pipeline.formats import SUPPORTED_EXTENSIONS

logger = logging.getLogger(__name__)


class FileScanner:
    """
    Scanner for discovering image files in directories.

    Attributes:
        extensions: Set of file extensions to include.
        recursive: Whether to scan subdirectories.
    """

    def __init__(
        self,
        extensions: set[str] | None = None,
        recursive: bool = True
    ):
        """
        Initialize the file scanner.

        Args:
            extensions: Set of dotted file extensions to scan for.
                       Defaults to SUPPORTED_EXTENSIONS.
            recursive: Whether to scan subdirectories.
        """
        self.extensions = {e.lower() for e in (extensions or SUPPORTED_EXTENSIONS)}
        self.recursive = recursive

    def scan(self, directory: str | Path) -> list[Path]:
        """
        Scan directory for image files.

        Subdirectories that cannot be read are logged and skipped.

        Args:
            directory: Path to directory to scan.

        Returns:
            List of absolute paths to image files, in a stable order.

        Raises:
            ValueError: If directory doesn't exist or isn't a directory.
            PermissionError: If the root directory itself can't be read.
        """
        directory = Path(directory).resolve()

        if not directory.exists():
            raise ValueError(f"Directory does not exist: {directory}")

        if not directory.is_dir():
            raise ValueError(f"Path is not a directory: {directory}")

        # The root must be listable; only nested failures are tolerated
        with os.scandir(directory):
            pass

        images = list(self._scan_iter(directory))
        images.sort(key=lambda p: str(p).lower())

        logger.info(f"Found {len(images)} image(s) in {directory}")
        return images

    def _scan_iter(self, directory: Path) -> Iterator[Path]:
        """
        Iterate over image files in directory, depth-first.

        Args:
            directory: Path to directory to scan.

        Yields:
            Paths to image files.
        """
        try:
            with os.scandir(directory) as it:
                entries = list(it)
        except OSError as e:
            logger.warning(f"Skipping unreadable directory {directory}: {e}")
            return

        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if self.recursive:
                        yield from self._scan_iter(Path(entry.path))
                elif self._is_image(entry):
                    yield Path(entry.path)
            except OSError as e:
                logger.warning(f"Skipping unreadable entry {entry.path}: {e}")

    def _is_image(self, entry: os.DirEntry) -> bool:
        """
        Check if a directory entry is a supported image file.

        Args:
            entry: Entry to check.

        Returns:
            True if entry is an image file.
        """
        return (
            entry.is_file() and
            Path(entry.name).suffix.lower() in self.extensions and
            not entry.name.startswith(".")  # Skip hidden files
        )

    def count(self, directory: str | Path) -> int:
        """
        Count image files in directory without keeping the paths.

        Args:
            directory: Path to directory to scan.

        Returns:
            Number of image files found.
        """
        return sum(1 for _ in self._scan_iter(Path(directory)))


def scan_directory(
    directory: str | Path,
    recursive: bool = True,
    extensions: set[str] | None = None
) -> list[Path]:
    """
    Convenience function to scan a directory for images.

    Args:
        directory: Path to directory to scan.
        recursive: Whether to scan subdirectories.
        extensions: Set of file extensions to include.

    Returns:
        List of paths to image files.
    """
    scanner = FileScanner(extensions=extensions, recursive=recursive)
    return scanner.scan(directory)
