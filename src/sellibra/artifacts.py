"""Temporary upload files: staging, cleanup and age-based sweeping."""

import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of a temp directory sweep."""

    count: int = 0
    bytes_freed: int = 0

    @property
    def megabytes_freed(self) -> float:
        return self.bytes_freed / (1024 * 1024)


class TempArtifactStore:
    """
    Directory of temporary files created while serving AI requests.

    Files are removed by whoever owns them at the end of a request or job;
    ``sweep`` is the periodic backstop for anything left behind.
    """

    def __init__(self, temp_dir: Path) -> None:
        self.temp_dir = Path(temp_dir)

    def contains(self, path: Path | str) -> bool:
        """True if ``path`` resolves to a location inside the temp directory."""
        root = self.temp_dir.resolve()
        resolved = Path(path).resolve()
        return resolved != root and resolved.is_relative_to(root)

    def stage(self, data: bytes, suffix: str = "") -> Path:
        """
        Write bytes to a uniquely named temp file.

        Returns:
            Path of the new file
        """
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        path = self.temp_dir / f"{uuid.uuid4().hex}{suffix}"
        path.write_bytes(data)
        logger.debug(f"Staged temp file {path} ({len(data)} bytes)")
        return path

    def cleanup(self, paths: Iterable[Path | str]) -> int:
        """
        Remove files, logging failures instead of raising.

        Paths outside the temp directory are never touched.

        Returns:
            Number of files removed
        """
        removed = 0
        for path in paths:
            path = Path(path)
            if not self.contains(path):
                logger.warning(f"Refusing to remove {path}: outside {self.temp_dir}")
                continue
            try:
                if path.exists():
                    path.unlink()
                    removed += 1
                    logger.info(f"Temp file removed: {path}")
            except OSError as e:
                logger.error(f"Failed to remove temp file {path}: {e}")
        return removed

    def sweep(self, max_age_minutes: float = 60) -> SweepResult:
        """
        Delete files in the temp directory older than ``max_age_minutes``.

        Returns:
            SweepResult with the number of files and bytes freed
        """
        result = SweepResult()
        if not self.temp_dir.exists():
            return result

        cutoff = time.time() - max_age_minutes * 60
        for path in self.temp_dir.iterdir():
            try:
                if not path.is_file():
                    continue
                stats = path.stat()
                if stats.st_mtime < cutoff:
                    path.unlink()
                    result.count += 1
                    result.bytes_freed += stats.st_size
                    logger.debug(f"Deleted old temp file: {path.name}")
            except OSError as e:
                # File may already be gone
                logger.warning(f"Error processing temp file {path.name}: {e}")

        if result.count:
            logger.info(
                f"Temp cleanup: {result.count} files deleted "
                f"({result.megabytes_freed:.2f} MB freed)"
            )
        return result
