"""
Queue of files waiting for batch export.

Loading several files at once previews the first and queues all of
them; exporting a queue of more than one file produces a ZIP archive.
"""

import logging
from collections import deque
from pathlib import Path
from typing import Deque, Iterable, List, Optional

from zentuner.core.loader import SUPPORTED_FORMATS


class ExportQueue:
    """
    FIFO of audio files for batch export.

    Duplicates are ignored; order of first insertion is kept.
    """

    def __init__(self, files: Optional[Iterable[Path]] = None):
        self.queue: Deque[Path] = deque()
        self.logger = logging.getLogger('queue')
        if files:
            self.add_many(files)

    def add(self, file_path: Path) -> bool:
        """
        Add file to end of queue.

        Returns:
            True if added, False if it was already queued
        """
        file_path = Path(file_path)
        if file_path in self.queue:
            return False
        self.queue.append(file_path)
        self.logger.info(f"Added to queue: {file_path} (queue size: {len(self.queue)})")
        return True

    def add_many(self, files: Iterable[Path]) -> int:
        """Add several files; returns how many were new."""
        return sum(1 for f in files if self.add(f))

    def add_directory(self, directory: Path, recursive: bool = False) -> int:
        """Queue every supported audio file in ``directory`` (sorted by path)."""
        pattern = "**/*" if recursive else "*"
        files = sorted(
            p for p in Path(directory).glob(pattern)
            if p.is_file() and p.suffix.lower() in SUPPORTED_FORMATS
        )
        return self.add_many(files)

    def get_next(self) -> Optional[Path]:
        """
        Get next file from queue (FIFO).

        Returns:
            Path to next file, or None if queue is empty
        """
        if self.queue:
            file_path = self.queue.popleft()
            self.logger.debug(f"Removed from queue: {file_path} (queue size: {len(self.queue)})")
            return file_path
        return None

    def peek(self) -> Optional[Path]:
        return self.queue[0] if self.queue else None

    def remove(self, file_path: Path) -> bool:
        """
        Remove specific file from queue.

        Returns:
            True if file was found and removed, False otherwise
        """
        try:
            self.queue.remove(Path(file_path))
            self.logger.info(f"Removed from queue: {file_path} (queue size: {len(self.queue)})")
            return True
        except ValueError:
            return False

    def is_empty(self) -> bool:
        return len(self.queue) == 0

    def is_batch(self) -> bool:
        """More than one file queued."""
        return len(self.queue) > 1

    def size(self) -> int:
        return len(self.queue)

    def clear(self) -> None:
        count = len(self.queue)
        self.queue.clear()
        self.logger.info(f"Cleared queue ({count} files removed)")

    def list_files(self) -> List[Path]:
        """Get list of all files in queue (in order)."""
        return list(self.queue)

    def __len__(self) -> int:
        return len(self.queue)

    def __iter__(self):
        return iter(list(self.queue))
