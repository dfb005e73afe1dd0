"""
Per-run progress counters and download session statistics.
"""

import time
from dataclasses import dataclass, field


@dataclass
class ProgressCounters:
    """File counters owned by a single download run."""

    total_files: int = 0
    completed_files: int = 0

    @property
    def fraction(self) -> float:
        if self.total_files <= 0:
            return 0.0
        return self.completed_files / self.total_files


@dataclass
class DownloadStats:
    """Summary of one download run, returned to the caller on success."""

    model_id: str = ""
    destination: str = ""
    total_files: int = 0
    files_downloaded: int = 0
    files_skipped: int = 0
    bytes_downloaded: int = 0
    duration_s: float = 0.0
    _start_time: float = field(default_factory=time.monotonic, repr=False)

    def finish(self) -> None:
        self.duration_s = time.monotonic() - self._start_time
