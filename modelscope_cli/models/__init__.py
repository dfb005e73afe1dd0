"""
Data Models Layer.

This package contains the core data structures used throughout the application:
the repository listing, ledger records, run statistics, and configuration.
"""

from .config import DownloadConfig
from .records import FileRecord
from .repository import EntryKind, RepositoryEntry
from .stats import DownloadStats, ProgressCounters

__all__ = [
    "DownloadConfig",
    "DownloadStats",
    "EntryKind",
    "FileRecord",
    "ProgressCounters",
    "RepositoryEntry",
]
