"""
Core application engine for orchestrating the download process.

The `DownloadOrchestrator` walks one model directory of a repository, consults
the download ledger for every file, and delegates transfers to the media layer.
"""

from .orchestrator import DownloadOrchestrator

__all__ = ["DownloadOrchestrator"]
