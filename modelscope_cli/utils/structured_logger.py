"""
Structured event logging for download runs.

Events go to the regular ``logging`` hierarchy in a compact ``[event] key=value``
form and, when a log directory is configured, to a JSON-lines file for later
analysis.
"""

import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Optional


class StructuredLogger:
    """
    Logger that emits each event both to ``logging`` and, optionally, as one
    JSON object per line.

    Usage:
        logger = StructuredLogger("modelscope_cli", log_dir=Path("logs"))
        logger.info("file_downloaded", path="/models/a.bin", size_bytes=10)
    """

    def __init__(self, name: str, log_dir: Optional[Path] = None):
        self.name = name
        self.log_dir = log_dir
        self._logger = logging.getLogger(name)
        self._json_file: Optional[IO[str]] = None
        self.json_path: Optional[Path] = None

        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.json_path = log_dir / f"modelscope_cli_{timestamp}.jsonl"
            self._json_file = open(self.json_path, "a", encoding="utf-8")  # noqa: SIM115

        self._session_context: dict[str, Any] = {
            "session_id": f"{int(time.time())}_{id(self)}",
        }

    def set_session_context(self, **kwargs) -> None:
        """Set session-level context that appears in all JSON entries."""
        self._session_context.update(kwargs)

    @staticmethod
    def _format_message(event: str, context: dict[str, Any]) -> str:
        parts = [f"[{event}]"]
        parts.extend(f"{key}={value}" for key, value in context.items())
        return " ".join(parts)

    def _write_json(self, level: str, event: str, context: dict[str, Any]) -> None:
        if not self._json_file or self._json_file.closed:
            return
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "event": event,
            **self._session_context,
            **context,
        }
        try:
            self._json_file.write(json.dumps(entry, default=str) + "\n")
            self._json_file.flush()
        except (OSError, TypeError, ValueError) as e:
            print(f"JSON logging failed: {e}", file=sys.stderr)

    def log(self, level: int, event: str, **context) -> None:
        self._logger.log(level, self._format_message(event, context))
        self._write_json(logging.getLevelName(level), event, context)

    def debug(self, event: str, **context) -> None:
        self.log(logging.DEBUG, event, **context)

    def info(self, event: str, **context) -> None:
        self.log(logging.INFO, event, **context)

    def warning(self, event: str, **context) -> None:
        self.log(logging.WARNING, event, **context)

    def error(self, event: str, **context) -> None:
        self.log(logging.ERROR, event, **context)

    def close(self) -> None:
        if self._json_file and not self._json_file.closed:
            self._json_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class DownloadEventLogger:
    """Named events emitted by the download orchestrator."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def download_started(
        self,
        repository: str,
        model_id: str,
        destination: str,
        total_files: int,
        progress_policy: str,
    ) -> None:
        self.logger.set_session_context(repository=repository, model_id=model_id)
        self.logger.info(
            "download_started",
            destination=destination,
            total_files=total_files,
            progress_policy=progress_policy,
        )

    def file_skipped(self, path: str, size: int, revision: str) -> None:
        self.logger.debug(
            "file_skipped", path=path, size_bytes=size, revision=revision
        )

    def file_downloaded(self, path: str, size_bytes: int, duration_s: float) -> None:
        self.logger.debug(
            "file_downloaded",
            path=path,
            size_bytes=size_bytes,
            duration_s=round(duration_s, 3),
        )

    def file_failed(self, path: str, error: Exception) -> None:
        self.logger.error(
            "file_failed", path=path, error=str(error), error_type=type(error).__name__
        )

    def download_completed(self, repository: str, stats) -> None:
        self.logger.info(
            "download_completed",
            repository=repository,
            model_id=stats.model_id,
            files_downloaded=stats.files_downloaded,
            files_skipped=stats.files_skipped,
            bytes_downloaded=stats.bytes_downloaded,
            duration_s=round(stats.duration_s, 2),
        )

    def download_failed(self, repository: str, model_id: str, error: Exception) -> None:
        self.logger.error(
            "download_failed",
            repository=repository,
            model_id=model_id,
            error=str(error),
            error_type=type(error).__name__,
        )


def create_event_logger(
    log_dir: Optional[Path] = None,
) -> tuple[StructuredLogger, DownloadEventLogger]:
    """
    Create the structured logger and its download event facade.

    Returns:
        Tuple of (base_logger, download_event_logger)
    """
    base = StructuredLogger("modelscope_cli.events", log_dir=log_dir)
    return base, DownloadEventLogger(base)
