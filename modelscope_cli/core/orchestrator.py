"""
The download orchestrator: walks one model subtree of a remote repository,
skips files the ledger knows to be current, downloads the rest, and reports
aggregate progress.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol

from modelscope_cli.exceptions import (
    DownloadCancelledError,
    LedgerError,
    ModelNotFoundError,
    ModelScopeCliError,
    NetworkError,
)
from modelscope_cli.models.repository import RepositoryEntry
from modelscope_cli.models.stats import DownloadStats, ProgressCounters
from modelscope_cli.storage.ledger import DownloadLedger
from modelscope_cli.utils.path import create_dir, resolve_destination_root, safe_segment
from modelscope_cli.utils.structured_logger import DownloadEventLogger

log = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

PROGRESS_FULL = "full"
PROGRESS_SHALLOW = "shallow"


class EntryLister(Protocol):
    async def list_entries(
        self, repository_id: str, root_path: str, revision: str
    ) -> list[RepositoryEntry]: ...


class EntryFetcher(Protocol):
    async def fetch(
        self, repository_id: str, entry: RepositoryEntry, destination: Path
    ) -> int: ...


@dataclass
class _Frame:
    """One directory on the explicit traversal stack."""

    entries: Iterator[RepositoryEntry]
    destination: Path
    revision: str


@dataclass
class _Run:
    """State owned by a single ``download_model`` call."""

    stats: DownloadStats
    on_progress: Optional[ProgressCallback]
    cancel_event: Optional[asyncio.Event]
    counters: ProgressCounters = field(default_factory=ProgressCounters)
    listings: dict[str, list[RepositoryEntry]] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class DownloadOrchestrator:
    """
    Downloads one named model directory of a repository to local storage.

    The walk is depth-first and iterative. Listing and transfer failures abort
    the run immediately; everything already recorded in the ledger stays
    recorded, so calling ``download_model`` again resumes where it stopped.

    Progress policy:
    - ``"full"``: the selected subtree is listed once up front so the
      denominator is the real number of files; fractions end at 1.0.
    - ``"shallow"``: the denominator is the entry count of the repository
      root listing, set before descending. Nested trees can therefore end
      above or below 1.0.
    """

    def __init__(
        self,
        repository_id: str,
        ledger: DownloadLedger,
        client: EntryLister,
        transfer: EntryFetcher,
        max_workers: int = 1,
        progress_policy: str = PROGRESS_FULL,
        event_logger: Optional[DownloadEventLogger] = None,
    ):
        if progress_policy not in (PROGRESS_FULL, PROGRESS_SHALLOW):
            raise ValueError(f"Unknown progress policy: {progress_policy}")
        self.repository_id = repository_id
        self.ledger = ledger
        self.client = client
        self.transfer = transfer
        self.max_workers = max(1, max_workers)
        self.progress_policy = progress_policy
        self.events = event_logger

    async def download_model(
        self,
        destination_root: str | Path | None,
        model_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DownloadStats:
        """
        Downloads the directory ``model_id`` from the repository root into
        ``destination_root`` (an empty value selects the user's documents
        directory).

        Args:
            on_progress: Called with ``completed / total`` after every file
                decision (downloaded or skipped). Values never decrease.
            cancel_event: When set, the run stops before the next entry.

        Returns:
            Statistics for the finished run.

        Raises:
            NetworkError: A listing or transfer failed, or a transfer wrote a
                different number of bytes than the listing reported.
            FilesystemError: A local directory or file could not be written.
            ModelNotFoundError: The root has no directory named ``model_id``.
                An unknown id is reported rather than finishing with no files.
            DownloadCancelledError: ``cancel_event`` was set.
        """
        root = resolve_destination_root(destination_root)
        run = _Run(
            stats=DownloadStats(model_id=model_id, destination=str(root)),
            on_progress=on_progress,
            cancel_event=cancel_event,
        )
        try:
            await self._download(root, model_id, run)
        except ModelScopeCliError as e:
            if self.events:
                self.events.download_failed(self.repository_id, model_id, e)
            raise

        run.stats.finish()
        log.info(
            f"[green]✓ {model_id}: {run.stats.files_downloaded} downloaded, "
            f"{run.stats.files_skipped} up to date[/green]"
        )
        if self.events:
            self.events.download_completed(self.repository_id, run.stats)
        return run.stats

    async def _download(self, root: Path, model_id: str, run: _Run) -> None:
        create_dir(root)

        root_entries = await self.client.list_entries(self.repository_id, "", "")
        selected = [
            entry
            for entry in root_entries
            if entry.name == model_id and entry.is_directory
        ]
        if not selected:
            raise ModelNotFoundError(
                f"No directory named '{model_id}' in repository '{self.repository_id}'."
            )

        if self.progress_policy == PROGRESS_SHALLOW:
            run.counters.total_files = len(root_entries)
        else:
            run.counters.total_files = await self._count_files(selected, "", run)
        run.stats.total_files = run.counters.total_files

        log.debug(
            f"Downloading '{model_id}' from '{self.repository_id}' into '{root}' "
            f"({run.counters.total_files} files, {self.progress_policy} count)"
        )
        if self.events:
            self.events.download_started(
                self.repository_id,
                model_id,
                str(root),
                run.counters.total_files,
                self.progress_policy,
            )

        await self._walk(selected, "", root, run)

    async def _count_files(
        self, entries: list[RepositoryEntry], revision: str, run: _Run
    ) -> int:
        """Lists the whole subtree once, caching listings for the walk."""
        total = 0
        pending = list(entries)
        while pending:
            entry = pending.pop()
            if entry.is_file:
                total += 1
            elif entry.is_directory:
                self._check_cancelled(run)
                children = await self.client.list_entries(
                    self.repository_id, entry.path, revision
                )
                run.listings[entry.path] = children
                pending.extend(children)
        return total

    async def _children(
        self, entry: RepositoryEntry, revision: str, run: _Run
    ) -> list[RepositoryEntry]:
        cached = run.listings.pop(entry.path, None)
        if cached is not None:
            return cached
        return await self.client.list_entries(self.repository_id, entry.path, revision)

    async def _walk(
        self,
        entries: list[RepositoryEntry],
        revision: str,
        destination: Path,
        run: _Run,
    ) -> None:
        """
        Depth-first traversal on an explicit stack. Consecutive sibling files
        form one batch; a directory entry ends the batch and is descended into
        before the rest of its siblings are read.
        """
        stack = [_Frame(iter(entries), destination, revision)]
        while stack:
            frame = stack[-1]
            files: list[RepositoryEntry] = []
            subdirectory: Optional[RepositoryEntry] = None
            for entry in frame.entries:
                if entry.is_directory:
                    subdirectory = entry
                    break
                if entry.is_file:
                    files.append(entry)

            await self._process_files(files, frame.destination, run)

            if subdirectory is None:
                stack.pop()
                continue

            self._check_cancelled(run)
            child_dest = frame.destination / safe_segment(subdirectory.name)
            create_dir(child_dest)
            children = await self._children(subdirectory, frame.revision, run)
            stack.append(_Frame(iter(children), child_dest, frame.revision))

    async def _process_files(
        self, files: list[RepositoryEntry], destination: Path, run: _Run
    ) -> None:
        if not files:
            return

        if self.max_workers == 1 or len(files) == 1:
            for entry in files:
                self._check_cancelled(run)
                await self._process_file(entry, destination, run)
            return

        semaphore = asyncio.Semaphore(self.max_workers)

        async def worker(entry: RepositoryEntry) -> None:
            async with semaphore:
                self._check_cancelled(run)
                await self._process_file(entry, destination, run)

        tasks = [asyncio.create_task(worker(entry)) for entry in files]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _process_file(
        self, entry: RepositoryEntry, destination: Path, run: _Run
    ) -> None:
        local_path = destination / safe_segment(entry.name)
        key = str(local_path)

        if self.ledger.is_up_to_date(key, entry.size, entry.revision):
            log.debug(f"Up to date, skipping: {entry.path}")
            if self.events:
                self.events.file_skipped(key, entry.size, entry.revision)
            await self._complete(run, downloaded=False)
            return

        start = time.monotonic()
        try:
            written = await self.transfer.fetch(self.repository_id, entry, local_path)
        except ModelScopeCliError as e:
            log.error(f"[red]✗ Failed to download '{entry.path}': {e}[/red]")
            if self.events:
                self.events.file_failed(key, e)
            raise

        if entry.size > 0 and written != entry.size:
            error = NetworkError(
                f"Transfer of '{entry.path}' wrote {written} bytes, expected {entry.size}"
            )
            log.error(f"[red]✗ {error}[/red]")
            if self.events:
                self.events.file_failed(key, error)
            raise error

        try:
            await self.ledger.record(key, entry.size, entry.revision)
        except LedgerError as e:
            log.warning(
                f"[yellow]Downloaded '{entry.path}' but could not record it; "
                f"it will be fetched again next time: {e}[/yellow]"
            )

        if self.events:
            self.events.file_downloaded(key, written, time.monotonic() - start)
        await self._complete(run, downloaded=True, bytes_written=written)

    async def _complete(
        self, run: _Run, downloaded: bool, bytes_written: int = 0
    ) -> None:
        """Counts one file decision and reports the new fraction."""
        async with run.lock:
            run.counters.completed_files += 1
            if downloaded:
                run.stats.files_downloaded += 1
                run.stats.bytes_downloaded += bytes_written or 0
            else:
                run.stats.files_skipped += 1
            if run.on_progress:
                run.on_progress(run.counters.fraction)

    @staticmethod
    def _check_cancelled(run: _Run) -> None:
        if run.cancel_event is not None and run.cancel_event.is_set():
            raise DownloadCancelledError("Download cancelled.")
