"""
The download ledger: a persisted record of which local files were downloaded
successfully, used to decide whether a file is already up to date.
"""

import asyncio
import logging
import os
from typing import Any

from modelscope_cli.exceptions import LedgerError
from modelscope_cli.models.records import FileRecord

from .ledger_store import LedgerStore

log = logging.getLogger(__name__)


class DownloadLedger:
    """
    In-memory view of a ledger store, keyed by normalized absolute local path.

    The mapping is loaded once at construction. An unreadable store is treated
    as empty so a corrupt ledger only costs a re-download. Every successful
    ``record`` is persisted before it returns, and writes are serialized so the
    store never sees interleaved read-modify-write cycles.
    """

    def __init__(self, store: LedgerStore):
        self.store = store
        self._write_lock = asyncio.Lock()
        try:
            self._records: dict[str, FileRecord] = store.load()
        except LedgerError as e:
            log.warning(
                f"[yellow]Download ledger is unreadable, starting empty: {e}[/yellow]"
            )
            self._records = {}
        log.debug(f"Loaded {len(self._records)} ledger records from {store.describe()}")

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, path: object) -> bool:
        return path in self._records

    def lookup(self, path: str) -> FileRecord | None:
        """Returns the stored record for ``path`` or None."""
        return self._records.get(str(path))

    def records(self) -> dict[str, FileRecord]:
        return dict(self._records)

    def is_up_to_date(self, path: str, size: int, revision: str) -> bool:
        """
        True when a record exists for ``path``, a regular file is still present
        there, and the recorded size and revision match. A record whose file
        has disappeared is stale but stays in place until it is overwritten.
        """
        record = self.lookup(path)
        if record is None:
            return False
        if not os.path.isfile(path):
            return False
        return record.size == size and record.revision == revision

    async def record(self, path: str, size: int, revision: str) -> FileRecord:
        """
        Upserts the record for ``path`` and persists that single record.

        Raises:
            LedgerError: If the store rejected the write. The in-memory mapping
            is left as it was before the call.
        """
        path = str(path)
        async with self._write_lock:
            previous = self._records.get(path)
            entry = FileRecord.now(path, size, revision)
            self._records[path] = entry
            try:
                await asyncio.to_thread(self.store.put, entry)
            except LedgerError:
                if previous is None:
                    self._records.pop(path, None)
                else:
                    self._records[path] = previous
                raise
            return entry

    async def clear(self) -> int:
        """Removes every record and persists the empty mapping. Returns the count removed."""
        async with self._write_lock:
            removed = len(self._records)
            await asyncio.to_thread(self.store.save, {})
            self._records = {}
            return removed

    def stats(self) -> dict[str, Any]:
        """Summary figures for display: record count, bytes and newest write."""
        newest = max(
            (r.last_modified for r in self._records.values()), default=None
        )
        return {
            "total_files": len(self._records),
            "total_bytes": sum(r.size for r in self._records.values()),
            "last_modified": newest,
            "store": self.store.describe(),
        }
