"""
Persistence backends for the download ledger.

A store loads the whole record mapping at once, upserts single records with
``put`` as downloads finish, and replaces the whole mapping with ``save``.
Every backend treats a missing store as an empty mapping and never leaves a
partial write behind.
"""

import json
import logging
import os
import sqlite3
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

from modelscope_cli.exceptions import LedgerError
from modelscope_cli.models.records import FileRecord

log = logging.getLogger(__name__)

LEDGER_KEY = "ModelDownloadManager.downloadedFiles"


class LedgerStore(ABC):
    """Key/value persistence for ledger records keyed by normalized local path."""

    @abstractmethod
    def load(self) -> dict[str, FileRecord]:
        """
        Returns every persisted record.

        Raises:
            LedgerError: If the store exists but cannot be read or decoded.
        """

    @abstractmethod
    def save(self, records: dict[str, FileRecord]) -> None:
        """
        Replaces the persisted mapping with ``records`` atomically.

        Raises:
            LedgerError: If the mapping could not be written.
        """

    def get(self, local_path: str) -> FileRecord | None:
        return self.load().get(local_path)

    def put(self, record: FileRecord) -> None:
        """
        Upserts one record, leaving every other persisted record in place,
        including ones written by other processes since this store was loaded.

        Raises:
            LedgerError: If the record could not be written.
        """
        try:
            records = self.load()
        except LedgerError as e:
            log.warning(f"Replacing unreadable ledger contents: {e}")
            records = {}
        records[record.local_path] = record
        self.save(records)

    def describe(self) -> str:
        return type(self).__name__


def _decode_records(raw: Any) -> dict[str, FileRecord]:
    if not isinstance(raw, dict):
        raise LedgerError(f"Ledger payload must be a mapping, got {type(raw).__name__}")
    try:
        return {
            str(path): FileRecord.from_dict({**value, "local_path": path})
            for path, value in raw.items()
        }
    except (KeyError, TypeError, ValueError) as e:
        raise LedgerError(f"Malformed ledger record: {e}") from e


class MemoryLedgerStore(LedgerStore):
    """Keeps records in process memory. Used for embedding and tests."""

    def __init__(self, records: dict[str, FileRecord] | None = None):
        self._records: dict[str, FileRecord] = dict(records or {})
        self.write_count = 0

    def load(self) -> dict[str, FileRecord]:
        return dict(self._records)

    def save(self, records: dict[str, FileRecord]) -> None:
        self._records = dict(records)
        self.write_count += 1

    def put(self, record: FileRecord) -> None:
        self._records[record.local_path] = record
        self.write_count += 1


class JsonLedgerStore(LedgerStore):
    """
    Stores the serialized record map under a fixed key of a JSON settings file.

    Other keys in the file are preserved. Writes go to a temporary file in the
    same directory that is flushed, fsynced and then renamed over the original.
    """

    def __init__(self, settings_path: Path, key: str = LEDGER_KEY):
        self.settings_path = Path(settings_path)
        self.key = key

    def describe(self) -> str:
        return f"JSON ({self.settings_path})"

    def _read_settings(self) -> dict[str, Any]:
        if not self.settings_path.is_file():
            return {}
        try:
            with open(self.settings_path, encoding="utf-8") as f:
                settings = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise LedgerError(
                f"Cannot read ledger file '{self.settings_path}': {e}"
            ) from e
        if not isinstance(settings, dict):
            raise LedgerError(f"Ledger file '{self.settings_path}' is not a JSON object")
        return settings

    def load(self) -> dict[str, FileRecord]:
        settings = self._read_settings()
        return _decode_records(settings.get(self.key, {}))

    def save(self, records: dict[str, FileRecord]) -> None:
        try:
            settings = self._read_settings()
        except LedgerError as e:
            log.warning(f"Overwriting unreadable ledger file: {e}")
            settings = {}

        settings[self.key] = {
            path: {k: v for k, v in record.to_dict().items() if k != "local_path"}
            for path, record in records.items()
        }

        tmp_path = None
        try:
            self.settings_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.settings_path.name}.",
                suffix=".tmp",
                dir=self.settings_path.parent,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(settings, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.settings_path)
            tmp_path = None
        except OSError as e:
            raise LedgerError(
                f"Cannot write ledger file '{self.settings_path}': {e}"
            ) from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    log.debug(f"Could not remove temporary ledger file {tmp_path}")


class SqliteLedgerStore(LedgerStore):
    """
    A SQLite-backed ledger store with one row per downloaded file.

    ``put`` touches a single row, so concurrent runs for different models
    keep each other's records. A database file SQLite cannot read is moved
    aside to ``<name>.corrupt`` on the next write and a fresh one is created.
    """

    def __init__(self, config_dir_path: Path, filename: str = "download_ledger.sqlite"):
        self.db_path = Path(config_dir_path) / filename

    def describe(self) -> str:
        return f"SQLite ({self.db_path})"

    def _connect(self) -> sqlite3.Connection:
        """Opens the database with the journal settings used for writes and ensures the table."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=FULL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS downloaded_files (
                    local_path TEXT PRIMARY KEY NOT NULL,
                    size INTEGER NOT NULL,
                    revision TEXT NOT NULL,
                    last_modified TEXT NOT NULL
                );
                """
            )
            conn.commit()
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def _quarantine(self, reason: Exception) -> None:
        backup = self.db_path.with_name(self.db_path.name + ".corrupt")
        log.warning(
            f"[yellow]Ledger database '{self.db_path}' is unreadable ({reason}); "
            f"moving it to '{backup.name}' and starting a new one.[/yellow]"
        )
        os.replace(self.db_path, backup)
        for suffix in ("-wal", "-shm"):
            sidecar = self.db_path.with_name(self.db_path.name + suffix)
            if sidecar.exists():
                sidecar.unlink()

    def _write(self, action: str, statements: Callable[[sqlite3.Connection], None]) -> None:
        """Runs ``statements`` in one transaction, rebuilding a corrupt database once."""
        rebuilt = False
        while True:
            conn = None
            try:
                conn = self._connect()
                with conn:
                    statements(conn)
                return
            except sqlite3.OperationalError as e:
                raise LedgerError(f"Failed to {action} in '{self.db_path}': {e}") from e
            except sqlite3.DatabaseError as e:
                if conn is not None:
                    conn.close()
                    conn = None
                if rebuilt:
                    raise LedgerError(f"Failed to {action} in '{self.db_path}': {e}") from e
                try:
                    self._quarantine(e)
                except OSError as move_error:
                    raise LedgerError(
                        f"Cannot move corrupt ledger '{self.db_path}' aside: {move_error}"
                    ) from e
                rebuilt = True
            except OSError as e:
                raise LedgerError(f"Failed to {action} in '{self.db_path}': {e}") from e
            finally:
                if conn is not None:
                    conn.close()

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        if not self.db_path.is_file():
            return []
        conn = None
        try:
            conn = self._connect()
            return conn.execute(sql, params).fetchall()
        except (OSError, sqlite3.Error) as e:
            raise LedgerError(f"Failed to read ledger database '{self.db_path}': {e}") from e
        finally:
            if conn is not None:
                conn.close()

    @staticmethod
    def _row(record: FileRecord) -> tuple:
        return (
            record.local_path,
            record.size,
            record.revision,
            record.last_modified.isoformat(),
        )

    def load(self) -> dict[str, FileRecord]:
        rows = self._query(
            "SELECT local_path, size, revision, last_modified FROM downloaded_files"
        )
        return _decode_records(
            {
                path: {"size": size, "revision": revision, "last_modified": modified}
                for path, size, revision, modified in rows
            }
        )

    def get(self, local_path: str) -> FileRecord | None:
        rows = self._query(
            "SELECT local_path, size, revision, last_modified FROM downloaded_files "
            "WHERE local_path = ?",
            (local_path,),
        )
        if not rows:
            return None
        path, size, revision, modified = rows[0]
        return _decode_records(
            {path: {"size": size, "revision": revision, "last_modified": modified}}
        )[path]

    def put(self, record: FileRecord) -> None:
        self._write(
            "record a download",
            lambda conn: conn.execute(
                "INSERT OR REPLACE INTO downloaded_files "
                "(local_path, size, revision, last_modified) VALUES (?, ?, ?, ?)",
                self._row(record),
            ),
        )

    def save(self, records: dict[str, FileRecord]) -> None:
        rows = [self._row(record) for record in records.values()]

        def replace_all(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM downloaded_files")
            conn.executemany(
                "INSERT INTO downloaded_files "
                "(local_path, size, revision, last_modified) VALUES (?, ?, ?, ?)",
                rows,
            )

        self._write(f"write {len(rows)} records", replace_all)

    def vacuum(self) -> bool:
        """Optimizes the database file by rebuilding it."""
        if not self.db_path.is_file():
            return True
        conn = None
        try:
            conn = self._connect()
            conn.execute("VACUUM;")
            conn.execute("ANALYZE;")
            conn.commit()
            log.info("Ledger database optimized successfully.")
            return True
        except (OSError, sqlite3.Error) as e:
            log.error(f"Database vacuum failed: {e}")
            return False
        finally:
            if conn is not None:
                conn.close()
