"""
Storage Layer.

This package handles all data persistence: the configuration file and the
download ledger with its interchangeable backing stores.
"""

from pathlib import Path

from .config_manager import ConfigManager
from .ledger import DownloadLedger
from .ledger_store import (
    JsonLedgerStore,
    LedgerStore,
    MemoryLedgerStore,
    SqliteLedgerStore,
)


def create_ledger_store(backend: str, config_dir: Path) -> LedgerStore:
    """Builds the ledger store named by the ``ledger_backend`` setting."""
    if backend == "json":
        return JsonLedgerStore(config_dir / "settings.json")
    return SqliteLedgerStore(config_dir)


__all__ = [
    "ConfigManager",
    "DownloadLedger",
    "JsonLedgerStore",
    "LedgerStore",
    "MemoryLedgerStore",
    "SqliteLedgerStore",
    "create_ledger_store",
]
