from pathlib import Path

import pytest

from modelscope_cli.exceptions import NetworkError
from modelscope_cli.models.repository import RepositoryEntry
from modelscope_cli.storage import DownloadLedger, MemoryLedgerStore

REPOSITORY_ID = "owner/repo"


class FakeRepository:
    """
    In-memory stand-in for both the listing client and the file transfer.

    ``tree`` maps a directory path ("" for the root) to its entries. Paths in
    ``fail_on`` raise NetworkError when listed or fetched.
    """

    def __init__(self, tree: dict[str, list[RepositoryEntry]]):
        self.tree = tree
        self.fail_on: set[str] = set()
        self.list_calls: list[tuple[str, str]] = []
        self.fetch_calls: list[str] = []

    async def list_entries(
        self, repository_id: str, root_path: str = "", revision: str = ""
    ) -> list[RepositoryEntry]:
        assert repository_id == REPOSITORY_ID
        self.list_calls.append((root_path, revision))
        if root_path in self.fail_on:
            raise NetworkError(f"listing {root_path} failed")
        return list(self.tree.get(root_path, []))

    async def fetch(
        self, repository_id: str, entry: RepositoryEntry, destination: Path
    ) -> int:
        assert repository_id == REPOSITORY_ID
        self.fetch_calls.append(entry.path)
        if entry.path in self.fail_on:
            raise NetworkError(f"transfer of {entry.path} failed")
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"x" * entry.size)
        return entry.size

    def replace(self, directory: str, entry: RepositoryEntry) -> None:
        """Swaps the entry with the same name in ``directory``."""
        self.tree[directory] = [
            entry if existing.name == entry.name else existing
            for existing in self.tree[directory]
        ]


def scenario_tree() -> dict[str, list[RepositoryEntry]]:
    return {
        "": [
            RepositoryEntry.directory("modelA"),
            RepositoryEntry.directory("other"),
        ],
        "modelA": [
            RepositoryEntry.file("a.bin", 10, "r1", path="modelA/a.bin"),
            RepositoryEntry.directory("sub", path="modelA/sub"),
        ],
        "modelA/sub": [
            RepositoryEntry.file("b.bin", 20, "r1", path="modelA/sub/b.bin"),
        ],
        "other": [
            RepositoryEntry.file("c.bin", 5, "r1", path="other/c.bin"),
        ],
    }


@pytest.fixture
def repository():
    return FakeRepository(scenario_tree())


@pytest.fixture
def store():
    return MemoryLedgerStore()


@pytest.fixture
def ledger(store):
    return DownloadLedger(store)
