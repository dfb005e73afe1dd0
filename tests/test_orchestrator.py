import asyncio
import json
from unittest.mock import AsyncMock, call

import pytest

from conftest import REPOSITORY_ID, FakeRepository, scenario_tree
from modelscope_cli.core.orchestrator import DownloadOrchestrator
from modelscope_cli.exceptions import (
    DownloadCancelledError,
    FilesystemError,
    LedgerError,
    ModelNotFoundError,
    NetworkError,
)
from modelscope_cli.models.repository import RepositoryEntry
from modelscope_cli.storage import DownloadLedger, MemoryLedgerStore
from modelscope_cli.utils.structured_logger import create_event_logger


def make_orchestrator(repository, ledger, **kwargs):
    return DownloadOrchestrator(REPOSITORY_ID, ledger, repository, repository, **kwargs)


async def run(orchestrator, destination, model_id="modelA", **kwargs):
    fractions: list[float] = []
    stats = await orchestrator.download_model(
        destination, model_id, on_progress=fractions.append, **kwargs
    )
    return stats, fractions


async def test_first_download_fetches_every_file(tmp_path, repository, ledger):
    stats, fractions = await run(make_orchestrator(repository, ledger), tmp_path)

    assert fractions == [0.5, 1.0]
    assert repository.fetch_calls == ["modelA/a.bin", "modelA/sub/b.bin"]
    assert (tmp_path / "modelA" / "a.bin").read_bytes() == b"x" * 10
    assert (tmp_path / "modelA" / "sub" / "b.bin").read_bytes() == b"x" * 20

    a_record = ledger.lookup(str(tmp_path / "modelA" / "a.bin"))
    b_record = ledger.lookup(str(tmp_path / "modelA" / "sub" / "b.bin"))
    assert (a_record.size, a_record.revision) == (10, "r1")
    assert (b_record.size, b_record.revision) == (20, "r1")
    assert len(ledger) == 2

    assert stats.total_files == 2
    assert stats.files_downloaded == 2
    assert stats.files_skipped == 0
    assert stats.bytes_downloaded == 30
    assert stats.destination == str(tmp_path)


async def test_other_models_are_not_touched(tmp_path, repository, ledger):
    await run(make_orchestrator(repository, ledger), tmp_path)

    assert ("other", "") not in repository.list_calls
    assert not (tmp_path / "other").exists()


async def test_subtree_is_listed_once_per_directory(tmp_path, repository, ledger):
    await run(make_orchestrator(repository, ledger), tmp_path)

    assert repository.list_calls == [("", ""), ("modelA", ""), ("modelA/sub", "")]


async def test_second_run_skips_everything(tmp_path, repository, store, ledger):
    await run(make_orchestrator(repository, ledger), tmp_path)
    recorded = ledger.records()
    saves = store.write_count
    repository.fetch_calls.clear()

    # A fresh ledger over the same store, as after a process restart.
    reloaded = DownloadLedger(store)
    stats, fractions = await run(make_orchestrator(repository, reloaded), tmp_path)

    assert fractions == [0.5, 1.0]
    assert repository.fetch_calls == []
    assert reloaded.records() == recorded
    assert store.write_count == saves
    assert stats.files_skipped == 2
    assert stats.files_downloaded == 0


async def test_failure_midway_resumes_on_next_call(tmp_path, repository, ledger):
    repository.fail_on.add("modelA/sub/b.bin")

    with pytest.raises(NetworkError):
        await run(make_orchestrator(repository, ledger), tmp_path)

    a_key = str(tmp_path / "modelA" / "a.bin")
    b_key = str(tmp_path / "modelA" / "sub" / "b.bin")
    assert a_key in ledger
    assert b_key not in ledger
    assert (tmp_path / "modelA" / "a.bin").is_file()

    repository.fail_on.clear()
    repository.fetch_calls.clear()
    stats, fractions = await run(make_orchestrator(repository, ledger), tmp_path)

    assert repository.fetch_calls == ["modelA/sub/b.bin"]
    assert fractions == [0.5, 1.0]
    assert b_key in ledger
    assert stats.files_skipped == 1
    assert stats.files_downloaded == 1


async def test_listing_failure_aborts_the_run(tmp_path, repository, ledger):
    repository.fail_on.add("modelA/sub")

    with pytest.raises(NetworkError):
        await run(make_orchestrator(repository, ledger), tmp_path)

    assert repository.fetch_calls == []


@pytest.mark.parametrize(
    "changed",
    [
        RepositoryEntry.file("a.bin", 10, "r2", path="modelA/a.bin"),
        RepositoryEntry.file("a.bin", 11, "r1", path="modelA/a.bin"),
    ],
    ids=["revision", "size"],
)
async def test_changed_file_is_downloaded_again(tmp_path, repository, ledger, changed):
    await run(make_orchestrator(repository, ledger), tmp_path)
    repository.replace("modelA", changed)
    repository.fetch_calls.clear()

    stats, _ = await run(make_orchestrator(repository, ledger), tmp_path)

    assert repository.fetch_calls == ["modelA/a.bin"]
    record = ledger.lookup(str(tmp_path / "modelA" / "a.bin"))
    assert (record.size, record.revision) == (changed.size, changed.revision)
    assert stats.files_downloaded == 1
    assert stats.files_skipped == 1


async def test_deleted_local_file_is_downloaded_again(tmp_path, repository, ledger):
    await run(make_orchestrator(repository, ledger), tmp_path)
    (tmp_path / "modelA" / "sub" / "b.bin").unlink()
    repository.fetch_calls.clear()

    await run(make_orchestrator(repository, ledger), tmp_path)

    assert repository.fetch_calls == ["modelA/sub/b.bin"]
    assert (tmp_path / "modelA" / "sub" / "b.bin").is_file()


async def test_shallow_count_uses_root_listing_size(tmp_path, ledger):
    tree = scenario_tree()
    tree[""].append(RepositoryEntry.file("README.md", 3, "r1"))
    repository = FakeRepository(tree)

    stats, fractions = await run(
        make_orchestrator(repository, ledger, progress_policy="shallow"), tmp_path
    )

    assert fractions == pytest.approx([1 / 3, 2 / 3])
    assert stats.total_files == 3
    # The shallow count never pre-walks the subtree.
    assert repository.list_calls == [("", ""), ("modelA", ""), ("modelA/sub", "")]


async def test_shallow_count_can_exceed_one(tmp_path, ledger):
    tree = {
        "": [RepositoryEntry.directory("modelA")],
        "modelA": [
            RepositoryEntry.file("a.bin", 1, "r1", path="modelA/a.bin"),
            RepositoryEntry.file("b.bin", 1, "r1", path="modelA/b.bin"),
        ],
    }
    repository = FakeRepository(tree)

    _, fractions = await run(
        make_orchestrator(repository, ledger, progress_policy="shallow"), tmp_path
    )

    assert fractions == [1.0, 2.0]


def test_unknown_progress_policy_is_rejected(repository, ledger):
    with pytest.raises(ValueError):
        make_orchestrator(repository, ledger, progress_policy="approximate")


async def test_unknown_model_raises(tmp_path, repository, ledger):
    with pytest.raises(ModelNotFoundError):
        await run(make_orchestrator(repository, ledger), tmp_path, model_id="missing")

    assert repository.fetch_calls == []


async def test_root_file_with_model_name_is_not_a_match(tmp_path, ledger):
    repository = FakeRepository({"": [RepositoryEntry.file("modelA", 1, "r1")]})

    with pytest.raises(ModelNotFoundError):
        await run(make_orchestrator(repository, ledger), tmp_path)


async def test_empty_model_directory_reports_no_progress(tmp_path, ledger):
    repository = FakeRepository({"": [RepositoryEntry.directory("modelA")]})

    stats, fractions = await run(make_orchestrator(repository, ledger), tmp_path)

    assert fractions == []
    assert stats.total_files == 0
    assert (tmp_path / "modelA").is_dir()


async def test_percent_encoded_names_are_decoded(tmp_path, ledger):
    repository = FakeRepository(
        {
            "": [RepositoryEntry.directory("modelA")],
            "modelA": [
                RepositoryEntry.file("my%20file.bin", 4, "r1", path="modelA/my%20file.bin"),
                RepositoryEntry.file("50%2525.txt", 2, "r1", path="modelA/50%2525.txt"),
            ],
        }
    )

    await run(make_orchestrator(repository, ledger), tmp_path)

    assert (tmp_path / "modelA" / "my file.bin").is_file()
    assert (tmp_path / "modelA" / "50%.txt").is_file()
    assert str(tmp_path / "modelA" / "my file.bin") in ledger


async def test_name_escaping_the_destination_is_rejected(tmp_path, ledger):
    repository = FakeRepository(
        {
            "": [RepositoryEntry.directory("modelA")],
            "modelA": [
                RepositoryEntry.file("..%2Fescape.bin", 1, "r1", path="modelA/x"),
            ],
        }
    )

    with pytest.raises(FilesystemError):
        await run(make_orchestrator(repository, ledger), tmp_path)

    assert repository.fetch_calls == []
    assert not (tmp_path / "escape.bin").exists()


async def test_empty_destination_uses_documents_directory(
    tmp_path, monkeypatch, repository, ledger
):
    documents = tmp_path / "Documents"
    monkeypatch.setenv("XDG_DOCUMENTS_DIR", str(documents))

    stats, _ = await run(make_orchestrator(repository, ledger), "")

    assert stats.destination == str(documents)
    assert (documents / "modelA" / "sub" / "b.bin").is_file()


async def test_encoded_destination_is_normalized(tmp_path, repository, ledger):
    stats, _ = await run(
        make_orchestrator(repository, ledger), f"{tmp_path}/my%20models"
    )

    assert stats.destination == str(tmp_path / "my models")
    assert (tmp_path / "my models" / "modelA" / "a.bin").is_file()


async def test_cancellation_stops_before_next_entry(tmp_path, repository, ledger):
    cancel = asyncio.Event()
    orchestrator = make_orchestrator(repository, ledger)

    def on_progress(fraction: float) -> None:
        cancel.set()

    with pytest.raises(DownloadCancelledError):
        await orchestrator.download_model(
            tmp_path, "modelA", on_progress=on_progress, cancel_event=cancel
        )

    assert repository.fetch_calls == ["modelA/a.bin"]
    assert str(tmp_path / "modelA" / "a.bin") in ledger


class FailingStore(MemoryLedgerStore):
    def put(self, record):
        raise LedgerError("disk full")


async def test_ledger_write_failure_does_not_abort(tmp_path, repository):
    ledger = DownloadLedger(FailingStore())

    stats, fractions = await run(make_orchestrator(repository, ledger), tmp_path)

    assert fractions == [0.5, 1.0]
    assert stats.files_downloaded == 2
    assert len(ledger) == 0

    repository.fetch_calls.clear()
    await run(make_orchestrator(repository, ledger), tmp_path)
    assert repository.fetch_calls == ["modelA/a.bin", "modelA/sub/b.bin"]


def wide_tree(count: int) -> dict[str, list[RepositoryEntry]]:
    files = [
        RepositoryEntry.file(f"shard-{i}.bin", i + 1, "r1", path=f"modelA/shard-{i}.bin")
        for i in range(count)
    ]
    return {
        "": [RepositoryEntry.directory("modelA")],
        "modelA": [*files, RepositoryEntry.directory("sub", path="modelA/sub")],
        "modelA/sub": [RepositoryEntry.file("tail.bin", 1, "r1", path="modelA/sub/tail.bin")],
    }


class SlowRepository(FakeRepository):
    def __init__(self, tree):
        super().__init__(tree)
        self.active = 0
        self.peak = 0

    async def fetch(self, repository_id, entry, destination):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
            return await super().fetch(repository_id, entry, destination)
        finally:
            self.active -= 1


async def test_parallel_transfers_keep_progress_monotonic(tmp_path, ledger):
    repository = SlowRepository(wide_tree(8))

    stats, fractions = await run(
        make_orchestrator(repository, ledger, max_workers=4), tmp_path
    )

    assert len(fractions) == 9
    assert fractions == sorted(fractions)
    assert fractions[-1] == 1.0
    assert 1 < repository.peak <= 4
    assert stats.files_downloaded == 9
    # Files below a subdirectory still come after its preceding siblings.
    assert repository.fetch_calls[-1] == "modelA/sub/tail.bin"


async def test_parallel_failure_stops_the_run(tmp_path, ledger):
    repository = SlowRepository(wide_tree(8))
    repository.fail_on.add("modelA/shard-2.bin")

    with pytest.raises(NetworkError):
        await run(make_orchestrator(repository, ledger, max_workers=4), tmp_path)

    assert "modelA/sub/tail.bin" not in repository.fetch_calls
    assert str(tmp_path / "modelA" / "shard-2.bin") not in ledger
    assert not (tmp_path / "modelA" / "sub" / "tail.bin").exists()


async def test_events_are_written_to_jsonl(tmp_path, repository, ledger):
    base, events = create_event_logger(tmp_path / "logs")
    try:
        await run(
            make_orchestrator(repository, ledger, event_logger=events),
            tmp_path / "models",
        )
    finally:
        base.close()

    lines = base.json_path.read_text(encoding="utf-8").splitlines()
    names = [json.loads(line)["event"] for line in lines]
    assert names[0] == "download_started"
    assert names.count("file_downloaded") == 2
    assert names[-1] == "download_completed"


async def test_failed_run_emits_failure_event(tmp_path, repository, ledger):
    repository.fail_on.add("modelA/a.bin")
    base, events = create_event_logger(tmp_path / "logs")
    try:
        with pytest.raises(NetworkError):
            await run(
                make_orchestrator(repository, ledger, event_logger=events),
                tmp_path / "models",
            )
    finally:
        base.close()

    entries = [
        json.loads(line)
        for line in base.json_path.read_text(encoding="utf-8").splitlines()
    ]
    assert entries[-2]["event"] == "file_failed"
    assert entries[-1]["event"] == "download_failed"
    assert entries[-1]["error_type"] == "NetworkError"


async def test_collaborators_are_called_with_repository_id(tmp_path, ledger):
    client = AsyncMock()
    client.list_entries.side_effect = [
        [RepositoryEntry.directory("modelA")],
        [RepositoryEntry.file("a.bin", 3, "r7", path="modelA/a.bin")],
    ]
    transfer = AsyncMock()
    transfer.fetch.return_value = 3

    orchestrator = DownloadOrchestrator("owner/repo", ledger, client, transfer)
    stats = await orchestrator.download_model(tmp_path, "modelA")

    assert client.list_entries.await_args_list == [
        call("owner/repo", "", ""),
        call("owner/repo", "modelA", ""),
    ]
    entry = transfer.fetch.await_args.args[1]
    assert transfer.fetch.await_args.args[0] == "owner/repo"
    assert transfer.fetch.await_args.args[2] == tmp_path / "modelA" / "a.bin"
    assert entry.revision == "r7"
    assert stats.bytes_downloaded == 3


class ShortRepository(FakeRepository):
    async def fetch(self, repository_id, entry, destination):
        await super().fetch(repository_id, entry, destination)
        return entry.size - 1


async def test_short_transfer_is_not_recorded(tmp_path, ledger):
    repository = ShortRepository(scenario_tree())

    with pytest.raises(NetworkError):
        await run(make_orchestrator(repository, ledger), tmp_path)

    assert len(ledger) == 0
    assert repository.fetch_calls == ["modelA/a.bin"]
