import json
import threading
from datetime import datetime, timezone

import pytest

from wrtcli import artifact_store
from wrtcli.artifact_store import ARTIFACT_SUFFIX, JOURNAL_FILENAME, ArtifactStore
from wrtcli.error_handling import NotFoundError, StorageError


def test_write_stores_exact_bytes_under_unique_name(store, settings):
    first, size = store.write("router", b"abc")
    second, _ = store.write("router", b"abc")

    assert size == 3
    assert first != second
    assert first.endswith(ARTIFACT_SUFFIX)
    assert (settings.backup_root / "router" / first).read_bytes() == b"abc"
    assert store.read("router", first) == b"abc"


def test_write_refuses_empty_archive(store):
    with pytest.raises(StorageError):
        store.write("router", b"")
    assert store.list_artifacts("router") == []


def test_failed_write_leaves_no_partial_file(store, settings, monkeypatch):
    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(artifact_store.os, "replace", broken_replace)

    with pytest.raises(StorageError):
        store.write("router", b"payload")

    assert list((settings.backup_root / "router").iterdir()) == []


def test_delete_artifact_is_idempotent(store):
    filename, _ = store.write("router", b"data")

    store.delete_artifact("router", filename)
    store.delete_artifact("router", filename)

    assert store.list_artifacts("router") == []


def test_read_missing_artifact_raises_storage_error(store):
    with pytest.raises(StorageError):
        store.read("router", "20240101_000000_deadbeef_full_backup.tar.gz")


@pytest.mark.parametrize("filename", ["../escape.tar.gz", "nested/file", ".last_id", ""])
def test_rejects_filenames_outside_device_directory(store, filename):
    with pytest.raises(StorageError):
        store.read("router", filename)


def test_rejects_unsafe_device_names(store):
    with pytest.raises(StorageError):
        store.write("../other", b"data")


def test_records_keep_creation_order(store):
    first = store.append_record("router", "a.tar.gz", 10, description="first")
    second = store.append_record("router", "b.tar.gz", 20)

    assert [r.id for r in store.list_records("router")] == [first.id, second.id] == [1, 2]


def test_ids_are_never_reused_after_removing_the_newest(store):
    store.append_record("router", "a.tar.gz", 1)
    second = store.append_record("router", "b.tar.gz", 1)

    store.remove_record("router", second.id)
    third = store.append_record("router", "c.tar.gz", 1)

    assert third.id == 3


def test_id_sequences_are_independent_per_device(store):
    store.append_record("router", "a.tar.gz", 1)
    store.append_record("router", "b.tar.gz", 1)

    assert store.append_record("ap", "c.tar.gz", 1).id == 1


def test_remove_unknown_record_leaves_journal_untouched(store, settings):
    store.append_record("router", "a.tar.gz", 1)
    journal = settings.backup_root / "router" / JOURNAL_FILENAME
    before = journal.read_bytes()

    with pytest.raises(NotFoundError):
        store.remove_record("router", 42)

    assert journal.read_bytes() == before


def test_journal_document_is_an_array_of_records(store, settings):
    created = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    store.append_record("router", "a.tar.gz", 123, created=created)
    store.append_record("router", "b.tar.gz", 456, description="pre-upgrade", created=created)

    document = json.loads((settings.backup_root / "router" / JOURNAL_FILENAME).read_text())

    assert isinstance(document, list)
    assert set(document[0]) == {"id", "filename", "created", "size"}
    assert document[1]["description"] == "pre-upgrade"
    assert document[1]["size"] == 456
    assert datetime.fromisoformat(document[0]["created"].replace("Z", "+00:00")) == created


def test_corrupt_journal_is_reported(store, settings):
    device_dir = settings.backup_root / "router"
    device_dir.mkdir(parents=True)
    (device_dir / JOURNAL_FILENAME).write_text('{"not": "a list"}')

    with pytest.raises(StorageError):
        store.list_records("router")


def test_list_records_for_unknown_device_is_empty(store):
    assert store.list_records("never-backed-up") == []


def test_get_record_unknown_id(store):
    with pytest.raises(NotFoundError):
        store.get_record("router", 1)


def test_sweep_removes_interrupted_writes(store, settings):
    kept, size = store.write("router", b"data")
    store.append_record("router", kept, size)
    leftover = settings.backup_root / "router" / ".tmp-abc123.part"
    leftover.write_bytes(b"partial")

    assert store.sweep("router") == 1
    assert not leftover.exists()
    assert store.list_artifacts("router") == [kept]


def test_sweep_removes_archives_without_a_record(store):
    kept, size = store.write("router", b"recorded")
    store.append_record("router", kept, size)
    unrecorded, _ = store.write("router", b"left behind by a crash")

    assert store.sweep("router") == 1
    assert store.list_artifacts("router") == [kept]
    assert unrecorded not in store.list_artifacts("router")


def test_sweep_of_unknown_device_is_a_no_op(store):
    assert store.sweep("never-backed-up") == 0


def test_new_store_instance_sees_existing_journal(settings, store):
    store.append_record("router", "a.tar.gz", 5)

    reopened = ArtifactStore(settings)

    assert reopened.next_id("router") == 2


def test_concurrent_appends_get_distinct_ids(store):
    count = 16
    barrier = threading.Barrier(count)
    errors = []

    def append(index):
        try:
            barrier.wait()
            store.append_record("router", f"{index:02d}{ARTIFACT_SUFFIX}", index + 1)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=append, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    records = store.list_records("router")
    assert errors == []
    assert sorted(r.id for r in records) == list(range(1, count + 1))
    assert len({r.filename for r in records}) == count
