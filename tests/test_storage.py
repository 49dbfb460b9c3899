import threading

import pytest

from p2pmsg.storage import FileStorage, MemoryStorage, StorageFullError, StorageWatcher


def test_memory_tabs_see_each_others_writes() -> None:
    first = MemoryStorage()
    second = first.open_tab()
    seen_first: list = []
    seen_second: list = []
    first.subscribe(lambda k, t: seen_first.append((k, t)))
    second.subscribe(lambda k, t: seen_second.append((k, t)))

    first.set_item("rooms", "a")
    first.set_item("rooms", "a")
    second.remove_item("rooms")

    assert seen_second == [("rooms", "a")]
    assert seen_first == [("rooms", None)]
    assert first.get_item("rooms") is None


def test_memory_quota_counts_all_keys() -> None:
    storage = MemoryStorage(max_bytes=10)
    storage.set_item("a", "12345")
    storage.set_item("a", "1234567890")

    with pytest.raises(StorageFullError):
        storage.set_item("b", "x")
    assert storage.get_item("b") is None


def test_memory_close_stops_delivery() -> None:
    first = MemoryStorage()
    second = first.open_tab()
    seen: list = []
    second.subscribe(lambda k, t: seen.append(k))
    second.close()

    first.set_item("rooms", "x")

    assert seen == []


def test_file_storage_round_trip(tmp_path) -> None:
    storage = FileStorage(tmp_path / "state")
    assert storage.get_item("rooms") is None

    storage.set_item("rooms", "version = 2\n")

    assert storage.get_item("rooms") == "version = 2\n"
    assert (tmp_path / "state" / "rooms.toml").exists()
    assert not list((tmp_path / "state").glob(".*.tmp"))


def test_file_storage_rejects_bad_keys(tmp_path) -> None:
    storage = FileStorage(tmp_path)
    with pytest.raises(ValueError):
        storage.set_item("../escape", "x")
    with pytest.raises(ValueError):
        storage.get_item("")


def test_file_storage_quota(tmp_path) -> None:
    storage = FileStorage(tmp_path, max_bytes=8)
    storage.set_item("a", "1234")
    with pytest.raises(StorageFullError):
        storage.set_item("b", "123456")
    storage.set_item("a", "12345678")


def test_file_poll_delivers_changes_from_other_writer(tmp_path) -> None:
    mine = FileStorage(tmp_path)
    theirs = FileStorage(tmp_path)
    seen: list = []
    mine.subscribe(lambda k, t: seen.append((k, t)))

    mine.set_item("rooms", "own write")
    assert mine.poll() == 0

    theirs.set_item("rooms", "their write")
    theirs.set_item("messages", "history")
    assert mine.poll() == 2
    assert sorted(seen) == [("messages", "history"), ("rooms", "their write")]

    seen.clear()
    assert mine.poll() == 0

    theirs.remove_item("rooms")
    mine.poll()
    assert seen == [("rooms", None)]


def test_watcher_polls_under_lock(tmp_path) -> None:
    mine = FileStorage(tmp_path)
    theirs = FileStorage(tmp_path)
    lock = threading.RLock()
    seen: list = []

    mine.subscribe(lambda k, t: seen.append(k))
    theirs.set_item("profile", "handle = 'bob'\n")

    watcher = StorageWatcher(mine, interval_s=60, lock=lock)
    assert watcher.poll_once() == 1
    assert seen == ["profile"]


def test_watcher_thread_stops(tmp_path) -> None:
    watcher = StorageWatcher(FileStorage(tmp_path), interval_s=60)
    watcher.start()
    watcher.stop()
    watcher.stop()
