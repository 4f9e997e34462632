import json

import pytest

from rmm_cli.deps.lockfile import LockStore, dumps_lock, loads_lock, read_lockfile, write_lockfile
from rmm_cli.errors import LockCorrupt
from rmm_cli.models.lockfile import DependencyLockEntry, RmmLock


def _entry(entry_id, version="1.0.0"):
    return DependencyLockEntry(
        id=entry_id,
        resolved_version=version,
        download_url=f"https://example.com/{entry_id}.zip",
        source=f"https://example.com/{entry_id}.zip",
        sha256="a" * 64,
    )


class Clock:
    def __init__(self):
        self.ticks = 0

    def __call__(self):
        self.ticks += 1
        return f"2024-01-01T00:00:{self.ticks:02d}Z"


def test_serialization_ignores_insertion_order() -> None:
    first = RmmLock(generated_at="t")
    second = RmmLock(generated_at="t")
    for entry_id in ("zeta", "alpha", "mid"):
        first.update_entry(_entry(entry_id))
    for entry_id in ("mid", "zeta", "alpha"):
        second.update_entry(_entry(entry_id))

    assert dumps_lock(first) == dumps_lock(second)
    assert list(json.loads(dumps_lock(first))["entries"]) == ["alpha", "mid", "zeta"]
    assert dumps_lock(first).endswith("}\n")


def test_missing_lockfile_is_empty(tmp_path) -> None:
    lock = read_lockfile(tmp_path)
    assert len(lock) == 0
    assert lock.lock_version == "1"


def test_round_trip(tmp_path) -> None:
    lock = RmmLock()
    lock.update_entry(_entry("widget"))
    write_lockfile(tmp_path, lock)

    loaded = read_lockfile(tmp_path)
    assert loaded.get("widget") == _entry("widget")
    assert loaded.generated_at


def test_update_entry_preserves_others() -> None:
    lock = RmmLock()
    lock.update_entry(_entry("a"))
    lock.update_entry(_entry("b"))
    LockStore.update_entry(lock, _entry("a", "2.0.0"))

    assert lock.get("a").resolved_version == "2.0.0"
    assert lock.get("b").resolved_version == "1.0.0"
    assert lock.ids() == ["a", "b"]


def test_rewriting_unchanged_entries_is_byte_identical(tmp_path) -> None:
    store = LockStore(clock=Clock())
    lock = RmmLock()
    lock.update_entry(_entry("widget"))
    store.write(tmp_path, lock)
    before = (tmp_path / "rmm.lock").read_bytes()

    again = RmmLock()
    again.update_entry(_entry("widget"))
    store.write(tmp_path, again)

    assert (tmp_path / "rmm.lock").read_bytes() == before


def test_changed_entries_refresh_generated_at(tmp_path) -> None:
    store = LockStore(clock=Clock())
    lock = RmmLock()
    lock.update_entry(_entry("widget"))
    store.write(tmp_path, lock)
    first_stamp = store.read(tmp_path).generated_at

    lock.update_entry(_entry("widget", "1.1.0"))
    store.write(tmp_path, lock)

    assert store.read(tmp_path).generated_at != first_stamp


def test_no_temporary_files_remain(tmp_path) -> None:
    write_lockfile(tmp_path, RmmLock())
    assert sorted(p.name for p in tmp_path.iterdir()) == ["rmm.lock"]


@pytest.mark.parametrize("text", [
    "{not json",
    "[]",
    '{"lock_version": "99", "entries": {}}',
    '{"lock_version": "1", "entries": []}',
    '{"lock_version": "1", "entries": {"x": {"resolved_version": "1"}}}',
    '{"lock_version": "1", "entries": {"x": {"id": "y", "resolved_version": "1", '
    '"download_url": "u", "source": "s"}}}',
])
def test_corrupt_lockfiles(text) -> None:
    with pytest.raises(LockCorrupt) as excinfo:
        loads_lock(text)
    assert excinfo.value.stage == "lock"


def test_corrupt_file_on_disk(tmp_path) -> None:
    (tmp_path / "rmm.lock").write_text("garbage")
    with pytest.raises(LockCorrupt):
        read_lockfile(tmp_path)
