"""Lock store: reads and writes ``rmm.lock``."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union

from ..errors import LockCorrupt
from ..models.dependency import ResolvedDependency
from ..models.lockfile import LOCK_VERSION, DependencyLockEntry, RmmLock
from ..utils.fs import atomic_write_text

logger = logging.getLogger(__name__)

LOCKFILE_NAME = "rmm.lock"


def _utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def lock_path(project_root: Union[str, Path]) -> Path:
    return Path(project_root) / LOCKFILE_NAME


def dumps_lock(lock: RmmLock) -> str:
    """Serialize deterministically: sorted keys, two-space indent, trailing newline."""
    payload = {
        "lock_version": lock.lock_version,
        "generated_at": lock.generated_at,
        "entries": {entry.id: entry.to_dict() for entry in lock},
    }
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def loads_lock(text: str, origin: str = LOCKFILE_NAME) -> RmmLock:
    """Parse lockfile text.

    Raises:
        LockCorrupt: On unparsable JSON, an unknown schema version or bad entries.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise LockCorrupt(f"{origin} is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise LockCorrupt(f"{origin} must contain a JSON object")

    version = data.get("lock_version")
    if version != LOCK_VERSION:
        raise LockCorrupt(f"{origin} has unsupported lock_version {version!r} (expected {LOCK_VERSION!r})")

    entries = data.get("entries", {})
    if not isinstance(entries, dict):
        raise LockCorrupt(f"{origin} field 'entries' must be an object")

    lock = RmmLock(lock_version=version, generated_at=str(data.get("generated_at") or ""))
    for key, raw in entries.items():
        try:
            lock.update_entry(DependencyLockEntry.from_dict(key, raw))
        except ValueError as e:
            raise LockCorrupt(f"{origin}: {e}", dependency=key)
    return lock


class LockStore:
    """Owns the on-disk lockfile of a project.

    Writes go through a sibling temporary file and a rename, so readers see
    either the old or the new lockfile, never a mix.
    """

    def __init__(self, clock: Callable[[], str] = _utc_now):
        self._clock = clock

    def read(self, project_root: Union[str, Path]) -> RmmLock:
        """Read the lockfile; a missing file is an empty lock."""
        path = lock_path(project_root)
        if not path.exists():
            return RmmLock()
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise LockCorrupt(f"Cannot read {path}: {e}")
        return loads_lock(text, origin=str(path))

    def _previous(self, path: Path) -> Optional[RmmLock]:
        if not path.exists():
            return None
        try:
            return loads_lock(path.read_text(encoding="utf-8"), origin=str(path))
        except (LockCorrupt, OSError):
            return None

    def write(self, project_root: Union[str, Path], lock: RmmLock) -> Path:
        """Persist ``lock``.

        ``generated_at`` is refreshed whenever the entries differ from what is
        on disk; rewriting unchanged entries leaves the file byte-identical.
        """
        path = lock_path(project_root)
        previous = self._previous(path)
        lock.lock_version = LOCK_VERSION
        if previous is not None and previous.entries == lock.entries and previous.generated_at:
            lock.generated_at = previous.generated_at
        else:
            lock.generated_at = self._clock()

        atomic_write_text(path, dumps_lock(lock))
        logger.debug("Wrote %s with %d entries", path, len(lock))
        return path

    @staticmethod
    def update_entry(lock: RmmLock, entry: DependencyLockEntry) -> RmmLock:
        lock.update_entry(entry)
        return lock


def read_lockfile(project_root: Union[str, Path]) -> RmmLock:
    return LockStore().read(project_root)


def write_lockfile(project_root: Union[str, Path], lock: RmmLock) -> Path:
    return LockStore().write(project_root, lock)


def resolved_to_lock_entry(resolved: ResolvedDependency, installed_path: Optional[str] = None) -> DependencyLockEntry:
    return DependencyLockEntry.from_resolved(resolved, installed_path)
