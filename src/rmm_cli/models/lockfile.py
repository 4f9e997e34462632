"""Lockfile (rmm.lock) data models."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from .dependency import ResolvedDependency

LOCK_VERSION = "1"


@dataclass
class DependencyLockEntry:
    """Durable record of a resolved dependency.

    Once written, ``sha256`` is authoritative: the artifact behind an entry must
    never change without the entry itself changing.
    """
    id: str
    resolved_version: str
    download_url: str
    source: str
    sha256: Optional[str] = None
    installed_path: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_resolved(
        cls, resolved: ResolvedDependency, installed_path: Optional[str] = None
    ) -> "DependencyLockEntry":
        meta = dict(resolved.meta)
        if resolved.size is not None:
            meta.setdefault("size", resolved.size)
        if resolved.spec.version:
            meta.setdefault("constraint", resolved.spec.version)
        if resolved.spec.asset:
            meta.setdefault("asset", resolved.spec.asset)
        return cls(
            id=resolved.id,
            resolved_version=resolved.resolved_version,
            download_url=resolved.download_url,
            source=resolved.source or resolved.spec.canonical_source,
            sha256=resolved.sha256,
            installed_path=installed_path,
            meta=meta,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "resolved_version": self.resolved_version,
            "download_url": self.download_url,
            "source": self.source,
            "sha256": self.sha256,
            "installed_path": self.installed_path,
        }
        if self.meta:
            data["meta"] = dict(self.meta)
        return data

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any]) -> "DependencyLockEntry":
        """Build an entry from its serialized form.

        Raises:
            ValueError: If required fields are missing or of the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError(f"entry '{key}' must be an object")
        for required in ("resolved_version", "download_url", "source"):
            if not isinstance(data.get(required), str):
                raise ValueError(f"entry '{key}' is missing '{required}'")
        entry_id = data.get("id", key)
        if entry_id != key:
            raise ValueError(f"entry key '{key}' does not match id '{entry_id}'")
        for optional in ("sha256", "installed_path"):
            if data.get(optional) is not None and not isinstance(data[optional], str):
                raise ValueError(f"entry '{key}' field '{optional}' must be a string")
        meta = data.get("meta") or {}
        if not isinstance(meta, dict):
            raise ValueError(f"entry '{key}' field 'meta' must be an object")
        return cls(
            id=key,
            resolved_version=data["resolved_version"],
            download_url=data["download_url"],
            source=data["source"],
            sha256=data.get("sha256"),
            installed_path=data.get("installed_path"),
            meta=dict(meta),
        )


@dataclass
class RmmLock:
    """The project lockfile: dependency identity -> lock entry."""
    lock_version: str = LOCK_VERSION
    generated_at: str = ""
    entries: Dict[str, DependencyLockEntry] = field(default_factory=dict)

    def get(self, entry_id: str) -> Optional[DependencyLockEntry]:
        return self.entries.get(entry_id)

    def update_entry(self, entry: DependencyLockEntry) -> None:
        """Insert or replace an entry by id, leaving all others untouched."""
        self.entries[entry.id] = entry

    def remove_entry(self, entry_id: str) -> Optional[DependencyLockEntry]:
        return self.entries.pop(entry_id, None)

    def ids(self) -> List[str]:
        return sorted(self.entries)

    def __iter__(self) -> Iterator[DependencyLockEntry]:
        for entry_id in self.ids():
            yield self.entries[entry_id]

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self.entries
