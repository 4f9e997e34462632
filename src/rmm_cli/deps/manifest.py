"""Manifest (``rmmproject.toml``) access and project write serialization."""

import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import toml

from ..errors import MalformedSpec, ManifestError, ManifestWriteConflict, RmmError
from ..models.dependency import DependencySpec
from ..utils.fs import atomic_write_text

logger = logging.getLogger(__name__)

MANIFEST_NAME = "rmmproject.toml"
WRITE_GUARD_NAME = ".rmm.write.lock"
DEFAULT_WRITE_TIMEOUT = 30.0

_process_locks: Dict[str, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def manifest_path(project_root: Union[str, Path]) -> Path:
    return Path(project_root) / MANIFEST_NAME


def _process_lock(project_root: Path) -> threading.Lock:
    key = str(project_root.resolve())
    with _process_locks_guard:
        return _process_locks.setdefault(key, threading.Lock())


def _guard_owner_is_dead(guard: Path) -> bool:
    """True when ``guard`` names a process that no longer exists.

    An empty or unreadable guard belongs to a writer that is still starting up.
    Liveness can only be checked on POSIX; elsewhere a guard is never reclaimed.
    """
    try:
        pid = int(guard.read_text(encoding="ascii").strip())
    except (OSError, ValueError):
        return False
    if os.name != "posix" or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    except PermissionError:
        pass
    return False


@contextmanager
def project_write_lock(
    project_root: Union[str, Path],
    timeout: float = DEFAULT_WRITE_TIMEOUT,
    poll_interval: float = 0.05,
) -> Iterator[None]:
    """Serialize manifest and lockfile writes for one project.

    Threads of this process queue on an in-memory lock; other processes are
    kept out by an exclusive ``.rmm.write.lock`` file next to the manifest.
    A guard whose recorded PID has exited is removed and taken over.

    Raises:
        ManifestWriteConflict: If the project stays locked past ``timeout``.
    """
    root = Path(project_root)
    lock = _process_lock(root)
    if not lock.acquire(timeout=timeout):
        raise ManifestWriteConflict(f"Timed out waiting for another write to {root}")
    try:
        guard = root / WRITE_GUARD_NAME
        deadline = time.monotonic() + timeout
        while True:
            try:
                fd = os.open(str(guard), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                break
            except FileExistsError:
                if _guard_owner_is_dead(guard):
                    logger.warning("Removing stale write guard %s left by a process that exited", guard)
                    try:
                        guard.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if time.monotonic() >= deadline:
                    raise ManifestWriteConflict(
                        f"{guard} is held by another process",
                        hint=f"Retry when the other rmm process finishes, or delete {guard} if none is running.",
                    )
                time.sleep(poll_interval)
        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
            os.close(fd)
            yield
        finally:
            try:
                guard.unlink()
            except FileNotFoundError:
                pass
    finally:
        lock.release()


def _entry_id(entry: Any) -> Optional[str]:
    try:
        return DependencySpec.parse(entry).id
    except RmmError:
        return None


class Manifest:
    """Loaded manifest document.

    Only ``tool.rmm.dependencies`` is ever modified; every other table is
    written back as it was read.
    """

    def __init__(self, path: Path, data: Dict[str, Any], raw_text: Optional[str]):
        self.path = path
        self.data = data
        self.raw_text = raw_text

    @property
    def exists(self) -> bool:
        return self.raw_text is not None

    @property
    def project(self) -> Dict[str, Any]:
        return self.data.get("project", {})

    def _dependency_list(self, create: bool = False) -> List[Any]:
        tool = self.data.get("tool")
        if not isinstance(tool, dict):
            if not create:
                return []
            tool = self.data["tool"] = {}
        rmm = tool.get("rmm")
        if not isinstance(rmm, dict):
            if not create:
                return []
            rmm = tool["rmm"] = {}
        deps = rmm.get("dependencies")
        if deps is None:
            if not create:
                return []
            deps = rmm["dependencies"] = []
        if not isinstance(deps, list):
            raise ManifestError(f"{self.path}: tool.rmm.dependencies must be a list")
        return deps

    def dependencies(self) -> List[DependencySpec]:
        """Parse every declaration.

        Raises:
            MalformedSpec: Naming the offending entry.
        """
        specs = []
        for index, entry in enumerate(self._dependency_list()):
            try:
                specs.append(DependencySpec.parse(entry))
            except MalformedSpec as e:
                e.context.setdefault("manifest_entry", index)
                raise
        return specs

    def find(self, dependency_id: str) -> Optional[DependencySpec]:
        for spec in self.dependencies():
            if spec.id == dependency_id:
                return spec
        return None

    def upsert(self, spec: DependencySpec) -> bool:
        """Replace the declaration with the same identity in place, or append.

        Returns:
            bool: True if the document changed.
        """
        deps = self._dependency_list(create=True)
        table = spec.to_manifest_entry()
        for index, existing in enumerate(deps):
            if _entry_id(existing) != spec.id:
                continue
            if isinstance(existing, str) and set(table) <= {"source", "version"}:
                new_entry: Any = str(spec)
            else:
                new_entry = table
            if existing == new_entry:
                return False
            deps[index] = new_entry
            self._normalize(deps)
            return True

        if deps and all(isinstance(e, str) for e in deps) and set(table) <= {"source", "version"}:
            deps.append(str(spec))
        else:
            deps.append(table)
        self._normalize(deps)
        return True

    @staticmethod
    def _normalize(deps: List[Any]) -> None:
        # TOML arrays cannot mix strings and tables
        if any(isinstance(e, dict) for e in deps) and any(isinstance(e, str) for e in deps):
            for index, entry in enumerate(deps):
                if isinstance(entry, str):
                    deps[index] = DependencySpec.parse(entry).to_manifest_entry()

    def remove(self, dependency_id: str) -> bool:
        deps = self._dependency_list()
        for index, existing in enumerate(deps):
            if _entry_id(existing) == dependency_id:
                del deps[index]
                return True
        return False


def load_manifest(project_root: Union[str, Path]) -> Manifest:
    """Load the project manifest; a missing file yields an empty document.

    Raises:
        ManifestError: If the file cannot be read or is not valid TOML.
    """
    path = manifest_path(project_root)
    if not path.exists():
        return Manifest(path, {}, None)
    try:
        text = path.read_text(encoding="utf-8")
        data = toml.loads(text)
    except (OSError, toml.TomlDecodeError) as e:
        raise ManifestError(f"Cannot load {path}: {e}")
    return Manifest(path, data, text)


def save_manifest(manifest: Manifest) -> None:
    """Write the manifest back atomically.

    Raises:
        ManifestWriteConflict: If the file changed on disk since it was loaded.
    """
    path = manifest.path
    current = path.read_text(encoding="utf-8") if path.exists() else None
    if current != manifest.raw_text:
        raise ManifestWriteConflict(f"{path} was modified by someone else since it was read")
    text = toml.dumps(manifest.data)
    atomic_write_text(path, text)
    manifest.raw_text = text
    logger.debug("Wrote %s", path)


def parse_dependencies_from_manifest(manifest: Union[Manifest, Dict[str, Any]]) -> List[DependencySpec]:
    """Declared dependencies of a loaded manifest or a raw manifest mapping."""
    if isinstance(manifest, dict):
        manifest = Manifest(Path(MANIFEST_NAME), manifest, None)
    return manifest.dependencies()
