"""Dependency manager: orchestrates resolve, fetch, lock and manifest updates."""

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

import requests

from ..config import get_cache_dir, get_workers
from ..core.cache import MetadataCache
from ..core.env import EnvConfig
from ..core.transport import HttpTransport, ProxyManager
from ..errors import NotFound, RmmError, Stage
from ..models.dependency import DependencySpec, ResolvedDependency, SourceType
from ..models.lockfile import DependencyLockEntry, RmmLock
from .consistency import ConsistencyReport, FindingKind, check_consistency
from .fetcher import ArtifactCache, FetchedArtifact, default_fetchers
from .git_resolver import GitPythonRunner, GitResolver
from .github_resolver import GITHUB_API, HostedReleaseResolver
from .installer import install_artifact, uninstall
from .lockfile import LockStore
from .manifest import DEFAULT_WRITE_TIMEOUT, load_manifest, project_write_lock, save_manifest
from .resolver import HttpResolver, LocalResolver, ResolverSet

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
SpecLike = Union[str, Mapping[str, Any], DependencySpec]

# Lock entry meta keys the fetchers need back when reinstalling
_FETCH_META_KEYS = ("asset", "tag", "kind", "ref")


class DependencyState:
    """Lifecycle of one dependency identity."""
    DECLARED = "Declared"
    RESOLVED = "Resolved"
    LOCKED = "Locked"
    INSTALLED = "Installed"
    REMOVED = "Removed"


@dataclass
class DependencyStatus:
    id: str
    spec: Optional[DependencySpec]
    entry: Optional[DependencyLockEntry]
    state: str


@dataclass
class InstallReport:
    """Outcome of installing every lock entry; failures are kept per entry."""
    installed: List[DependencyLockEntry] = field(default_factory=list)
    failures: Dict[str, RmmError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class SyncReport:
    locked: List[ResolvedDependency] = field(default_factory=list)
    failures: Dict[str, RmmError] = field(default_factory=dict)
    install: Optional[InstallReport] = None

    @property
    def ok(self) -> bool:
        return not self.failures and (self.install is None or self.install.ok)


@contextmanager
def _stage(dependency: Optional[str], stage: str) -> Iterator[None]:
    try:
        yield
    except RmmError as e:
        raise e.annotate(dependency=dependency, stage=stage)


def _parse(spec: SpecLike) -> DependencySpec:
    if isinstance(spec, DependencySpec):
        return spec
    with _stage(spec if isinstance(spec, str) else None, Stage.PARSE):
        return DependencySpec.parse(spec)


def resolved_from_entry(entry: DependencyLockEntry) -> ResolvedDependency:
    """Rebuild the exact artifact descriptor recorded in a lock entry."""
    with _stage(entry.id, Stage.PARSE):
        spec = DependencySpec.parse(entry.source)
        if spec.id != entry.id:
            spec = spec.with_overrides(alias=entry.id)
    size = entry.meta.get("size")
    return ResolvedDependency(
        spec=spec,
        resolved_version=entry.resolved_version,
        download_url=entry.download_url,
        sha256=entry.sha256,
        size=size if isinstance(size, int) else None,
        source=entry.source,
        meta={k: entry.meta[k] for k in _FETCH_META_KEYS if k in entry.meta},
    )


class DependencyManager:
    """Facade over resolvers, the artifact cache, the lock store and the manifest.

    The proxy rotation state lives as long as the manager, so consecutive
    operations start from the proxy that last worked. Metadata caches live
    for a single operation.
    """

    def __init__(
        self,
        env_config: Optional[EnvConfig] = None,
        cache_dir: Optional[PathLike] = None,
        session: Optional[requests.Session] = None,
        git_runner=None,
        workers: Optional[int] = None,
        target_hints: Optional[Sequence[str]] = None,
        api_base: str = GITHUB_API,
        lock_store: Optional[LockStore] = None,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
    ):
        self.env_config = env_config or EnvConfig.from_env()
        self.cache_dir = Path(cache_dir) if cache_dir is not None else get_cache_dir(self.env_config)
        self.workers = workers or get_workers(self.env_config)
        token = self.env_config.github_token_trimmed()
        self.proxy_manager = ProxyManager.from_env_config(self.env_config)
        self.transport = HttpTransport(self.proxy_manager, session=session, token=token)
        self.git_runner = git_runner if git_runner is not None else GitPythonRunner(token)
        self.target_hints = target_hints
        self.api_base = api_base
        self.lock_store = lock_store or LockStore()
        self.write_timeout = write_timeout

    # Per-operation collaborators

    def _resolvers(self, project_root: Optional[PathLike] = None) -> ResolverSet:
        cache = MetadataCache()
        return ResolverSet({
            SourceType.GITHUB: HostedReleaseResolver(self.transport, cache, self.api_base, self.target_hints),
            SourceType.GIT: GitResolver(self.git_runner, self.proxy_manager),
            SourceType.HTTP: HttpResolver(),
            SourceType.LOCAL: LocalResolver(Path(project_root) if project_root is not None else None),
        })

    def _artifacts(self, cache_dir: Optional[PathLike] = None) -> ArtifactCache:
        root = Path(cache_dir) if cache_dir is not None else self.cache_dir
        return ArtifactCache(root, default_fetchers(self.transport, self.git_runner, self.proxy_manager))

    def _write_lock(self, project_root: Path):
        return project_write_lock(project_root, timeout=self.write_timeout)

    def _read_lock(self, project_root: Path) -> RmmLock:
        with _stage(None, Stage.LOCK):
            return self.lock_store.read(project_root)

    def _write_lockfile(self, project_root: Path, lock: RmmLock) -> None:
        with _stage(None, Stage.LOCK):
            self.lock_store.write(project_root, lock)

    def _fetch(self, artifacts: ArtifactCache, resolved: ResolvedDependency) -> FetchedArtifact:
        with _stage(resolved.id, Stage.FETCH):
            return artifacts.fetch(resolved)

    def _install(self, project_root: Path, dependency_id: str, artifact: Path) -> str:
        with _stage(dependency_id, Stage.INSTALL):
            return install_artifact(project_root, dependency_id, artifact)

    # Operations

    def resolve_spec(
        self,
        spec: SpecLike,
        project_root: Optional[PathLike] = None,
        allow_prerelease: bool = False,
    ) -> ResolvedDependency:
        """Resolve a spec without writing anything."""
        return self._resolvers(project_root).resolve(_parse(spec), allow_prerelease)

    def fetch_resolved(self, resolved: ResolvedDependency, cache_dir: Optional[PathLike] = None) -> Path:
        """Fetch a resolved dependency into the cache and return its path."""
        return self._fetch(self._artifacts(cache_dir), resolved).path

    def add_dependency(
        self,
        project_root: PathLike,
        spec: SpecLike,
        save: bool = True,
        allow_prerelease: bool = False,
        install: bool = True,
        dry_run: bool = False,
    ) -> ResolvedDependency:
        """Resolve, optionally fetch and install, lock and optionally declare a dependency.

        Args:
            project_root: Directory holding ``rmmproject.toml``.
            spec: Short-form string, mapping or parsed spec.
            save: Merge the declaration into the manifest.
            allow_prerelease: Let prerelease versions satisfy the constraint.
            install: Fetch the artifact and install it under ``rmm_modules``.
            dry_run: Only resolve; nothing is fetched or written.

        Returns:
            ResolvedDependency: Carrying the verified sha256 when fetched.
        """
        root = Path(project_root)
        spec = _parse(spec)
        resolved = self._resolvers(root).resolve(spec, allow_prerelease)
        if dry_run:
            return resolved

        installed_path = None
        if install:
            fetched = self._fetch(self._artifacts(), resolved)
            resolved = fetched.resolved
            installed_path = self._install(root, resolved.id, fetched.path)

        with self._write_lock(root):
            lock = self._read_lock(root)
            previous = lock.get(resolved.id)
            if installed_path is None and previous is not None \
                    and previous.resolved_version == resolved.resolved_version:
                installed_path = previous.installed_path
            lock.update_entry(DependencyLockEntry.from_resolved(resolved, installed_path))
            self._write_lockfile(root, lock)

            if save:
                with _stage(resolved.id, Stage.MANIFEST):
                    manifest = load_manifest(root)
                    if manifest.upsert(spec):
                        save_manifest(manifest)
        logger.debug("Added %s", resolved)
        return resolved

    def remove_dependency(
        self,
        project_root: PathLike,
        id_or_alias: str,
        remove_files: bool = False,
    ) -> Optional[DependencyLockEntry]:
        """Drop a dependency from the manifest and the lockfile.

        Returns:
            The removed lock entry, or None if it was only declared.

        Raises:
            NotFound: If neither the manifest nor the lockfile knows the id.
        """
        root = Path(project_root)
        with self._write_lock(root):
            with _stage(id_or_alias, Stage.MANIFEST):
                manifest = load_manifest(root)
                declared = manifest.find(id_or_alias)
            lock = self._read_lock(root)
            entry = lock.get(id_or_alias)
            if declared is None and entry is None:
                raise NotFound(
                    f"No dependency named '{id_or_alias}'",
                    dependency=id_or_alias,
                    stage=Stage.MANIFEST,
                    hint="Run 'rmm deps list' to see known dependencies.",
                )
            if entry is not None:
                lock.remove_entry(id_or_alias)
                self._write_lockfile(root, lock)
            if declared is not None:
                with _stage(id_or_alias, Stage.MANIFEST):
                    manifest.remove(id_or_alias)
                    save_manifest(manifest)

        if remove_files and entry is not None:
            self._remove_files(root, entry)
        return entry

    def _remove_files(self, project_root: Path, entry: DependencyLockEntry) -> None:
        with _stage(entry.id, Stage.INSTALL):
            if entry.installed_path:
                uninstall(project_root, entry.installed_path)
        artifacts = self._artifacts()
        resolved = resolved_from_entry(entry)
        filename = artifacts.fetcher_for(resolved).artifact_name(resolved)
        candidates = [artifacts.source_path(resolved, filename)]
        if resolved.sha256:
            candidates.append(artifacts.digest_path(resolved.sha256, filename))
        for path in candidates:
            if path.is_file():
                path.unlink()
                logger.debug("Removed cached artifact %s", path)
                try:
                    path.parent.rmdir()
                except OSError:
                    pass

    def list_dependencies(self, project_root: PathLike) -> List[DependencyStatus]:
        """Every known identity with its declaration, lock entry and lifecycle state."""
        root = Path(project_root)
        with _stage(None, Stage.MANIFEST):
            declared = {spec.id: spec for spec in load_manifest(root).dependencies()}
        lock = self._read_lock(root)

        statuses = []
        for dep_id in sorted(set(declared) | set(lock.ids())):
            entry = lock.get(dep_id)
            if entry is None:
                state = DependencyState.DECLARED
            elif entry.installed_path and (root / entry.installed_path).exists():
                state = DependencyState.INSTALLED
            else:
                state = DependencyState.LOCKED
            statuses.append(DependencyStatus(dep_id, declared.get(dep_id), entry, state))
        return statuses

    def update_lock_entry(
        self,
        project_root: PathLike,
        resolved: ResolvedDependency,
        installed_path: Optional[str] = None,
    ) -> DependencyLockEntry:
        """Insert or replace the lock entry for ``resolved``."""
        root = Path(project_root)
        entry = DependencyLockEntry.from_resolved(resolved, installed_path)
        with self._write_lock(root):
            lock = self._read_lock(root)
            lock.update_entry(entry)
            self._write_lockfile(root, lock)
        return entry

    def install_from_lock(self, project_root: PathLike) -> InstallReport:
        """Install every lock entry exactly as recorded, in parallel.

        Entries are never re-resolved. A failing entry is reported in
        ``failures`` and does not undo the others.
        """
        root = Path(project_root)
        lock = self._read_lock(root)
        artifacts = self._artifacts()
        report = InstallReport()

        def _install_one(entry: DependencyLockEntry) -> DependencyLockEntry:
            with _stage(entry.id, Stage.FETCH):
                fetched = self._fetch(artifacts, resolved_from_entry(entry))
            installed_path = self._install(root, entry.id, fetched.path)
            return replace(entry, sha256=fetched.resolved.sha256, installed_path=installed_path)

        entries = list(lock)
        with ThreadPoolExecutor(max_workers=max(1, self.workers)) as pool:
            futures = {entry.id: pool.submit(_install_one, entry) for entry in entries}
        for entry in entries:
            try:
                report.installed.append(futures[entry.id].result())
            except RmmError as e:
                logger.debug("Install of %s failed: %s", entry.id, e)
                report.failures[entry.id] = e
            except Exception as e:
                logger.warning("Install of %s failed unexpectedly: %s", entry.id, e)
                failure = RmmError(f"Cannot install {entry.id}: {e}", dependency=entry.id, stage=Stage.INSTALL)
                failure.__cause__ = e
                report.failures[entry.id] = failure

        if report.installed:
            with self._write_lock(root):
                current = self._read_lock(root)
                for updated in report.installed:
                    existing = current.get(updated.id)
                    if existing is not None and existing.resolved_version == updated.resolved_version \
                            and existing.download_url == updated.download_url:
                        current.update_entry(updated)
                self._write_lockfile(root, current)
        return report

    def sync(self, project_root: PathLike, allow_prerelease: bool = False, install: bool = True) -> SyncReport:
        """Lock every declared dependency that has no lock entry, then install."""
        root = Path(project_root)
        with _stage(None, Stage.MANIFEST):
            declared = load_manifest(root).dependencies()
        lock = self._read_lock(root)
        missing = [spec for spec in declared if spec.id not in lock]

        report = SyncReport()
        outcomes = self._resolvers(root).resolve_many(missing, allow_prerelease, workers=self.workers)
        for dep_id, outcome in outcomes.items():
            if isinstance(outcome, RmmError):
                report.failures[dep_id] = outcome
            else:
                report.locked.append(outcome)

        if report.locked:
            with self._write_lock(root):
                lock = self._read_lock(root)
                for resolved in report.locked:
                    lock.update_entry(DependencyLockEntry.from_resolved(resolved))
                self._write_lockfile(root, lock)

        if install:
            report.install = self.install_from_lock(root)
        return report

    def ensure_consistency(self, project_root: PathLike, repair: bool = False) -> ConsistencyReport:
        """Report drift between manifest, lockfile and installed modules.

        With ``repair``, missing lock entries are resolved and installed,
        orphan entries are dropped together with their installed files, and
        drifted modules are reinstalled from the lock.
        """
        root = Path(project_root)
        with _stage(None, Stage.MANIFEST):
            declared = {spec.id: spec for spec in load_manifest(root).dependencies()}
        lock = self._read_lock(root)
        report = check_consistency(root, list(declared.values()), lock)
        if not repair:
            return report

        for finding in report.findings:
            if finding.kind == FindingKind.MISSING_LOCK:
                resolved = self.add_dependency(root, declared[finding.id], save=False)
                report.repairs.append(f"locked {resolved}")
            elif finding.kind == FindingKind.ORPHAN_LOCK:
                self._drop_orphan(root, finding.id)
                report.repairs.append(f"removed orphan lock entry {finding.id}")
            elif finding.kind == FindingKind.VERSION_DRIFT:
                entry = lock.get(finding.id)
                fetched = self._fetch(self._artifacts(), resolved_from_entry(entry))
                installed_path = self._install(root, entry.id, fetched.path)
                with self._write_lock(root):
                    current = self._read_lock(root)
                    current.update_entry(replace(entry, sha256=fetched.resolved.sha256, installed_path=installed_path))
                    self._write_lockfile(root, current)
                report.repairs.append(f"reinstalled {entry.id}@{entry.resolved_version}")
        return report

    def _drop_orphan(self, project_root: Path, dependency_id: str) -> None:
        with self._write_lock(project_root):
            lock = self._read_lock(project_root)
            entry = lock.remove_entry(dependency_id)
            self._write_lockfile(project_root, lock)
        if entry is not None and entry.installed_path:
            with _stage(dependency_id, Stage.INSTALL):
                uninstall(project_root, entry.installed_path)
