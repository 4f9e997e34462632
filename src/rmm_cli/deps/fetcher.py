"""Artifact fetchers and the content-addressed on-disk cache."""

import hashlib
import logging
import os
import re
import shutil
import threading
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Optional

from git.exc import GitCommandError

from ..core.token_manager import sanitize_secrets
from ..core.transport import HttpTransport, ProxyManager
from ..errors import IntegrityMismatch, NotFound, RmmError, Stage
from ..models.dependency import ResolvedDependency, SourceType
from ..utils.fs import atomic_target, file_sha256, zip_tree
from .git_resolver import GitPythonRunner, is_transient_git_error

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r'[^A-Za-z0-9._+-]')


def _safe_name(name: str, fallback: str) -> str:
    name = _UNSAFE_NAME.sub("_", name).lstrip(".")
    return name or fallback


class Fetcher(ABC):
    """Writes the bytes of one kind of artifact to a given path."""

    @abstractmethod
    def artifact_name(self, resolved: ResolvedDependency) -> str:
        """File name the artifact is cached under."""

    @abstractmethod
    def download(self, resolved: ResolvedDependency, dest: Path) -> None:
        """Write the artifact to ``dest`` (which already exists and may be truncated)."""


class HttpFetcher(Fetcher):
    """Release assets and plain URLs, streamed through the transport."""

    def __init__(self, transport: HttpTransport):
        self.transport = transport

    def artifact_name(self, resolved: ResolvedDependency) -> str:
        name = resolved.meta.get("asset") or PurePosixPath(
            urllib.parse.unquote(urllib.parse.urlparse(resolved.download_url).path)).name
        return _safe_name(str(name), f"{resolved.id}.bin")

    def download(self, resolved: ResolvedDependency, dest: Path) -> None:
        self.transport.download(resolved.download_url, dest)


class GitFetcher(Fetcher):
    """Zip archive of the pinned commit."""

    def __init__(self, runner=None, proxy_manager: Optional[ProxyManager] = None):
        self.runner = runner if runner is not None else GitPythonRunner()
        self.proxy_manager = proxy_manager or ProxyManager()

    def artifact_name(self, resolved: ResolvedDependency) -> str:
        return _safe_name(f"{resolved.id}-{resolved.resolved_version[:12]}.zip", "archive.zip")

    def download(self, resolved: ResolvedDependency, dest: Path) -> None:
        self.proxy_manager.run_with_retry(
            lambda proxy: self.runner.archive(resolved.download_url, resolved.resolved_version, dest, proxy),
            description=f"git archive {sanitize_secrets(resolved.download_url)}",
            catch=(GitCommandError,),
            retryable=is_transient_git_error,
        )


def local_path(resolved: ResolvedDependency) -> Path:
    """Filesystem path behind a ``file://`` download URL."""
    parsed = urllib.parse.urlparse(resolved.download_url)
    if parsed.scheme != "file":
        return Path(resolved.download_url)
    return Path(urllib.request.url2pathname(parsed.path))


class LocalFetcher(Fetcher):
    """Copies a local file, or zips a local directory reproducibly."""

    def artifact_name(self, resolved: ResolvedDependency) -> str:
        path = local_path(resolved)
        name = f"{path.name}.zip" if resolved.meta.get("kind") == "directory" or path.is_dir() else path.name
        return _safe_name(name, f"{resolved.id}.zip")

    def download(self, resolved: ResolvedDependency, dest: Path) -> None:
        path = local_path(resolved)
        if not path.exists():
            raise NotFound(f"Local source disappeared: {path}", stage=Stage.FETCH)
        try:
            if path.is_dir():
                zip_tree(path, dest)
            else:
                shutil.copyfile(path, dest)
        except OSError as e:
            raise RmmError(f"Cannot read local source {path}: {e}", dependency=resolved.id,
                           stage=Stage.FETCH) from e


@dataclass(frozen=True)
class FetchedArtifact:
    """A verified artifact in the cache."""
    path: Path
    resolved: ResolvedDependency
    cache_hit: bool = False


class ArtifactCache:
    """Content-addressed artifact cache.

    Layout::

        <root>/sha256/<hex>/<filename>       digest known
        <root>/sources/<key>/<filename>      keyed by source and version

    Presence plus a matching digest is the only source of truth; there is no
    index file.
    """

    def __init__(self, root: Path, fetchers: Dict[SourceType, Fetcher]):
        missing = [t.value for t in SourceType if t not in fetchers]
        if missing:
            raise ValueError(f"No fetcher configured for: {', '.join(missing)}")
        self.root = Path(root)
        self.fetchers = dict(fetchers)
        self._key_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._key_locks.setdefault(key, threading.Lock())

    def fetcher_for(self, resolved: ResolvedDependency) -> Fetcher:
        return self.fetchers[resolved.source_type]

    def digest_path(self, sha256: str, filename: str) -> Path:
        return self.root / "sha256" / sha256 / filename

    def source_path(self, resolved: ResolvedDependency, filename: str) -> Path:
        key = hashlib.sha256(f"{resolved.source}\0{resolved.resolved_version}".encode("utf-8")).hexdigest()
        return self.root / "sources" / key / filename

    def cache_path(self, resolved: ResolvedDependency) -> Path:
        """Where ``resolved`` lives in the cache (whether or not it is there)."""
        filename = self.fetcher_for(resolved).artifact_name(resolved)
        if resolved.sha256:
            return self.digest_path(resolved.sha256, filename)
        return self.source_path(resolved, filename)

    def fetch(self, resolved: ResolvedDependency) -> FetchedArtifact:
        """Return a verified cached copy of ``resolved``, downloading on a miss.

        Raises:
            IntegrityMismatch: If the download does not hash to ``resolved.sha256``.
            RmmError: If the cache directory cannot be read or written.
        """
        final = self.cache_path(resolved)
        with self._lock_for(str(final)):
            try:
                hit = self._check_hit(resolved, final)
                if hit is not None:
                    return hit
                return self._download(resolved, final)
            except OSError as e:
                raise RmmError(
                    f"Cannot cache {resolved} at {final}: {e}",
                    hint="Check that the cache directory is writable, or clear it",
                    dependency=resolved.id,
                    stage=Stage.FETCH,
                ) from e

    def _check_hit(self, resolved: ResolvedDependency, final: Path) -> Optional[FetchedArtifact]:
        if not final.is_file():
            return None
        actual, size = file_sha256(final)
        if resolved.sha256 and actual != resolved.sha256:
            logger.warning("Discarding corrupt cache entry %s", final)
            final.unlink()
            return None
        logger.debug("Cache hit for %s at %s", resolved, final)
        return FetchedArtifact(final, resolved.with_integrity(actual, size), cache_hit=True)

    def _download(self, resolved: ResolvedDependency, final: Path) -> FetchedArtifact:
        fetcher = self.fetcher_for(resolved)
        with atomic_target(final, prefix=".") as tmp:
            fetcher.download(resolved, tmp)
            actual, size = file_sha256(tmp)
            if resolved.sha256 and actual != resolved.sha256:
                raise IntegrityMismatch(
                    f"Checksum mismatch for {resolved}",
                    expected=resolved.sha256,
                    actual=actual,
                    dependency=resolved.id,
                )
        logger.debug("Cached %s (%d bytes) at %s", resolved, size, final)
        if not resolved.sha256:
            self._link_by_digest(final, actual)
        return FetchedArtifact(final, resolved.with_integrity(actual, size))

    def _link_by_digest(self, path: Path, sha256: str) -> None:
        """Make a freshly hashed artifact reachable under its digest key as well."""
        target = self.digest_path(sha256, path.name)
        if target.exists():
            return
        with atomic_target(target, prefix=".") as tmp:
            tmp.unlink()
            try:
                os.link(path, tmp)
            except OSError:
                shutil.copyfile(path, tmp)


def default_fetchers(
    transport: HttpTransport, git_runner=None, proxy_manager: Optional[ProxyManager] = None
) -> Dict[SourceType, Fetcher]:
    http = HttpFetcher(transport)
    return {
        SourceType.GITHUB: http,
        SourceType.HTTP: http,
        SourceType.GIT: GitFetcher(git_runner, proxy_manager or transport.proxy_manager),
        SourceType.LOCAL: LocalFetcher(),
    }


def fetch(
    resolved: ResolvedDependency,
    cache_dir: Path,
    fetchers: Optional[Dict[SourceType, Fetcher]] = None,
) -> Path:
    """Fetch ``resolved`` into ``cache_dir`` and return the cached path."""
    if fetchers is None:
        fetchers = default_fetchers(HttpTransport())
    try:
        return ArtifactCache(cache_dir, fetchers).fetch(resolved).path
    except RmmError as e:
        raise e.annotate(dependency=resolved.id, stage=Stage.FETCH)
