"""Source resolvers: turn a DependencySpec into a concrete ResolvedDependency."""

import logging
import re
import urllib.parse
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..errors import MalformedSpec, NotFound, RmmError, Stage
from ..models.dependency import DependencySpec, ResolvedDependency, SourceType
from ..utils.fs import file_sha256, path_sha256

logger = logging.getLogger(__name__)

UNVERSIONED = "unversioned"

_SHA256_RE = re.compile(r'^[a-f0-9]{64}$')


class Resolver(ABC):
    """Resolution strategy for one kind of source.

    Resolvers only read remote metadata or local files; they never touch the
    artifact cache or the lockfile, so independent specs may be resolved from
    several threads at once.
    """

    source_type: SourceType

    @abstractmethod
    def resolve(self, spec: DependencySpec, allow_prerelease: bool = False) -> ResolvedDependency:
        """Resolve ``spec`` to exactly one artifact."""

    def resolve_many(
        self,
        specs: Iterable[DependencySpec],
        allow_prerelease: bool = False,
        workers: int = 1,
    ) -> List[ResolvedDependency]:
        """Resolve several specs, preserving input order.

        The first failure is raised once every resolution has finished.
        """
        specs = list(specs)
        if workers <= 1 or len(specs) <= 1:
            return [self.resolve(spec, allow_prerelease) for spec in specs]
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self.resolve, spec, allow_prerelease) for spec in specs]
        return [future.result() for future in futures]


def expected_sha256(spec: DependencySpec) -> Optional[str]:
    """Digest pinned through ``meta.sha256``, if any."""
    value = spec.meta.get("sha256")
    if value is None:
        return None
    digest = str(value).strip().lower()
    if digest.startswith("sha256:"):
        digest = digest[len("sha256:"):]
    if not _SHA256_RE.match(digest):
        raise MalformedSpec(f"meta.sha256 is not a sha256 hex digest: '{value}'", dependency=spec.id)
    return digest


class HttpResolver(Resolver):
    """Plain URLs: the URL is the artifact, the version is a label."""

    source_type = SourceType.HTTP

    def resolve(self, spec: DependencySpec, allow_prerelease: bool = False) -> ResolvedDependency:
        url = spec.location
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise MalformedSpec(f"Not a downloadable URL: '{url}'", dependency=spec.id)
        return ResolvedDependency(
            spec=spec,
            resolved_version=spec.version or UNVERSIONED,
            download_url=url,
            sha256=expected_sha256(spec),
            source=spec.canonical_source,
        )


class LocalResolver(Resolver):
    """Local files and directories, versioned by content hash."""

    source_type = SourceType.LOCAL

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd()

    def path_for(self, spec: DependencySpec) -> Path:
        path = Path(spec.location).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path.resolve()

    def resolve(self, spec: DependencySpec, allow_prerelease: bool = False) -> ResolvedDependency:
        path = self.path_for(spec)
        if not path.exists():
            raise NotFound(f"Local source does not exist: {path}", dependency=spec.id, stage=Stage.RESOLVE)

        meta = {"kind": "directory" if path.is_dir() else "file"}
        if path.is_dir():
            digest = path_sha256(path)
            sha256, size = None, None
        else:
            sha256, size = file_sha256(path)
            digest = sha256
        logger.debug("Local source %s hashed to %s", path, digest)
        return ResolvedDependency(
            spec=spec,
            resolved_version=digest,
            download_url=path.as_uri(),
            sha256=sha256,
            size=size,
            source=spec.canonical_source,
            meta=meta,
        )


class ResolverSet:
    """Closed dispatch from SourceType to the resolver for it."""

    def __init__(self, resolvers: Dict[SourceType, Resolver]):
        missing = [t.value for t in SourceType if t not in resolvers]
        if missing:
            raise ValueError(f"No resolver configured for: {', '.join(missing)}")
        self._resolvers = dict(resolvers)

    def for_type(self, source_type: SourceType) -> Resolver:
        return self._resolvers[source_type]

    def resolve(self, spec: DependencySpec, allow_prerelease: bool = False) -> ResolvedDependency:
        """Resolve through the matching resolver, tagging failures with the dependency id."""
        try:
            return self.for_type(spec.source_type).resolve(spec, allow_prerelease)
        except RmmError as e:
            raise e.annotate(dependency=spec.id, stage=Stage.RESOLVE)

    def resolve_many(
        self,
        specs: Iterable[DependencySpec],
        allow_prerelease: bool = False,
        workers: int = 1,
    ) -> Dict[str, object]:
        """Resolve specs in parallel.

        Returns:
            dict: spec id -> ResolvedDependency, or the RmmError it failed with.
        """
        specs = list(specs)
        results: Dict[str, object] = {}

        def _one(spec: DependencySpec):
            try:
                return self.resolve(spec, allow_prerelease)
            except RmmError as e:
                return e

        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            for spec, outcome in zip(specs, pool.map(_one, specs)):
                results[spec.id] = outcome
        return results
