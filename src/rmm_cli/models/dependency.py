"""Dependency declaration and resolution models."""

import re
import urllib.parse
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from ..core.versioning import parse_constraint
from ..errors import MalformedSpec

_NAME_RE = re.compile(r'^[a-zA-Z0-9._-]+$')
_SCHEME_RE = re.compile(r'^([A-Za-z][A-Za-z0-9+.-]*):(.*)$', re.DOTALL)
_SCP_LIKE_RE = re.compile(r'^[\w.-]+@[\w.-]+:.+$')
_GIT_REF_RE = re.compile(r'^[^\s~^:?*\[\\]+$')


class SourceType(Enum):
    """Kinds of dependency sources. The set is closed: one resolver per kind."""
    GITHUB = "github"
    GIT = "git"
    HTTP = "http"
    LOCAL = "local"

    @classmethod
    def from_value(cls, value: str) -> "SourceType":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise MalformedSpec(f"Unknown source type '{value}'")


_SCHEMES = {
    "github": SourceType.GITHUB,
    "gh": SourceType.GITHUB,
    "git": SourceType.GIT,
    "git+https": SourceType.GIT,
    "git+http": SourceType.GIT,
    "git+ssh": SourceType.GIT,
    "ssh": SourceType.GIT,
    "http": SourceType.HTTP,
    "https": SourceType.HTTP,
    "local": SourceType.LOCAL,
    "file": SourceType.LOCAL,
}


def _split_version(text: str) -> Tuple[str, Optional[str]]:
    """Split ``source@version`` on the last '@' that starts a version segment.

    An '@' followed by something containing '/' or ':' belongs to the source
    (``git@github.com:owner/repo.git``, URL credentials).
    """
    idx = text.rfind("@")
    if idx <= 0:
        return text, None
    tail = text[idx + 1:]
    if "/" in tail or ":" in tail:
        return text, None
    if not tail.strip():
        raise MalformedSpec(f"Empty version after '@' in '{text}'")
    return text[:idx], tail.strip()


def classify_source(source: str) -> Tuple[SourceType, str]:
    """Derive the source type from a source string.

    Returns:
        tuple: (SourceType, location) where location is the source without any
        rmm-specific scheme prefix (``github:``, ``local:``, ``git:``).

    Raises:
        MalformedSpec: If the source is empty or uses an unknown scheme.
    """
    source = source.strip()
    if not source:
        raise MalformedSpec("Dependency source cannot be empty")

    if _SCP_LIKE_RE.match(source):
        return SourceType.GIT, source

    match = _SCHEME_RE.match(source)
    if match:
        scheme, rest = match.group(1).lower(), match.group(2)
        if len(scheme) == 1:
            # Windows drive letter
            return SourceType.LOCAL, source
        if scheme not in _SCHEMES:
            raise MalformedSpec(f"Unrecognized source scheme '{scheme}:' in '{source}'")
        kind = _SCHEMES[scheme]
        if kind is SourceType.HTTP:
            if not rest.startswith("//"):
                raise MalformedSpec(f"Malformed URL '{source}'")
            return kind, source
        if scheme == "file":
            return kind, urllib.parse.unquote(urllib.parse.urlparse(source).path) if rest.startswith("//") else rest
        if scheme in ("git+https", "git+http", "git+ssh", "ssh") or (scheme == "git" and rest.startswith("//")):
            return kind, source
        if not rest.strip():
            raise MalformedSpec(f"Empty source after '{scheme}:'")
        return kind, rest.strip()

    if source.startswith(("./", "../", "/", "~", ".\\", "..\\")) or source in (".", ".."):
        return SourceType.LOCAL, source
    if source.endswith(".git"):
        return SourceType.GIT, source
    return SourceType.GITHUB, source


def normalize_github_repo(location: str) -> str:
    """Normalize ``owner/repo`` or ``github.com/owner/repo`` to ``owner/repo``."""
    path = location.strip()
    if path.startswith(("https://", "http://")):
        parsed = urllib.parse.urlparse(path)
        if parsed.netloc != "github.com":
            raise MalformedSpec(f"Only github.com repositories are supported, got host: {parsed.netloc}")
        path = parsed.path
    path = path.strip("/")
    parts = path.split("/")
    if len(parts) == 3 and parts[0] == "github.com":
        parts = parts[1:]
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise MalformedSpec(f"Invalid repository format: '{location}'. Expected 'owner/repo'")
    owner, repo = parts
    if repo.endswith(".git"):
        repo = repo[:-4]
    if not _NAME_RE.match(owner):
        raise MalformedSpec(f"Invalid owner name: {owner}")
    if not repo or not _NAME_RE.match(repo):
        raise MalformedSpec(f"Invalid repository name: {repo}")
    return f"{owner}/{repo}"


def _derive_id(source_type: SourceType, location: str) -> str:
    if source_type is SourceType.HTTP:
        name = PurePath(urllib.parse.urlparse(location).path).name
        name = PurePath(name).stem if name else urllib.parse.urlparse(location).netloc
    elif source_type is SourceType.LOCAL:
        path = PurePath(location.replace("\\", "/").rstrip("/"))
        name = path.stem if path.suffix else path.name
    else:
        tail = location.rstrip("/").replace(":", "/").split("/")[-1]
        name = tail[:-4] if tail.endswith(".git") else tail
    return name or location


@dataclass(frozen=True)
class DependencySpec:
    """A declared, unresolved dependency requirement.

    Supports short forms:
    - owner/repo
    - owner/repo@^1.2.0
    - github:owner/repo@1.2.3
    - git:https://host/org/repo.git@main
    - https://host/path/module.zip
    - local:../modules/foo or ./vendor/foo.zip
    """
    source: str
    source_type: SourceType
    version: Optional[str] = None
    asset: Optional[str] = None
    alias: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: Union[str, Mapping[str, Any]]) -> "DependencySpec":
        """Parse a short-form string or a structured mapping.

        Parsing never touches the network or the filesystem.

        Raises:
            MalformedSpec: If the source is empty, the scheme unknown or the
                version constraint invalid.
        """
        if isinstance(raw, Mapping):
            return cls._from_mapping(raw)
        if not isinstance(raw, str):
            raise MalformedSpec(f"Unsupported dependency declaration: {raw!r}")
        text = raw.strip()
        if not text:
            raise MalformedSpec("Empty dependency string")
        source, version = _split_version(text)
        return cls._build(source, version=version)

    @classmethod
    def _from_mapping(cls, data: Mapping[str, Any]) -> "DependencySpec":
        source = data.get("source")
        if not isinstance(source, str) or not source.strip():
            raise MalformedSpec("Dependency entry requires a non-empty 'source'")
        for key in ("version", "asset", "alias", "source_type"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise MalformedSpec(f"Dependency field '{key}' must be a string")
        meta = data.get("meta") or {}
        if not isinstance(meta, Mapping):
            raise MalformedSpec("Dependency field 'meta' must be a table")
        spec = cls._build(
            source.strip(),
            version=data.get("version"),
            asset=data.get("asset"),
            alias=data.get("alias"),
            meta=dict(meta),
        )
        declared = data.get("source_type")
        if declared and SourceType.from_value(declared) is not spec.source_type:
            raise MalformedSpec(
                f"source_type '{declared}' does not match source '{spec.source}' "
                f"(derived '{spec.source_type.value}')"
            )
        return spec

    @classmethod
    def _build(
        cls,
        source: str,
        version: Optional[str] = None,
        asset: Optional[str] = None,
        alias: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> "DependencySpec":
        source = source.strip()
        source_type, location = classify_source(source)
        version = version.strip() if version and version.strip() else None

        if source_type is SourceType.GITHUB:
            normalize_github_repo(location)
            try:
                parse_constraint(version)
            except ValueError as e:
                raise MalformedSpec(str(e), dependency=source)
        elif source_type is SourceType.GIT:
            if version and not _GIT_REF_RE.match(version):
                raise MalformedSpec(f"Invalid git reference '{version}'", dependency=source)
        elif source_type is SourceType.HTTP:
            parsed = urllib.parse.urlparse(location)
            if not parsed.netloc:
                raise MalformedSpec(f"URL has no host: '{location}'")

        if alias is not None:
            alias = alias.strip()
            if not alias or not _NAME_RE.match(alias):
                raise MalformedSpec(f"Invalid alias '{alias}'", dependency=source)
        if asset is not None and not asset.strip():
            raise MalformedSpec("Asset name cannot be empty", dependency=source)

        return cls(
            source=source,
            source_type=source_type,
            version=version,
            asset=asset.strip() if asset else None,
            alias=alias,
            meta=dict(meta or {}),
        )

    @property
    def location(self) -> str:
        """Source without the rmm scheme prefix."""
        return classify_source(self.source)[1]

    @property
    def id(self) -> str:
        """Dependency identity: the alias, else a key derived from the source."""
        if self.alias:
            return self.alias
        if self.source_type is SourceType.GITHUB:
            return normalize_github_repo(self.location).split("/")[1]
        return _derive_id(self.source_type, self.location)

    @property
    def canonical_source(self) -> str:
        """Source string with an explicit, normalized scheme."""
        if self.source_type is SourceType.GITHUB:
            return f"github:{normalize_github_repo(self.location)}"
        if self.source_type is SourceType.GIT:
            location = self.location
            if location.startswith(("git+https://", "git+http://", "git+ssh://")):
                location = location[len("git+"):]
            return f"git:{location}"
        if self.source_type is SourceType.HTTP:
            return self.location
        return f"local:{self.location}"

    def with_overrides(self, asset: Optional[str] = None, alias: Optional[str] = None) -> "DependencySpec":
        """Return a copy with an explicit asset and/or alias applied."""
        changes: Dict[str, Any] = {}
        if asset:
            changes["asset"] = asset
        if alias:
            if not _NAME_RE.match(alias):
                raise MalformedSpec(f"Invalid alias '{alias}'", dependency=self.source)
            changes["alias"] = alias
        return replace(self, **changes) if changes else self

    def to_manifest_entry(self) -> Dict[str, Any]:
        """Structured form written into ``tool.rmm.dependencies``."""
        entry: Dict[str, Any] = {"source": self.source}
        if self.version:
            entry["version"] = self.version
        if self.asset:
            entry["asset"] = self.asset
        if self.alias:
            entry["alias"] = self.alias
        if self.meta:
            entry["meta"] = dict(self.meta)
        return entry

    def __str__(self) -> str:
        result = self.source
        if self.version:
            result += f"@{self.version}"
        return result


@dataclass(frozen=True)
class ResolvedDependency:
    """A concrete, single-version artifact descriptor produced by a resolver."""
    spec: DependencySpec
    resolved_version: str
    download_url: str
    sha256: Optional[str] = None
    size: Optional[int] = None
    source: str = ""
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def source_type(self) -> SourceType:
        return self.spec.source_type

    def with_integrity(self, sha256: str, size: Optional[int] = None) -> "ResolvedDependency":
        """Return a copy carrying the verified digest (and size)."""
        return replace(self, sha256=sha256, size=size if size is not None else self.size)

    def __str__(self) -> str:
        return f"{self.id}@{self.resolved_version}"
