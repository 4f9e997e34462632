"""Resolver for GitHub release assets."""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import requests

from ..core.cache import MetadataCache
from ..core.transport import HttpTransport
from ..core.versioning import best_match, coerce_tag, is_latest, matching_versions
from ..errors import AmbiguousAsset, AssetNotFound, NoMatchingVersion, NotFound, Stage, TransportError
from ..models.dependency import DependencySpec, ResolvedDependency, SourceType, normalize_github_repo
from ..utils.helpers import host_asset_tokens
from .resolver import Resolver

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
PER_PAGE = 100

_EXCLUDED_ASSET = re.compile(r'(^|[^a-z])(debug|symbols?|sources?|src)([^a-z]|$)')


def _asset_names(assets: Sequence[Dict[str, Any]]) -> List[str]:
    return sorted(a.get("name", "") for a in assets)


def select_asset(
    assets: Sequence[Dict[str, Any]],
    asset_name: Optional[str] = None,
    hints: Sequence[str] = (),
    dependency: Optional[str] = None,
) -> Dict[str, Any]:
    """Pick the release asset to download.

    An explicit ``asset_name`` must match exactly. Otherwise zip assets are
    preferred, debug/symbol/source bundles are dropped, and the platform
    ``hints`` are used to narrow several candidates down to one.

    Raises:
        AssetNotFound: If nothing qualifies.
        AmbiguousAsset: If more than one asset remains.
    """
    if asset_name:
        for asset in assets:
            if asset.get("name") == asset_name:
                return asset
        raise AssetNotFound(
            f"Release has no asset named '{asset_name}'",
            dependency=dependency,
            context={"available": ", ".join(_asset_names(assets)) or "none"},
        )

    candidates = [a for a in assets if a.get("name", "").lower().endswith(".zip")] or list(assets)
    candidates = [a for a in candidates if not _EXCLUDED_ASSET.search(a.get("name", "").lower())]

    if len(candidates) > 1 and hints:
        lowered = [h.lower() for h in hints if h]
        narrowed = [a for a in candidates if any(h in a.get("name", "").lower() for h in lowered)]
        if len(narrowed) == 1:
            candidates = narrowed

    if not candidates:
        raise AssetNotFound(
            "Release has no installable asset",
            dependency=dependency,
            hint="Name the asset explicitly or check that the release has uploaded files.",
            context={"available": ", ".join(_asset_names(assets)) or "none"},
        )
    if len(candidates) > 1:
        names = _asset_names(candidates)
        raise AmbiguousAsset(
            f"Release has {len(names)} candidate assets: {', '.join(names)}",
            candidates=names,
            dependency=dependency,
        )
    return candidates[0]


def _asset_digest(asset: Dict[str, Any]) -> Optional[str]:
    digest = asset.get("digest")
    if isinstance(digest, str) and digest.startswith("sha256:"):
        return digest[len("sha256:"):].lower()
    return None


class HostedReleaseResolver(Resolver):
    """Matches a version constraint against a repository's GitHub releases."""

    source_type = SourceType.GITHUB

    def __init__(
        self,
        transport: HttpTransport,
        cache: Optional[MetadataCache] = None,
        api_base: str = GITHUB_API,
        target_hints: Optional[Sequence[str]] = None,
    ):
        self.transport = transport
        self.cache = cache if cache is not None else MetadataCache()
        self.api_base = api_base.rstrip("/")
        self.target_hints = list(target_hints) if target_hints is not None else None

    def list_releases(self, repo: str) -> List[Dict[str, Any]]:
        """All published (non-draft) releases of ``owner/repo``."""
        return self.cache.get_or_load(f"releases:{repo}", lambda: self._fetch_releases(repo))

    def _fetch_releases(self, repo: str) -> List[Dict[str, Any]]:
        url = f"{self.api_base}/repos/{repo}/releases"
        releases: List[Dict[str, Any]] = []
        page = 1
        while True:
            try:
                batch = self.transport.get_json(url, params={"per_page": PER_PAGE, "page": page})
            except TransportError as e:
                cause = e.cause
                if isinstance(cause, requests.exceptions.HTTPError) and cause.response is not None \
                        and cause.response.status_code == 404:
                    raise NotFound(
                        f"Repository {repo} not found or has no releases",
                        stage=Stage.RESOLVE,
                        hint="Private repositories need GITHUB_TOKEN.",
                    ) from e
                raise
            if not isinstance(batch, list):
                raise TransportError(f"Unexpected release listing for {repo}", stage=Stage.RESOLVE)
            releases.extend(r for r in batch if isinstance(r, dict) and not r.get("draft"))
            if len(batch) < PER_PAGE:
                break
            page += 1
        logger.debug("Fetched %d releases for %s", len(releases), repo)
        return releases

    def _hints(self, spec: DependencySpec) -> List[str]:
        target = spec.meta.get("target")
        if isinstance(target, str) and target.strip():
            return [target.strip()]
        if isinstance(target, (list, tuple)):
            return [str(t) for t in target if str(t).strip()]
        if self.target_hints is not None:
            return self.target_hints
        return host_asset_tokens()

    def resolve(self, spec: DependencySpec, allow_prerelease: bool = False) -> ResolvedDependency:
        """Pick the highest matching release and one of its assets.

        Raises:
            NoMatchingVersion: If no release tag satisfies the constraint.
            AssetNotFound: If the chosen release lacks the asset.
            AmbiguousAsset: If no single default asset can be chosen.
        """
        repo = normalize_github_repo(spec.location)
        releases = self.list_releases(repo)
        by_tag = {r.get("tag_name"): r for r in releases if r.get("tag_name")}
        prerelease_tags = [tag for tag, r in by_tag.items() if r.get("prerelease")]

        tag = best_match(by_tag, spec.version, allow_prerelease, prerelease_tags)
        if tag is None:
            constraint = "latest" if is_latest(spec.version) else spec.version
            hint = None
            if not allow_prerelease and matching_versions(by_tag, spec.version, True, prerelease_tags):
                hint = "Only prereleases satisfy this constraint; allow prereleases to use them."
            raise NoMatchingVersion(
                f"No release of {repo} satisfies '{constraint}'",
                dependency=spec.id,
                hint=hint,
                context={"available": ", ".join(sorted(by_tag)) or "none"},
            )

        release = by_tag[tag]
        asset = select_asset(release.get("assets") or [], spec.asset, self._hints(spec), dependency=spec.id)
        version = coerce_tag(tag)
        return ResolvedDependency(
            spec=spec,
            resolved_version=str(version) if version is not None else tag,
            download_url=asset["browser_download_url"],
            sha256=_asset_digest(asset),
            size=asset.get("size"),
            source=spec.canonical_source,
            meta={"tag": tag, "asset": asset.get("name")},
        )
