"""Git sources: pin a branch, tag or commit to a concrete commit SHA."""

import logging
import re
import shutil
import tempfile
import urllib.parse
from pathlib import Path
from typing import Dict, Optional

from git import Repo
from git.cmd import Git
from git.exc import BadName, GitCommandError

from ..core.token_manager import GitHubTokenManager, sanitize_secrets
from ..core.transport import ProxyManager
from ..errors import NoMatchingVersion, Stage
from ..models.dependency import DependencySpec, ResolvedDependency, SourceType
from .resolver import Resolver

logger = logging.getLogger(__name__)

FULL_SHA_RE = re.compile(r'^[a-f0-9]{40}$')
SHORT_SHA_RE = re.compile(r'^[a-f0-9]{7,39}$')

_TRANSIENT_GIT_MARKERS = (
    "could not resolve host",
    "connection timed out",
    "connection reset",
    "connection refused",
    "operation timed out",
    "early eof",
    "the remote end hung up",
    "proxy",
    "returned error: 5",
)


def git_url(spec: DependencySpec) -> str:
    """Clone URL for a git spec (without the ``git+`` transport prefix)."""
    location = spec.location
    if location.startswith(("git+https://", "git+http://", "git+ssh://")):
        location = location[len("git+"):]
    return location


def is_transient_git_error(exc: BaseException) -> bool:
    """Whether a git failure looks like a network hiccup worth retrying."""
    text = str(exc).lower()
    return any(marker in text for marker in _TRANSIENT_GIT_MARKERS)


class GitPythonRunner:
    """Runs the few git operations rmm needs through GitPython."""

    def __init__(self, token: Optional[str] = None):
        self.token_manager = GitHubTokenManager()
        self.git_env = self.token_manager.setup_git_environment()
        self.github_token = token if token is not None else self.token_manager.get_token_for_purpose('modules')

    def _env(self, proxy: Optional[str]) -> Dict[str, str]:
        env = dict(self.git_env)
        if proxy:
            env['HTTP_PROXY'] = env['HTTPS_PROXY'] = proxy
            env['http_proxy'] = env['https_proxy'] = proxy
        return env

    def _authenticated_url(self, url: str) -> str:
        parsed = urllib.parse.urlparse(url)
        if self.github_token and parsed.scheme == "https" and parsed.hostname == "github.com" and not parsed.username:
            return url.replace("https://", f"https://x-access-token:{self.github_token}@", 1)
        return url

    def ls_remote(self, url: str, proxy: Optional[str] = None) -> Dict[str, str]:
        """Map every advertised ref name (and HEAD) to its commit SHA."""
        output = Git().ls_remote(self._authenticated_url(url), env=self._env(proxy))
        refs: Dict[str, str] = {}
        for line in output.splitlines():
            sha, _, name = line.partition("\t")
            if sha and name:
                refs[name.strip()] = sha.strip()
        return refs

    def _clone(self, url: str, target: Path, proxy: Optional[str]) -> Repo:
        return Repo.clone_from(self._authenticated_url(url), target, env=self._env(proxy), no_checkout=True)

    def resolve_commit(self, url: str, ref: str, proxy: Optional[str] = None) -> Optional[str]:
        """Expand an abbreviated commit by cloning; None when it does not exist."""
        temp_dir = Path(tempfile.mkdtemp(prefix="rmm-git-"))
        try:
            repo = self._clone(url, temp_dir, proxy)
            try:
                return repo.commit(ref).hexsha
            except (BadName, ValueError):
                return None
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def archive(self, url: str, commit: str, dest: Path, proxy: Optional[str] = None) -> None:
        """Write a zip of the tree at ``commit`` to ``dest``."""
        temp_dir = Path(tempfile.mkdtemp(prefix="rmm-git-"))
        try:
            repo = self._clone(url, temp_dir, proxy)
            repo.git.archive(commit, format="zip", output=str(dest))
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)


class GitResolver(Resolver):
    """Pins git refs through ``ls-remote``; abbreviated SHAs need a clone."""

    source_type = SourceType.GIT

    def __init__(self, runner=None, proxy_manager: Optional[ProxyManager] = None):
        self.runner = runner if runner is not None else GitPythonRunner()
        self.proxy_manager = proxy_manager or ProxyManager()

    def _with_retry(self, operation, description: str):
        return self.proxy_manager.run_with_retry(
            operation,
            description=description,
            catch=(GitCommandError,),
            retryable=is_transient_git_error,
        )

    def resolve(self, spec: DependencySpec, allow_prerelease: bool = False) -> ResolvedDependency:
        url = git_url(spec)
        ref = spec.version or "HEAD"

        if FULL_SHA_RE.match(ref.lower()):
            commit = ref.lower()
        else:
            refs = self._with_retry(lambda proxy: self.runner.ls_remote(url, proxy),
                                    f"git ls-remote {sanitize_secrets(url)}")
            commit = None
            for candidate in (f"refs/tags/{ref}^{{}}", f"refs/tags/{ref}", f"refs/heads/{ref}", ref):
                if candidate in refs:
                    commit = refs[candidate]
                    break
            if commit is None and SHORT_SHA_RE.match(ref.lower()):
                logger.debug("Ref %s looks like an abbreviated commit; cloning %s", ref, sanitize_secrets(url))
                commit = self._with_retry(lambda proxy: self.runner.resolve_commit(url, ref, proxy),
                                          f"git clone {sanitize_secrets(url)}")
            if commit is None:
                raise NoMatchingVersion(
                    f"Reference '{ref}' not found in {sanitize_secrets(url)}",
                    dependency=spec.id,
                    stage=Stage.RESOLVE,
                )

        return ResolvedDependency(
            spec=spec,
            resolved_version=commit,
            download_url=url,
            source=spec.canonical_source,
            meta={"ref": ref},
        )
