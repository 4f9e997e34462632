"""Shared test fixtures: fake HTTP session, release catalog and git runner."""

import io
import json
import zipfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
import requests

from rmm_cli.core.env import EnvConfig
from rmm_cli.deps.manager import DependencyManager

FIXED_DATE = (2024, 1, 1, 0, 0, 0)


def make_module_zip(version: str, module_id: str = "widget", extra: Optional[Dict[str, str]] = None) -> bytes:
    """Build a small module archive with a module.prop at its root."""
    files = {
        "module.prop": f"id={module_id}\nname={module_id}\nversion={version}\nversionCode=1\n",
        "service.sh": "#!/system/bin/sh\n",
    }
    files.update(extra or {})
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name in sorted(files):
            zf.writestr(zipfile.ZipInfo(name, date_time=FIXED_DATE), files[name])
    return buf.getvalue()


class FakeResponse:
    """Just enough of requests.Response for the transport."""

    def __init__(self, status_code: int = 200, json_data: Any = None, content: bytes = b"",
                 headers: Optional[Dict[str, str]] = None, url: str = ""):
        self.status_code = status_code
        self._json = json_data
        self.content = content
        self.headers = headers or {}
        self.url = url

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error for url: {self.url}", response=self)

    def json(self):
        if self._json is None:
            raise ValueError("No JSON object could be decoded")
        return self._json

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Routes GET requests by URL.

    A route is a FakeResponse, an exception instance, a list of those (used in
    order, the last one repeating) or a callable ``(url, params, proxies)``.
    """

    def __init__(self):
        self.routes: Dict[str, Any] = {}
        self.calls: List[Dict[str, Any]] = []

    def add(self, url: str, route: Any):
        self.routes[url] = route

    def calls_to(self, url: str) -> int:
        return sum(1 for call in self.calls if call["url"] == url)

    def get(self, url, params=None, headers=None, proxies=None, timeout=None, stream=False):
        self.calls.append({"url": url, "params": params, "headers": headers, "proxies": proxies})
        if url not in self.routes:
            return FakeResponse(404, url=url)
        route = self.routes[url]
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if callable(route) and not isinstance(route, FakeResponse):
            route = route(url, params, proxies)
        if isinstance(route, BaseException):
            raise route
        route.url = url
        return route


class ReleaseCatalog:
    """Publishes fake GitHub releases (and their asset downloads) on a FakeSession."""

    def __init__(self, session: FakeSession, api_base: str = "https://api.github.com"):
        self.session = session
        self.api_base = api_base
        self.releases: Dict[str, List[Dict[str, Any]]] = {}

    def publish(self, repo: str, tag: str, assets: Optional[Dict[str, bytes]] = None,
                prerelease: bool = False, draft: bool = False) -> Dict[str, Any]:
        name = repo.split("/")[1]
        if assets is None:
            assets = {f"{name}-{tag.lstrip('v')}.zip": make_module_zip(tag.lstrip("v"), name)}
        release_assets = []
        for asset_name, content in assets.items():
            url = f"https://github.com/{repo}/releases/download/{tag}/{asset_name}"
            self.session.add(url, FakeResponse(200, content=content))
            release_assets.append({"name": asset_name, "browser_download_url": url, "size": len(content)})
        release = {"tag_name": tag, "prerelease": prerelease, "draft": draft, "assets": release_assets}
        self.releases.setdefault(repo, []).append(release)
        self.session.add(f"{self.api_base}/repos/{repo}/releases", FakeResponse(200, json_data=self.releases[repo]))
        return release

    def asset_url(self, repo: str, tag: str, asset_name: str) -> str:
        return f"https://github.com/{repo}/releases/download/{tag}/{asset_name}"


class FakeGitRunner:
    """In-memory stand-in for the GitPython runner."""

    def __init__(self):
        self.refs: Dict[str, Dict[str, str]] = {}
        self.commits: Dict[str, Dict[str, bytes]] = {}
        self.calls: List[tuple] = []

    def add_repo(self, url: str, refs: Dict[str, str], archives: Optional[Dict[str, bytes]] = None):
        self.refs[url] = dict(refs)
        self.commits[url] = dict(archives or {})

    def ls_remote(self, url, proxy=None):
        self.calls.append(("ls_remote", url, proxy))
        return dict(self.refs[url])

    def resolve_commit(self, url, ref, proxy=None):
        self.calls.append(("resolve_commit", url, ref))
        for sha in self.commits[url]:
            if sha.startswith(ref):
                return sha
        return None

    def archive(self, url, commit, dest, proxy=None):
        self.calls.append(("archive", url, commit))
        Path(dest).write_bytes(self.commits[url][commit])


@pytest.fixture(autouse=True)
def isolated_user_config(tmp_path, monkeypatch):
    """Keep ~/.rmm and the token/proxy environment out of every test."""
    monkeypatch.setenv("RMM_CONFIG_DIR", str(tmp_path / "user-config"))
    for name in ("GITHUB_TOKEN", "GH_TOKEN", "RMM_GITHUB_TOKEN", "GITHUB_PROXY",
                 "RMM_RETRIES_PER_PROXY", "RMM_RETRY_INTERVAL", "RMM_CACHE_DIR", "RMM_WORKERS"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def catalog(session) -> ReleaseCatalog:
    """acme/widget with tags 1.1.9, 1.2.0, 1.3.0 and 2.0.0."""
    releases = ReleaseCatalog(session)
    for tag in ("v1.1.9", "v1.2.0", "v1.3.0", "v2.0.0"):
        releases.publish("acme/widget", tag)
    return releases


@pytest.fixture
def git_runner() -> FakeGitRunner:
    return FakeGitRunner()


@pytest.fixture
def project(tmp_path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / "rmmproject.toml").write_text(
        '[project]\nname = "demo"\nversion = "0.1.0"\nauthors = ["someone"]\n',
        encoding="utf-8",
    )
    return root


@pytest.fixture
def make_manager(tmp_path, session, git_runner) -> Callable[..., DependencyManager]:
    def _make(**overrides) -> DependencyManager:
        kwargs = dict(
            env_config=EnvConfig(retry_interval=0.0),
            cache_dir=tmp_path / "cache",
            session=session,
            git_runner=git_runner,
            workers=2,
            target_hints=[],
            write_timeout=2.0,
        )
        kwargs.update(overrides)
        return DependencyManager(**kwargs)
    return _make


@pytest.fixture
def manager(make_manager) -> DependencyManager:
    return make_manager()


def read_json(path: Path) -> Dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))
