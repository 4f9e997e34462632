import hashlib
import threading

import pytest
import toml

from conftest import FakeResponse, ReleaseCatalog, make_module_zip, read_json
from rmm_cli.deps.consistency import FindingKind, NoticeKind
from rmm_cli.deps.lockfile import read_lockfile, write_lockfile
from rmm_cli.deps.manager import DependencyState
from rmm_cli.errors import IntegrityMismatch, NoMatchingVersion, NotFound
from rmm_cli.models.lockfile import DependencyLockEntry, RmmLock


def _declared(project):
    data = toml.loads((project / "rmmproject.toml").read_text())
    return data.get("tool", {}).get("rmm", {}).get("dependencies", [])


def test_add_resolves_installs_locks_and_saves(manager, project, catalog) -> None:
    resolved = manager.add_dependency(project, "acme/widget@^1.2.0")

    assert resolved.resolved_version == "1.3.0"
    assert resolved.sha256 is not None
    entry = read_lockfile(project).get("widget")
    assert entry.resolved_version == "1.3.0"
    assert entry.sha256 == resolved.sha256
    assert entry.installed_path == "rmm_modules/widget"
    assert entry.meta["constraint"] == "^1.2.0"
    assert "version=1.3.0" in (project / "rmm_modules" / "widget" / "module.prop").read_text()
    assert _declared(project) == [{"source": "acme/widget", "version": "^1.2.0"}]


def test_add_twice_keeps_one_declaration(manager, project, catalog) -> None:
    manager.add_dependency(project, "acme/widget@^1.2.0")
    manager.add_dependency(project, "acme/widget@^1.2.0")
    assert len(_declared(project)) == 1


def test_add_without_save_leaves_manifest_untouched(manager, project, catalog) -> None:
    before = (project / "rmmproject.toml").read_bytes()

    resolved = manager.add_dependency(project, "acme/widget@^1.2.0", save=False)

    assert resolved.resolved_version == "1.3.0"
    assert read_lockfile(project).get("widget") is not None
    assert (project / "rmmproject.toml").read_bytes() == before


def test_dry_run_writes_nothing(manager, project, catalog, tmp_path) -> None:
    manager.add_dependency(project, "acme/widget", dry_run=True)
    assert not (project / "rmm.lock").exists()
    assert not (tmp_path / "cache").exists()
    assert _declared(project) == []


def test_no_install_locks_without_fetching(manager, project, catalog, session) -> None:
    manager.add_dependency(project, "acme/widget@~1.2", install=False)

    entry = read_lockfile(project).get("widget")
    assert entry.resolved_version == "1.2.0"
    assert entry.sha256 is None
    assert entry.installed_path is None
    assert session.calls_to(catalog.asset_url("acme/widget", "v1.2.0", "widget-1.2.0.zip")) == 0


def test_prerelease_only_constraint_fails_without_opt_in(manager, project, catalog) -> None:
    catalog.publish("acme/widget", "v2.1.0-beta.1", prerelease=True)

    with pytest.raises(NoMatchingVersion) as excinfo:
        manager.add_dependency(project, "acme/widget@>2.0.0")
    assert excinfo.value.dependency == "widget"
    assert excinfo.value.stage == "resolve"

    resolved = manager.add_dependency(project, "acme/widget@>2.0.0", allow_prerelease=True)
    assert resolved.resolved_version == "2.1.0-beta.1"


def test_failed_resolution_writes_nothing(manager, project, catalog) -> None:
    with pytest.raises(NoMatchingVersion):
        manager.add_dependency(project, "acme/widget@^5.0.0")
    assert not (project / "rmm.lock").exists()


def test_alias_changes_identity(manager, project, catalog) -> None:
    manager.add_dependency(project, {"source": "acme/widget", "version": "^1.0.0", "alias": "gadget"})

    lock = read_lockfile(project)
    assert lock.ids() == ["gadget"]
    assert (project / "rmm_modules" / "gadget" / "module.prop").exists()


def test_concurrent_adds_do_not_lose_updates(manager, project, session) -> None:
    releases = ReleaseCatalog(session)
    names = [f"mod{i}" for i in range(6)]
    for name in names:
        releases.publish(f"acme/{name}", "v1.0.0")

    errors = []

    def add(name):
        try:
            manager.add_dependency(project, f"acme/{name}")
        except Exception as e:  # surfaced through the assertion below
            errors.append(e)

    threads = [threading.Thread(target=add, args=(n,)) for n in names]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert read_lockfile(project).ids() == sorted(names)
    assert sorted(d["source"] for d in _declared(project)) == [f"acme/{n}" for n in names]


def test_remove_unknown_identity_is_not_found(manager, project) -> None:
    with pytest.raises(NotFound) as excinfo:
        manager.remove_dependency(project, "ghost")
    assert excinfo.value.dependency == "ghost"


def test_remove_drops_declaration_and_entry(manager, project, catalog) -> None:
    manager.add_dependency(project, "acme/widget")

    removed = manager.remove_dependency(project, "widget")

    assert removed.id == "widget"
    assert "widget" not in read_lockfile(project)
    assert _declared(project) == []
    assert (project / "rmm_modules" / "widget").exists()


def test_remove_with_files_purges_install_and_cache(manager, project, catalog, tmp_path) -> None:
    manager.add_dependency(project, "acme/widget")
    entry = read_lockfile(project).get("widget")

    manager.remove_dependency(project, "widget", remove_files=True)

    assert not (project / "rmm_modules" / "widget").exists()
    assert not (tmp_path / "cache" / "sha256" / entry.sha256 / "widget-2.0.0.zip").exists()


def test_list_reports_lifecycle_states(manager, project, catalog) -> None:
    manager.add_dependency(project, "acme/widget")
    catalog.publish("acme/other", "v1.0.0")
    manager.add_dependency(project, "acme/other", install=False)
    manifest = project / "rmmproject.toml"
    data = toml.loads(manifest.read_text())
    data["tool"]["rmm"]["dependencies"].append({"source": "acme/pending"})
    manifest.write_text(toml.dumps(data))

    states = {s.id: s.state for s in manager.list_dependencies(project)}

    assert states == {
        "widget": DependencyState.INSTALLED,
        "other": DependencyState.LOCKED,
        "pending": DependencyState.DECLARED,
    }


def test_install_from_lock_never_re_resolves(manager, project, catalog, session) -> None:
    manager.add_dependency(project, "acme/widget@^1.2.0", install=False)
    catalog.publish("acme/widget", "v1.9.0")
    listing = "https://api.github.com/repos/acme/widget/releases"
    listings_before = session.calls_to(listing)

    report = manager.install_from_lock(project)

    assert report.ok
    assert [e.resolved_version for e in report.installed] == ["1.3.0"]
    assert session.calls_to(listing) == listings_before
    entry = read_lockfile(project).get("widget")
    assert entry.sha256 is not None
    assert entry.installed_path == "rmm_modules/widget"


def test_install_from_lock_is_reproducible(manager, project, catalog) -> None:
    manager.add_dependency(project, "acme/widget@^1.2.0")

    first = manager.install_from_lock(project)
    second = manager.install_from_lock(project)

    assert first.installed[0].sha256 == second.installed[0].sha256
    assert read_lockfile(project).get("widget").sha256 == first.installed[0].sha256


def test_install_from_lock_reports_partial_failure(manager, project, catalog, session) -> None:
    manager.add_dependency(project, "acme/widget")
    lock = read_lockfile(project)
    lock.update_entry(DependencyLockEntry(
        id="broken",
        resolved_version="1.0.0",
        download_url="https://example.com/broken.zip",
        source="https://example.com/broken.zip",
        sha256="0" * 64,
    ))
    write_lockfile(project, lock)
    session.add("https://example.com/broken.zip", FakeResponse(200, content=b"not what was locked"))

    report = manager.install_from_lock(project)

    assert [e.id for e in report.installed] == ["widget"]
    assert isinstance(report.failures["broken"], IntegrityMismatch)
    assert report.failures["broken"].dependency == "broken"
    assert report.failures["broken"].stage == "fetch"
    assert (project / "rmm_modules" / "widget").exists()
    assert not (project / "rmm_modules" / "broken").exists()


def test_install_from_lock_survives_unwritable_cache_entry(manager, project, catalog, session, tmp_path) -> None:
    manager.add_dependency(project, "acme/widget@^1.2.0")
    other_zip = make_module_zip("1.0.0", "other")
    other_sha = hashlib.sha256(other_zip).hexdigest()
    lock = read_lockfile(project)
    lock.update_entry(DependencyLockEntry(
        id="other",
        resolved_version="1.0.0",
        download_url="https://example.com/other.zip",
        source="https://example.com/other.zip",
        sha256=other_sha,
    ))
    write_lockfile(project, lock)
    session.add("https://example.com/other.zip", FakeResponse(200, content=other_zip))
    # A regular file where the entry's cache directory belongs
    stray = tmp_path / "cache" / "sha256" / other_sha
    stray.parent.mkdir(parents=True, exist_ok=True)
    stray.write_text("x", encoding="utf-8")

    report = manager.install_from_lock(project)

    assert [e.id for e in report.installed] == ["widget"]
    assert report.failures["other"].dependency == "other"
    assert report.failures["other"].stage == "fetch"
    assert isinstance(report.failures["other"].__cause__, OSError)
    assert (project / "rmm_modules" / "widget" / "module.prop").is_file()
    assert not (project / "rmm_modules" / "other").exists()
    assert read_lockfile(project).get("widget").installed_path == "rmm_modules/widget"


def test_orphan_lock_entry_is_the_only_finding(manager, project) -> None:
    lock = RmmLock()
    lock.update_entry(DependencyLockEntry(
        id="widget",
        resolved_version="1.3.0",
        download_url="https://github.com/acme/widget/releases/download/v1.3.0/widget-1.3.0.zip",
        source="github:acme/widget",
        sha256="a" * 64,
    ))
    write_lockfile(project, lock)

    report = manager.ensure_consistency(project)

    assert [(f.kind, f.id) for f in report.findings] == [(FindingKind.ORPHAN_LOCK, "widget")]
    assert not report.ok


def test_missing_lock_entry_and_repair(manager, project, catalog) -> None:
    (project / "rmmproject.toml").write_text(
        '[project]\nname = "demo"\n\n[[tool.rmm.dependencies]]\nsource = "acme/widget"\nversion = "^1.2.0"\n'
    )

    report = manager.ensure_consistency(project)
    assert [(f.kind, f.id) for f in report.findings] == [(FindingKind.MISSING_LOCK, "widget")]

    repaired = manager.ensure_consistency(project, repair=True)
    assert repaired.repairs == ["locked widget@1.3.0"]
    assert manager.ensure_consistency(project).ok


def test_version_drift_detected_and_repaired(manager, project, catalog) -> None:
    manager.add_dependency(project, "acme/widget@^1.2.0")
    prop = project / "rmm_modules" / "widget" / "module.prop"
    prop.write_text(prop.read_text().replace("version=1.3.0", "version=1.2.0"))

    report = manager.ensure_consistency(project)
    assert [(f.kind, f.id) for f in report.findings] == [(FindingKind.VERSION_DRIFT, "widget")]
    assert report.findings[0].details == {"locked": "1.3.0", "installed": "1.2.0"}

    manager.ensure_consistency(project, repair=True)
    assert "version=1.3.0" in prop.read_text()
    assert manager.ensure_consistency(project).ok


def test_locked_but_not_installed_is_a_notice(manager, project, catalog) -> None:
    manager.add_dependency(project, "acme/widget", install=False)

    report = manager.ensure_consistency(project)

    assert report.ok
    assert [(n.kind, n.id) for n in report.notices] == [(NoticeKind.NOT_INSTALLED, "widget")]


def test_orphan_repair_drops_entry_and_files(manager, project, catalog) -> None:
    manager.add_dependency(project, "acme/widget", save=False)

    report = manager.ensure_consistency(project, repair=True)

    assert report.repairs == ["removed orphan lock entry widget"]
    assert "widget" not in read_lockfile(project)
    assert not (project / "rmm_modules" / "widget").exists()


def test_sync_locks_declared_and_installs(manager, project, catalog) -> None:
    (project / "rmmproject.toml").write_text(
        '[project]\nname = "demo"\n\n[tool.rmm]\ndependencies = ["acme/widget@~1.2", "acme/missing"]\n'
    )

    report = manager.sync(project)

    assert [str(r) for r in report.locked] == ["widget@1.2.0"]
    assert isinstance(report.failures["missing"], NotFound)
    assert report.install.ok
    assert not report.ok
    assert read_json(project / "rmm.lock")["entries"]["widget"]["installed_path"] == "rmm_modules/widget"


def test_local_directory_dependency(manager, project) -> None:
    module = project / "vendor" / "mymod"
    module.mkdir(parents=True)
    (module / "module.prop").write_text("id=mymod\nversion=0.4.0\n")

    resolved = manager.add_dependency(project, "./vendor/mymod")

    assert resolved.id == "mymod"
    entry = read_lockfile(project).get("mymod")
    assert entry.source == "local:./vendor/mymod"
    assert (project / "rmm_modules" / "mymod" / "module.prop").exists()
    assert manager.install_from_lock(project).ok
    assert manager.ensure_consistency(project).ok


def test_git_dependency_is_pinned(manager, project, git_runner) -> None:
    commit = "9" * 40
    git_runner.add_repo("https://example.com/tool.git", {"refs/heads/main": commit},
                        archives={commit: make_module_zip("0.1.0", "tool")})

    resolved = manager.add_dependency(project, "git:https://example.com/tool.git@main")

    assert resolved.resolved_version == commit
    assert read_lockfile(project).get("tool").download_url == "https://example.com/tool.git"
    assert _declared(project) == [{"source": "git:https://example.com/tool.git", "version": "main"}]
