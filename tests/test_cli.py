import pytest
from click.testing import CliRunner

from rmm_cli.cli import cli
from rmm_cli.config import get_config
from rmm_cli.deps.lockfile import read_lockfile


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _invoke(runner, manager, *args):
    return runner.invoke(cli, list(args), obj={"manager": manager})


def test_version(runner) -> None:
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "rmm version" in result.output


def test_deps_add(runner, manager, project, catalog) -> None:
    result = _invoke(runner, manager, "deps", "add", "acme/widget@^1.2.0", "--project", str(project))

    assert result.exit_code == 0, result.output
    assert "Added widget@1.3.0" in result.output
    assert read_lockfile(project).get("widget").resolved_version == "1.3.0"


def test_add_shortcut_with_dry_run(runner, manager, project, catalog) -> None:
    result = _invoke(runner, manager, "add", "acme/widget", "-p", str(project), "--dry-run")

    assert result.exit_code == 0, result.output
    assert "Would add widget@2.0.0" in result.output
    assert not (project / "rmm.lock").exists()


def test_resolution_error_exits_with_context(runner, manager, project, catalog) -> None:
    result = _invoke(runner, manager, "deps", "add", "acme/widget@^9.0.0", "-p", str(project))

    assert result.exit_code == 1
    assert "widget" in result.output
    assert not (project / "rmm.lock").exists()


def test_ambiguous_asset_lists_candidates(runner, manager, project, catalog) -> None:
    catalog.publish("acme/multi", "v1.0.0", assets={"multi-arm64.zip": b"a", "multi-x86_64.zip": b"b"})

    result = _invoke(runner, manager, "deps", "add", "acme/multi", "-p", str(project))

    assert result.exit_code == 1
    assert "multi-arm64.zip" in result.output
    assert "multi-x86_64.zip" in result.output


def test_asset_option_disambiguates(runner, manager, project, catalog) -> None:
    catalog.publish("acme/multi", "v1.0.0", assets={"multi-arm64.zip": b"a", "multi-x86_64.zip": b"b"})

    result = _invoke(runner, manager, "deps", "add", "acme/multi", "-p", str(project),
                     "--asset", "multi-arm64.zip", "--no-install")

    assert result.exit_code == 0, result.output
    assert read_lockfile(project).get("multi").meta["asset"] == "multi-arm64.zip"


def test_list(runner, manager, project, catalog) -> None:
    _invoke(runner, manager, "deps", "add", "acme/widget", "-p", str(project))

    result = _invoke(runner, manager, "deps", "list", "-p", str(project))

    assert result.exit_code == 0, result.output
    assert "widget" in result.output


def test_list_empty_project(runner, manager, project) -> None:
    result = _invoke(runner, manager, "deps", "list", "-p", str(project))
    assert result.exit_code == 0
    assert "No dependencies declared yet" in result.output


def test_remove_unknown(runner, manager, project) -> None:
    result = _invoke(runner, manager, "remove", "ghost", "-p", str(project))
    assert result.exit_code == 1
    assert "ghost" in result.output


def test_install_from_lock(runner, manager, project, catalog) -> None:
    _invoke(runner, manager, "deps", "add", "acme/widget", "-p", str(project), "--no-install")

    result = _invoke(runner, manager, "install", "-p", str(project))

    assert result.exit_code == 0, result.output
    assert (project / "rmm_modules" / "widget" / "module.prop").exists()


def test_check_exit_codes(runner, manager, project, catalog) -> None:
    _invoke(runner, manager, "deps", "add", "acme/widget", "-p", str(project), "--no-save")

    drift = _invoke(runner, manager, "check", "-p", str(project))
    assert drift.exit_code == 1
    assert "orphan_lock" in drift.output

    fixed = _invoke(runner, manager, "check", "-p", str(project), "--fix")
    assert fixed.exit_code == 0, fixed.output
    assert "widget" not in read_lockfile(project)

    clean = _invoke(runner, manager, "check", "-p", str(project))
    assert clean.exit_code == 0


def test_config_set(runner) -> None:
    result = runner.invoke(cli, ["config", "--set", "workers=8"])
    assert result.exit_code == 0, result.output
    assert get_config()["workers"] == 8

    shown = runner.invoke(cli, ["config"])
    assert "workers = 8" in shown.output


@pytest.mark.parametrize("assignment", ["colour=blue", "workers=zero", "workers"])
def test_config_set_rejects_bad_values(runner, assignment) -> None:
    result = runner.invoke(cli, ["config", "--set", assignment])
    assert result.exit_code == 1
