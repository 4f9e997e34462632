"""RMM dependency management commands."""

import sys
from pathlib import Path

import click

from ..core.env import load_config
from ..deps.consistency import ConsistencyReport
from ..deps.manager import DependencyManager, InstallReport
from ..errors import AmbiguousAsset, RmmError
from ..models.dependency import DependencySpec
from ..utils.console import (
    _create_table,
    _get_console,
    _rich_error,
    _rich_info,
    _rich_success,
    _rich_warning,
)

project_option = click.option(
    '--project', '-p', 'project',
    type=click.Path(file_okay=False, path_type=Path),
    default='.', show_default=True,
    help="Project directory containing rmmproject.toml",
)


def _manager(ctx: click.Context) -> DependencyManager:
    """The manager for this invocation (created once, shared by subcommands)."""
    obj = ctx.ensure_object(dict)
    if obj.get('manager') is None:
        obj['manager'] = DependencyManager(env_config=load_config())
    return obj['manager']


def _report_error(error: RmmError):
    """Print an error with its dependency, stage and hint, then exit 1."""
    _rich_error(str(error), symbol="error")
    if isinstance(error, AmbiguousAsset) and error.candidates:
        for name in error.candidates:
            _rich_error(f"  - {name}")
    sys.exit(1)


def _print_install_report(report: InstallReport):
    for entry in report.installed:
        _rich_success(f"{entry.id}@{entry.resolved_version} -> {entry.installed_path}", symbol="check")
    for dep_id, error in sorted(report.failures.items()):
        _rich_error(f"{dep_id}: {error}", symbol="error")


@click.group(help="📦 Manage RMM module dependencies")
def deps():
    """RMM dependency management commands."""
    pass


@deps.command(help="Add a dependency, lock it and install it")
@click.argument('spec')
@project_option
@click.option('--no-save', is_flag=True, help="Do not record the dependency in rmmproject.toml")
@click.option('--pre', 'allow_prerelease', is_flag=True, help="Allow prerelease versions")
@click.option('--no-install', is_flag=True, help="Resolve and lock only")
@click.option('--dry-run', is_flag=True, help="Resolve and show the result without writing anything")
@click.option('--asset', help="Release asset to download")
@click.option('--alias', help="Install the dependency under this name")
@click.pass_context
def add(ctx, spec, project, no_save, allow_prerelease, no_install, dry_run, asset, alias):
    """Add a dependency.

    Examples:
        rmm deps add acme/widget                 # Latest release
        rmm deps add acme/widget@^1.2.0          # Highest 1.x from 1.2.0
        rmm deps add git:https://host/x.git@main # Pin a branch to its commit
        rmm deps add ./vendor/tool.zip --no-save
    """
    try:
        parsed = DependencySpec.parse(spec).with_overrides(asset=asset, alias=alias)
        resolved = _manager(ctx).add_dependency(
            project,
            parsed,
            save=not no_save,
            allow_prerelease=allow_prerelease,
            install=not no_install,
            dry_run=dry_run,
        )
    except RmmError as e:
        _report_error(e)
        return

    if dry_run:
        _rich_info(f"Would add {resolved} from {resolved.download_url}", symbol="info")
        return
    _rich_success(f"Added {resolved}", symbol="success")
    if resolved.sha256:
        _rich_info(f"sha256 {resolved.sha256}")


@deps.command(help="Remove a dependency from the manifest and the lockfile")
@click.argument('name')
@project_option
@click.option('--purge', is_flag=True, help="Also delete installed and cached files")
@click.pass_context
def remove(ctx, name, project, purge):
    """Remove a dependency by id or alias."""
    try:
        _manager(ctx).remove_dependency(project, name, remove_files=purge)
    except RmmError as e:
        _report_error(e)
        return
    _rich_success(f"Removed {name}", symbol="success")


@deps.command(name="list", help="📋 List declared, locked and installed dependencies")
@project_option
@click.pass_context
def list_packages(ctx, project):
    """Show every dependency with its lifecycle state."""
    try:
        statuses = _manager(ctx).list_dependencies(project)
    except RmmError as e:
        _report_error(e)
        return

    if not statuses:
        _rich_info("No dependencies declared yet", symbol="info")
        _rich_info("Run 'rmm deps add owner/repo' to add one")
        return

    rows = []
    for status in statuses:
        rows.append([
            status.id,
            (status.spec.version or "latest") if status.spec else "-",
            status.entry.resolved_version if status.entry else "-",
            status.entry.source if status.entry else status.spec.canonical_source,
            status.state,
        ])
    _get_console().print(_create_table(
        "📋 RMM Dependencies",
        ["Name", "Constraint", "Locked", "Source", "State"],
        rows,
    ))


@deps.command(help="Resolve a dependency without installing it")
@click.argument('spec')
@project_option
@click.option('--pre', 'allow_prerelease', is_flag=True, help="Allow prerelease versions")
@click.pass_context
def resolve(ctx, spec, project, allow_prerelease):
    """Show what a spec would resolve to."""
    try:
        resolved = _manager(ctx).resolve_spec(spec, project_root=project, allow_prerelease=allow_prerelease)
    except RmmError as e:
        _report_error(e)
        return
    rows = [
        ["id", resolved.id],
        ["version", resolved.resolved_version],
        ["url", resolved.download_url],
        ["sha256", resolved.sha256 or "(verified on fetch)"],
        ["source", resolved.source],
    ]
    _get_console().print(_create_table(f"🔍 {spec}", ["Field", "Value"], rows))


@deps.command(help="Install every dependency exactly as locked")
@project_option
@click.pass_context
def install(ctx, project):
    """Install from rmm.lock without re-resolving anything."""
    try:
        report = _manager(ctx).install_from_lock(project)
    except RmmError as e:
        _report_error(e)
        return
    if not report.installed and not report.failures:
        _rich_info("Nothing to install: rmm.lock has no entries", symbol="info")
        return
    _print_install_report(report)
    if not report.ok:
        _rich_error(f"{len(report.failures)} dependency(ies) failed to install")
        sys.exit(1)


@deps.command(help="Lock declared dependencies that are not locked yet, then install")
@project_option
@click.option('--pre', 'allow_prerelease', is_flag=True, help="Allow prerelease versions")
@click.option('--no-install', is_flag=True, help="Lock only")
@click.pass_context
def sync(ctx, project, allow_prerelease, no_install):
    try:
        report = _manager(ctx).sync(project, allow_prerelease=allow_prerelease, install=not no_install)
    except RmmError as e:
        _report_error(e)
        return
    for resolved in report.locked:
        _rich_success(f"Locked {resolved}", symbol="lock")
    for dep_id, error in sorted(report.failures.items()):
        _rich_error(f"{dep_id}: {error}", symbol="error")
    if report.install is not None:
        _print_install_report(report.install)
    if not report.ok:
        sys.exit(1)


def _print_consistency(report: ConsistencyReport):
    for finding in report.findings:
        _rich_warning(f"[{finding.kind}] {finding.message}", symbol="warning")
    for notice in report.notices:
        _rich_info(f"[{notice.kind}] {notice.message}")
    for repair in report.repairs:
        _rich_success(f"Repaired: {repair}", symbol="check")


@deps.command(help="Check manifest, lockfile and installed modules for drift")
@project_option
@click.option('--fix', is_flag=True, help="Repair the drift that was found")
@click.pass_context
def check(ctx, project, fix):
    """Report (and optionally repair) drift. Exits 1 on unrepaired drift."""
    try:
        report = _manager(ctx).ensure_consistency(project, repair=fix)
    except RmmError as e:
        _report_error(e)
        return
    _print_consistency(report)
    if report.ok:
        _rich_success("Manifest, lockfile and modules are consistent", symbol="check")
    elif not fix:
        sys.exit(1)

