"""Command-line interface for RMM."""

import sys

import click
from colorama import init

from rmm_cli.commands.deps import add, check, deps, install, remove
from rmm_cli.config import get_config, update_config
from rmm_cli.errors import RmmError
from rmm_cli.utils.console import _rich_error, _rich_info, _rich_success, setup_logging
from rmm_cli.version import get_version

# Initialize colorama for Windows terminals
init(autoreset=True)

CONFIG_KEYS = ("cache_dir", "workers")


def print_version(ctx, param, value):
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    click.echo(f"rmm version {get_version()}")
    ctx.exit()


@click.group(help="RMM: dependency manager for root module projects")
@click.option('--version', is_flag=True, callback=print_version,
              expose_value=False, is_eager=True, help="Show version and exit.")
@click.option('--verbose', '-v', is_flag=True, help="Show debug logging.")
@click.pass_context
def cli(ctx, verbose):
    """Main entry point for the RMM CLI."""
    ctx.ensure_object(dict)
    setup_logging(verbose)


# Register command groups
cli.add_command(deps)

# Shortcuts for the everyday commands
cli.add_command(add)
cli.add_command(remove)
cli.add_command(install)
cli.add_command(check)


@cli.command(help="Show or change user configuration")
@click.option('--set', 'assignment', help="Set a value, e.g. --set workers=8")
def config(assignment):
    """Show or update ~/.rmm/config.json."""
    if assignment:
        key, sep, value = assignment.partition("=")
        key = key.strip()
        if not sep or key not in CONFIG_KEYS:
            _rich_error(f"Expected KEY=VALUE with KEY one of: {', '.join(CONFIG_KEYS)}")
            sys.exit(1)
        if key == "workers":
            if not value.strip().isdigit() or int(value) < 1:
                _rich_error("workers must be a positive integer")
                sys.exit(1)
            update_config({key: int(value)})
        else:
            update_config({key: value.strip()})
        _rich_success(f"Set {key}", symbol="success")
        return

    current = get_config()
    if not current:
        _rich_info("No user configuration set", symbol="info")
        return
    for key in sorted(current):
        click.echo(f"{key} = {current[key]}")


def main():
    """Main entry point for the CLI."""
    try:
        cli(obj={})
    except RmmError as e:
        _rich_error(str(e), symbol="error")
        sys.exit(1)
    except Exception as e:
        _rich_error(f"Error: {e}", symbol="error")
        sys.exit(1)


if __name__ == "__main__":
    main()
